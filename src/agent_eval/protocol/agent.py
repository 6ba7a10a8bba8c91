import inspect
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from agent_eval.core.errors import ProtocolExhaustedError
from agent_eval.core.types import AgentMetadata, AgentResult
from agent_eval.engine.model import ToolCallingModel
from agent_eval.engine.prompt import PromptEngine, to_json
from agent_eval.protocol.progressive import (
    CompleteEvent,
    ProgressEvent,
    ProgressivePattern,
    StopCondition,
)

ProgressCallback = Callable[[Any], Awaitable[None] | None]


class ProgressiveAgent:
    """Expose a :class:`ProgressivePattern` as an agent under test.

    Each ``execute`` call is one protocol run. The submitted result becomes
    ``AgentResult.result``; progress payloads go to ``on_progress``.
    """

    def __init__(
        self,
        pattern: ProgressivePattern,
        model: ToolCallingModel,
        *,
        system: str | None = None,
        prompt_template: str | None = None,
        on_progress: ProgressCallback | None = None,
        stop_when: StopCondition | Sequence[StopCondition] | None = None,
        protocol: str | None = None,
        model_name: str | None = None,
    ):
        self.pattern = pattern
        self.model = model
        self.system = system
        self.prompt_template = prompt_template
        self.on_progress = on_progress
        self.stop_when = stop_when
        self.protocol = protocol
        self.model_name = model_name
        self.prompt_engine = PromptEngine()

    def build_prompt(self, input: Any) -> str:  # noqa: A002
        if self.prompt_template is not None:
            return self.prompt_engine.render(self.prompt_template, input=input)
        return input if isinstance(input, str) else to_json(input)

    async def execute(self, input: Any) -> AgentResult:  # noqa: A002
        start = time.perf_counter()
        complete: CompleteEvent | None = None

        async with self.pattern.run(
            self.model,
            prompt=self.build_prompt(input),
            system=self.system,
            stop_when=self.stop_when,
            protocol=self.protocol,
        ) as run:
            async for event in run:
                if isinstance(event, ProgressEvent):
                    if self.on_progress is not None:
                        maybe_awaitable = self.on_progress(event.data)
                        if inspect.isawaitable(maybe_awaitable):
                            await maybe_awaitable
                else:
                    complete = event

        if complete is None:
            raise ProtocolExhaustedError()
        return AgentResult(
            result=complete.data,
            metadata=AgentMetadata(
                token_usage=complete.summary.token_usage,
                latency_ms=(time.perf_counter() - start) * 1000,
                model=self.model_name,
            ),
        )
