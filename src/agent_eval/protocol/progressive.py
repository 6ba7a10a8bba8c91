"""Two-tool progress/result protocol.

The model gets exactly two tools: ``reportProgress`` (optional, any number of
times) and ``submitResult`` (required, once). Both take a single ``data``
argument validated against a pydantic schema. A run yields zero or more
:class:`ProgressEvent` followed by exactly one :class:`CompleteEvent`.

The run is a producer task driving the model stream and a consumer (the
caller) connected by a bounded queue. The producer hands over one event and
waits until the consumer asks for the next one, so no progress is made while
the caller is busy with an event.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Literal, Self

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from agent_eval.core.errors import ProtocolExhaustedError
from agent_eval.core.types import TokenUsage
from agent_eval.engine.model import (
    ToolCallingModel,
    ToolCallRequest,
    ToolCallStep,
    ToolSpec,
)

logger = logging.getLogger(__name__)

REPORT_PROGRESS_TOOL = "reportProgress"
SUBMIT_RESULT_TOOL = "submitResult"
DATA_KEY = "data"

REPORT_PROGRESS_DESCRIPTION = (
    "[OPTIONAL] Report progress during task execution. Use this to show "
    "intermediate work. You may call this multiple times, then you MUST call "
    f"{SUBMIT_RESULT_TOOL}."
)
SUBMIT_RESULT_DESCRIPTION = (
    "[REQUIRED] Submit the final result. You MUST call this exactly once to "
    "complete the task. Without this call, the task FAILS."
)

REPORT_PROGRESS_ACK = {
    "status": "progress_recorded",
    "instruction": (
        f"After all progress reports, you MUST call {SUBMIT_RESULT_TOOL} "
        "to complete the task."
    ),
}
SUBMIT_RESULT_ACK = {
    "status": "result_submitted",
    "message": "Task completed successfully.",
}

TOOL_CALLING_PROTOCOL = f"""## CRITICAL INSTRUCTION - READ CAREFULLY

You have 2 tools available:
1. {REPORT_PROGRESS_TOOL} - [OPTIONAL] Show intermediate work (multiple times)
2. {SUBMIT_RESULT_TOOL} - [REQUIRED] Submit your final answer

IMPORTANT RULES:
- You may call {REPORT_PROGRESS_TOOL} 0-3 times to show progress
- You MUST call {SUBMIT_RESULT_TOOL} exactly once to complete the task
- After calling {REPORT_PROGRESS_TOOL}, you MUST call {SUBMIT_RESULT_TOOL} in your NEXT response
- The task is NOT complete until {SUBMIT_RESULT_TOOL} is called
- If you never call {SUBMIT_RESULT_TOOL}, the task FAILS

CORRECT SEQUENCE:
1. [Optional] {REPORT_PROGRESS_TOOL}
2. [Required] {SUBMIT_RESULT_TOOL} (exactly once)"""

type StopCondition = Callable[[Sequence[ToolCallStep]], bool]


def has_tool_call(tool_name: str) -> StopCondition:
    """Stop once the latest step contains a call to ``tool_name``."""

    def condition(steps: Sequence[ToolCallStep]) -> bool:
        return bool(steps) and any(call.name == tool_name for call in steps[-1].calls)

    return condition


def step_count_is(count: int) -> StopCondition:
    """Stop once ``count`` steps have been taken."""

    def condition(steps: Sequence[ToolCallStep]) -> bool:
        return len(steps) >= count

    return condition


class ProgressEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["progress"] = "progress"
    data: Any


class CompletionSummary(BaseModel):
    steps: int
    progress_events: int
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class CompleteEvent(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    type: Literal["complete"] = "complete"
    data: Any
    summary: CompletionSummary


type ProtocolEvent = ProgressEvent | CompleteEvent


class ParseOutcome(BaseModel):
    """Result of one parse attempt: either ``value`` or an ``error`` message."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    value: Any = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ProgressiveOutcome(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    progress: list[ProgressEvent] = Field(default_factory=list)
    complete: CompleteEvent

    @property
    def data(self) -> Any:
        return self.complete.data


def parse_tool_payload(args: Any, schema: TypeAdapter[Any]) -> ParseOutcome:
    """Unwrap ``{"data": ...}`` and validate the payload.

    A string payload is decoded as JSON before validation.
    """
    if not isinstance(args, Mapping):
        return ParseOutcome(
            error=f"Tool arguments must be an object, got {type(args).__name__}"
        )
    if DATA_KEY not in args:
        return ParseOutcome(error=f"Tool arguments are missing the '{DATA_KEY}' field")

    payload = args[DATA_KEY]
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            return ParseOutcome(error=f"Invalid JSON in '{DATA_KEY}': {e}")

    try:
        return ParseOutcome(value=schema.validate_python(payload))
    except ValidationError as e:
        return ParseOutcome(error=str(e))


def _wrapper_schema(schema: TypeAdapter[Any]) -> dict[str, Any]:
    inner = schema.json_schema()
    # $ref pointers are absolute, so definitions have to live at the root.
    defs = inner.pop("$defs", None)
    wrapper: dict[str, Any] = {
        "type": "object",
        "properties": {DATA_KEY: inner},
        "required": [DATA_KEY],
    }
    if defs:
        wrapper["$defs"] = defs
    return wrapper


class _Closed:
    pass


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_CLOSED = _Closed()
_NO_RESULT = object()


class ProgressivePattern:
    """Drive one model turn through the progress/result tool contract.

    A pattern holds only the schemas. Every :meth:`run` keeps its own state,
    so one pattern can serve concurrent runs.
    """

    def __init__(self, progress_schema: Any, result_schema: Any):
        self.progress_schema = progress_schema
        self.result_schema = result_schema
        self._progress = TypeAdapter(progress_schema)
        self._result = TypeAdapter(result_schema)

    def tools(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name=REPORT_PROGRESS_TOOL,
                description=REPORT_PROGRESS_DESCRIPTION,
                parameters=_wrapper_schema(self._progress),
                ack=REPORT_PROGRESS_ACK,
            ),
            ToolSpec(
                name=SUBMIT_RESULT_TOOL,
                description=SUBMIT_RESULT_DESCRIPTION,
                parameters=_wrapper_schema(self._result),
                ack=SUBMIT_RESULT_ACK,
            ),
        ]

    @staticmethod
    def render_system_prompt(system: str | None = None, protocol: str | None = None) -> str:
        protocol_text = TOOL_CALLING_PROTOCOL if protocol is None else protocol
        return f"{system}\n\n{protocol_text}" if system else protocol_text

    def parse_progress(self, args: Any) -> ParseOutcome:
        return parse_tool_payload(args, self._progress)

    def parse_result(self, args: Any) -> ParseOutcome:
        return parse_tool_payload(args, self._result)

    def run(
        self,
        model: ToolCallingModel,
        *,
        prompt: str,
        system: str | None = None,
        stop_when: StopCondition | Sequence[StopCondition] | None = None,
        protocol: str | None = None,
    ) -> "ProgressiveRun":
        """Start a single-traversal run. Nothing happens until the first pull.

        ``stop_when`` conditions are combined with the built-in
        ``has_tool_call(SUBMIT_RESULT_TOOL)``; the model stream is closed as soon
        as any of them holds after a step.
        """
        if stop_when is None:
            extra: list[StopCondition] = []
        elif callable(stop_when):
            extra = [stop_when]
        else:
            extra = list(stop_when)

        request = ToolCallRequest(
            prompt=prompt,
            system=self.render_system_prompt(system, protocol),
            tools=self.tools(),
            tool_choice="required",
        )
        return ProgressiveRun(
            self, model, request, [has_tool_call(SUBMIT_RESULT_TOOL), *extra]
        )

    async def execute(
        self,
        model: ToolCallingModel,
        *,
        prompt: str,
        system: str | None = None,
        stop_when: StopCondition | Sequence[StopCondition] | None = None,
        protocol: str | None = None,
    ) -> ProgressiveOutcome:
        """Drain a run and return the collected events."""
        progress: list[ProgressEvent] = []
        complete: CompleteEvent | None = None
        async with self.run(
            model, prompt=prompt, system=system, stop_when=stop_when, protocol=protocol
        ) as run:
            async for event in run:
                if isinstance(event, ProgressEvent):
                    progress.append(event)
                else:
                    complete = event
        if complete is None:
            raise ProtocolExhaustedError()
        return ProgressiveOutcome(progress=progress, complete=complete)


class ProgressiveRun:
    """Async iterator over the events of one protocol run.

    Use as ``async with pattern.run(...) as run: async for event in run``, or
    call :meth:`aclose` after breaking out of a bare ``async for``. Leaving the
    block early closes the channel and cancels the producer. A run that is
    dropped without being closed cancels its producer when it is collected.
    """

    def __init__(
        self,
        pattern: ProgressivePattern,
        model: ToolCallingModel,
        request: ToolCallRequest,
        stop_conditions: list[StopCondition],
    ):
        self.pattern = pattern
        self.model = model
        self.request = request
        self.stop_conditions = stop_conditions
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=1)
        self._producer: asyncio.Task[None] | None = None
        self._awaiting_ack = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._finished

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> ProtocolEvent:
        if self._finished:
            raise StopAsyncIteration

        if self._producer is None:
            # The producer must not reference the run, or an abandoned run
            # would never be collected.
            self._producer = asyncio.create_task(
                _produce(
                    self.pattern,
                    self.model,
                    self.request,
                    self.stop_conditions,
                    self._queue,
                )
            )
        if self._awaiting_ack:
            self._awaiting_ack = False
            self._queue.task_done()

        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.task_done()
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._queue.task_done()
            self._finished = True
            raise item.error

        self._awaiting_ack = True
        return item

    async def aclose(self) -> None:
        self._finished = True
        producer = self._producer
        if producer is None or producer.done():
            return
        producer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await producer

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    def __del__(self) -> None:
        producer = getattr(self, "_producer", None)
        if producer is None or producer.done() or producer.get_loop().is_closed():
            return
        producer.cancel()


async def _hand_over(queue: asyncio.Queue[Any], event: ProtocolEvent) -> None:
    await queue.put(event)
    await queue.join()


async def _produce(
    pattern: ProgressivePattern,
    model: ToolCallingModel,
    request: ToolCallRequest,
    stop_conditions: list[StopCondition],
    queue: asyncio.Queue[Any],
) -> None:
    try:
        complete = await _drive(pattern, model, request, stop_conditions, queue)
        await _hand_over(queue, complete)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        await queue.put(_Failure(e))
        return
    await queue.put(_CLOSED)


async def _drive(
    pattern: ProgressivePattern,
    model: ToolCallingModel,
    request: ToolCallRequest,
    stop_conditions: list[StopCondition],
    queue: asyncio.Queue[Any],
) -> CompleteEvent:
    steps: list[ToolCallStep] = []
    result: Any = _NO_RESULT
    last_error: str | None = None
    progress_count = 0

    async with contextlib.aclosing(model.stream_tool_calls(request)) as stream:
        async for step in stream:
            steps.append(step)
            for call in step.calls:
                if call.name == REPORT_PROGRESS_TOOL:
                    outcome = pattern.parse_progress(call.args)
                    if not outcome.ok:
                        last_error = outcome.error
                        logger.debug("Dropped invalid progress payload: %s", outcome.error)
                        continue
                    progress_count += 1
                    await _hand_over(queue, ProgressEvent(data=outcome.value))
                elif call.name == SUBMIT_RESULT_TOOL:
                    outcome = pattern.parse_result(call.args)
                    if not outcome.ok:
                        last_error = outcome.error
                        logger.debug("Rejected result payload: %s", outcome.error)
                        continue
                    result = outcome.value

            if any(condition(steps) for condition in stop_conditions):
                break

    if result is _NO_RESULT:
        raise ProtocolExhaustedError(last_error)

    return CompleteEvent(
        data=result,
        summary=CompletionSummary(
            steps=len(steps),
            progress_events=progress_count,
            token_usage=TokenUsage.sum([step.usage for step in steps]),
        ),
    )
