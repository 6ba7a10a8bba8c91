import asyncio
import logging
import os
import re
import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any, TypeVar, override

from google.adk.agents import Agent
from google.adk.agents.readonly_context import ReadonlyContext
from google.adk.apps import App
from google.adk.models.base_llm import BaseLlm
from google.adk.models.llm_request import LlmRequest
from google.adk.models.llm_response import LlmResponse
from google.adk.plugins.base_plugin import BasePlugin
from google.adk.runners import Runner
from google.adk.sessions import BaseSessionService, InMemorySessionService
from google.adk.tools import BaseTool, ToolContext
from google.api_core import exceptions as google_exceptions
from google.genai import types
from json_repair import repair_json
from pydantic import BaseModel, ConfigDict, Field

from agent_eval.core.errors import ConfigurationError, EvalError, ModelCallError
from agent_eval.core.types import TokenUsage
from agent_eval.engine.model import (
    Generation,
    ToolCall,
    ToolCallRequest,
    ToolCallStep,
    ToolSpec,
)

T = TypeVar("T", bound=BaseModel)
logger = logging.getLogger(__name__)

APP_NAME = "agent_eval"
USER_ID = "system"

TRANSIENT_ERRORS = (
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.InternalServerError,
    google_exceptions.TooManyRequests,
)


class ADKConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    model_name: Any
    temperature: float = 0.7
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    api_base: str | None = None
    api_key: str | None = None
    name: str | None = None
    description: str | None = None
    generation_config: dict[str, Any] | None = None
    plugins: list[BasePlugin] = Field(default_factory=list)
    mock_responder: Callable[[str], Any] | None = None
    use_litellm: bool = False
    enable_logging: bool = False
    session_service: BaseSessionService | None = None


class RetryPolicy(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_factor: float = 2.0


class MockLlm(BaseLlm):
    """Mock LLM implementation for testing.

    The responder receives the text of the latest request content and returns
    either plain text, ``{"text": ...}``, or ``{"function_calls": [{"name": ...,
    "args": {...}}, ...]}`` to simulate tool use.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)
    mock_responder: Callable[[str], Any] | None = None

    def __init__(self, mock_responder: Callable[[str], Any], model: str = "mock-model"):
        super().__init__(model=model)
        object.__setattr__(self, "mock_responder", mock_responder)

    @override
    async def generate_content_async(
        self,
        llm_request: LlmRequest,
        stream: bool = False,
    ) -> AsyncGenerator[LlmResponse, None]:
        actual_contents = getattr(llm_request, "contents", None) or []

        prompt = ""
        if actual_contents and actual_contents[-1].parts:
            prompt = "".join(p.text for p in actual_contents[-1].parts if p.text)

        if self.mock_responder is None:
            raise ConfigurationError("MockLlm needs a mock_responder")
        result = self.mock_responder(prompt)
        if asyncio.iscoroutine(result):
            result = await result

        parts = []
        if isinstance(result, dict) and "function_calls" in result:
            parts.extend(
                types.Part(
                    function_call=types.FunctionCall(
                        name=call["name"], args=call.get("args") or {}
                    )
                )
                for call in result["function_calls"]
            )
        elif isinstance(result, dict) and "text" in result:
            parts.append(types.Part(text=str(result["text"])))
        else:
            parts.append(types.Part(text=str(result)))

        yield LlmResponse(content=types.Content(role="model", parts=parts))


class ProtocolTool(BaseTool):
    """An ADK tool declared from a raw JSON schema.

    Execution only acknowledges the call; the caller reads the arguments from
    the event stream.
    """

    def __init__(self, spec: ToolSpec):
        super().__init__(name=spec.name, description=spec.description)
        self.spec = spec

    @override
    def _get_declaration(self) -> types.FunctionDeclaration:
        return types.FunctionDeclaration(
            name=self.name,
            description=self.description,
            parameters_json_schema=self.spec.parameters,
        )

    @override
    async def run_async(self, *, args: dict[str, Any], tool_context: ToolContext) -> Any:
        return dict(self.spec.ack)


def usage_from_metadata(metadata: Any) -> TokenUsage | None:
    """Convert google-genai usage metadata into :class:`TokenUsage`."""
    if metadata is None:
        return None
    prompt_tokens = getattr(metadata, "prompt_token_count", None) or 0
    output_tokens = getattr(metadata, "candidates_token_count", None) or 0
    total_tokens = getattr(metadata, "total_token_count", None) or (
        prompt_tokens + output_tokens
    )
    return TokenUsage(
        input_tokens=prompt_tokens,
        output_tokens=output_tokens,
        total_tokens=total_tokens,
    )


def raise_for_error_event(event: Any, model: str) -> None:
    """Raise ``ModelCallError`` for an ADK event that reports a failed model call.

    ADK turns model exceptions into events carrying ``error_code`` and
    ``error_message`` instead of raising them.
    """
    error_code = getattr(event, "error_code", None)
    error_message = getattr(event, "error_message", None)
    if not error_code and not error_message:
        return
    raise ModelCallError(
        f"Model call failed: {error_message or error_code}",
        context={"model": model, "error_code": str(error_code) if error_code else None},
    )


def _agent_name(name: str) -> str:
    cleaned = re.sub(r"\W", "_", name)
    if not cleaned or cleaned[0].isdigit():
        cleaned = f"agent_{cleaned}"
    return cleaned


class ADKController:
    """Model transport built on google_adk.Agent and Runner.

    Implements both ``StructuredModel`` (``generate``) and ``ToolCallingModel``
    (``stream_tool_calls``). Retries apply to ``generate`` only; a tool-call
    stream cannot be replayed once events have been handed out.
    """

    def __init__(
        self,
        config: ADKConfig,
        retry_policy: RetryPolicy | None = None,
        mock_responder: Callable[[str], Any] | None = None,
        name: str | None = None,
    ) -> None:
        self.config = config
        self.retry_policy = retry_policy or RetryPolicy()
        self.mock_responder = mock_responder or config.mock_responder
        self.name = _agent_name(name or config.name or "agent_eval_model")
        self.session_service = config.session_service or InMemorySessionService()

        api_key = (
            self.config.api_key
            or os.environ.get("GOOGLE_API_KEY")
            or os.environ.get("GEMINI_API_KEY")
        )
        if api_key:
            os.environ["GOOGLE_API_KEY"] = api_key

        self.model = self._resolve_model()

    @property
    def model_label(self) -> str:
        return str(self.config.model_name)

    def _resolve_model(self) -> Any:
        if self.mock_responder:
            return MockLlm(self.mock_responder, model=str(self.config.model_name))

        use_litellm = self.config.use_litellm
        if (
            not use_litellm
            and isinstance(self.config.model_name, str)
            and (self.config.model_name.startswith("openai/") or self.config.api_base)
        ):
            use_litellm = True
            logger.info(
                "Auto-enabling LiteLLM for model '%s' (api_base: %s)",
                self.config.model_name,
                self.config.api_base,
            )

        if not use_litellm:
            return self.config.model_name

        from google.adk.models.lite_llm import LiteLlm

        if self.config.api_base and isinstance(self.config.model_name, str):
            if self.config.model_name.startswith("openai/"):
                os.environ["OPENAI_API_BASE"] = self.config.api_base
            else:
                os.environ["LITELLM_API_BASE"] = self.config.api_base

            if self.config.api_key:
                if self.config.model_name.startswith("openai/"):
                    os.environ["OPENAI_API_KEY"] = self.config.api_key
                else:
                    os.environ["LITELLM_API_KEY"] = self.config.api_key
            elif "OPENAI_API_KEY" not in os.environ:
                os.environ["OPENAI_API_KEY"] = "dummy"

        return LiteLlm(model=self.config.model_name)

    def _content_config(self, tool_choice: str | None = None) -> types.GenerateContentConfig:
        model_config = (self.config.generation_config or {}).copy()
        model_config.setdefault("temperature", self.config.temperature)
        if self.config.top_p is not None:
            model_config.setdefault("top_p", self.config.top_p)
        if self.config.top_k is not None:
            model_config.setdefault("top_k", self.config.top_k)
        if "max_tokens" in model_config:
            model_config["max_output_tokens"] = model_config.pop("max_tokens")
        elif self.config.max_tokens is not None:
            model_config.setdefault("max_output_tokens", self.config.max_tokens)

        if tool_choice == "required":
            model_config["tool_config"] = types.ToolConfig(
                function_calling_config=types.FunctionCallingConfig(mode="ANY")
            )
        return types.GenerateContentConfig(**model_config)

    def _build_runner(
        self,
        instruction: str | None,
        tools: list[BaseTool] | None = None,
        output_schema: type[BaseModel] | None = None,
        tool_choice: str | None = None,
    ) -> Runner:
        text = instruction or ""

        # A callable instruction bypasses ADK's {state} templating, which would
        # otherwise trip over JSON examples in evaluation prompts.
        def provide_instruction(_: ReadonlyContext) -> str:
            return text

        agent = Agent(
            name=self.name,
            model=self.model,
            instruction=provide_instruction,
            description=self.config.description or "",
            tools=list(tools or []),
            generate_content_config=self._content_config(tool_choice),
            output_schema=output_schema,
        )

        plugins: list[BasePlugin] = []
        if self.config.enable_logging:
            from agent_eval.engine.logging_plugin import ModelCallLoggingPlugin

            plugins.append(ModelCallLoggingPlugin())
        plugins.extend(self.config.plugins)

        app = App(name=APP_NAME, root_agent=agent, plugins=plugins)
        return Runner(app=app, session_service=self.session_service)

    async def _new_session(self, prefix: str) -> str:
        session_id = f"{prefix}_{uuid.uuid4().hex[:8]}"
        await self.session_service.create_session(
            app_name=APP_NAME,
            user_id=USER_ID,
            session_id=session_id,
            state={},
        )
        return session_id

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        output_schema: type[T] | None = None,
    ) -> Generation:
        """Generate content with retry logic using the ADK Runner.

        If ``output_schema`` is provided, the final text is repaired as JSON and
        validated into the schema. Exhausted retries raise ``ModelCallError``.
        """
        runner = self._build_runner(system, output_schema=output_schema)

        async def run_attempt() -> tuple[str, TokenUsage | None]:
            session_id = await self._new_session("gen")
            content = types.Content(role="user", parts=[types.Part(text=prompt)])

            final_text = ""
            usage: TokenUsage | None = None
            async for event in runner.run_async(
                user_id=USER_ID,
                session_id=session_id,
                new_message=content,
            ):
                raise_for_error_event(event, self.model_label)
                event_usage = usage_from_metadata(getattr(event, "usage_metadata", None))
                if event_usage is not None:
                    usage = event_usage + usage
                if event.is_final_response():
                    if event.content and event.content.parts:
                        final_text = "".join(
                            p.text
                            for p in event.content.parts
                            if p.text and not getattr(p, "thought", False)
                        )
                    break
            return final_text, usage

        attempt = 0
        current_delay = self.retry_policy.initial_delay
        last_error: Exception | None = None

        while attempt < self.retry_policy.max_attempts:
            try:
                if attempt > 0:
                    logger.info(
                        "Retrying generation (attempt %s/%s)...",
                        attempt + 1,
                        self.retry_policy.max_attempts,
                    )
                raw_text, usage = await run_attempt()

                result: Any = raw_text
                if output_schema:
                    result = self._parse_structured(raw_text, output_schema)

                return Generation(output=result, usage=usage, model=self.model_label)

            except TRANSIENT_ERRORS as e:
                last_error = e
                attempt += 1
                logger.warning(
                    "Generation attempt %s failed with transient error: %s: %s",
                    attempt,
                    type(e).__name__,
                    e,
                )
            except Exception as e:
                last_error = e
                attempt += 1
                logger.warning(
                    "Generation attempt %s failed: %s: %s",
                    attempt,
                    type(e).__name__,
                    e,
                )

            if attempt < self.retry_policy.max_attempts:
                await asyncio.sleep(current_delay)
                current_delay *= self.retry_policy.backoff_factor

        msg = (
            f"Failed to generate after {self.retry_policy.max_attempts} attempts. "
            f"Last error: {type(last_error).__name__}: {last_error}"
        )
        raise ModelCallError(
            msg,
            context={"model": self.model_label, "attempts": attempt},
            cause=last_error,
        )

    @staticmethod
    def _parse_structured(raw_text: str, output_schema: type[T]) -> T:
        cleaned_text = raw_text.strip()
        try:
            repaired_obj = repair_json(
                cleaned_text, return_objects=True, schema=output_schema
            )
        except Exception:
            # Fallback to standard repair if schema-guided repair fails
            repaired_obj = repair_json(cleaned_text, return_objects=True)

        try:
            if isinstance(repaired_obj, str) and repaired_obj == "":
                return output_schema.model_validate_json(cleaned_text)
            return output_schema.model_validate(repaired_obj)
        except Exception:
            logger.exception("Failed to parse model output as JSON (even with repair)")
            logger.debug("Raw output: %s", raw_text)
            raise

    async def stream_tool_calls(
        self, request: ToolCallRequest
    ) -> AsyncGenerator[ToolCallStep, None]:
        """Expose tool calls from the ADK event stream, one step per model event.

        Closing this iterator closes the underlying ADK run, so no further model
        calls are made after the consumer stops.
        """
        runner = self._build_runner(
            request.system,
            tools=[ProtocolTool(spec) for spec in request.tools],
            tool_choice=request.tool_choice,
        )
        session_id = await self._new_session("tools")
        content = types.Content(role="user", parts=[types.Part(text=request.prompt)])

        events = runner.run_async(
            user_id=USER_ID,
            session_id=session_id,
            new_message=content,
        )
        try:
            async for event in events:
                raise_for_error_event(event, self.model_label)
                calls = event.get_function_calls()
                if not calls:
                    continue
                yield ToolCallStep(
                    calls=[
                        ToolCall(name=call.name, args=dict(call.args or {}))
                        for call in calls
                    ],
                    usage=usage_from_metadata(getattr(event, "usage_metadata", None)),
                )
        except EvalError:
            raise
        except Exception as e:
            raise ModelCallError.from_exception(e, model=self.model_label) from e
        finally:
            await events.aclose()


def model_config(
    name: str,
    temperature: float = 0.7,
    **kwargs: Any,
) -> ADKConfig:
    """Create an ADKConfig instance, mimicking google-adk's model_config."""
    return ADKConfig(model_name=name, temperature=temperature, **kwargs)
