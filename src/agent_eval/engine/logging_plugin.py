import logging

from google.adk.agents.callback_context import CallbackContext
from google.adk.models.llm_request import LlmRequest
from google.adk.models.llm_response import LlmResponse
from google.adk.plugins.base_plugin import BasePlugin
from google.genai import types


def _describe_parts(parts: list[types.Part] | None) -> list[str]:
    described = []
    for part in parts or []:
        if part.text:
            described.append(part.text)
        elif part.function_call:
            described.append(
                f"call {part.function_call.name}({part.function_call.args or {}})"
            )
        elif part.function_response:
            described.append(f"response {part.function_response.name}")
    return described


class ModelCallLoggingPlugin(BasePlugin):
    """Log every model request and response, tool calls included.

    Records go to ``agent_eval.model_calls`` at DEBUG, so they end up in the
    file configured by ``setup_eval_logging``.
    """

    def __init__(self, name: str = "ModelCallLoggingPlugin"):
        super().__init__(name=name)
        self.logger = logging.getLogger("agent_eval.model_calls")

    async def before_model_callback(
        self, *, callback_context: CallbackContext, llm_request: LlmRequest
    ) -> LlmResponse | None:
        agent_name = getattr(callback_context, "agent_name", "UnknownAgent")
        prompts = [
            text
            for content in getattr(llm_request, "contents", None) or []
            for text in _describe_parts(content.parts)
        ]
        self.logger.debug("LLM REQUEST [%s]: %s", agent_name, " | ".join(prompts))
        return None

    async def after_model_callback(
        self, *, callback_context: CallbackContext, llm_response: LlmResponse
    ) -> LlmResponse | None:
        agent_name = getattr(callback_context, "agent_name", "UnknownAgent")
        content = getattr(llm_response, "content", None)
        responses = _describe_parts(content.parts) if content else []
        self.logger.debug("LLM RESPONSE [%s]: %s", agent_name, " | ".join(responses))
        return None
