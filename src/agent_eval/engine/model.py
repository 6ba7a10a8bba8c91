"""Collaborator contracts between the evaluation core and a model transport.

The core never talks to a network directly. Anything that satisfies
:class:`StructuredModel` can back the judge, the natural-language termination
check and text generation; anything that satisfies :class:`ToolCallingModel`
can back the progress/result protocol (and therefore the AI-simulated user).
"""

from collections.abc import AsyncGenerator
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from agent_eval.core.types import TokenUsage


class Generation(BaseModel):
    """A single completed model call."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    output: Any
    usage: TokenUsage | None = None
    model: str | None = None

    @property
    def text(self) -> str:
        if isinstance(self.output, str):
            return self.output
        if isinstance(self.output, BaseModel):
            return self.output.model_dump_json()
        return str(self.output)


class ToolSpec(BaseModel):
    name: str
    description: str
    parameters: dict[str, Any]
    ack: dict[str, Any] = Field(default_factory=dict)
    """Response handed back to the model when it calls the tool."""


class ToolCall(BaseModel):
    name: str
    args: Any = None


class ToolCallStep(BaseModel):
    """All tool calls the model emitted in one response."""

    calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage | None = None


class ToolCallRequest(BaseModel):
    prompt: str
    system: str | None = None
    tools: list[ToolSpec] = Field(default_factory=list)
    tool_choice: Literal["auto", "required"] = "required"


@runtime_checkable
class StructuredModel(Protocol):
    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        output_schema: type[BaseModel] | None = None,
    ) -> Generation:
        """Run one call; parse into ``output_schema`` when given."""
        ...


@runtime_checkable
class ToolCallingModel(Protocol):
    def stream_tool_calls(
        self, request: ToolCallRequest
    ) -> AsyncGenerator[ToolCallStep, None]:
        """Lazily yield tool-call steps until the model ends its turn."""
        ...
