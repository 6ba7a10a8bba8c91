from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, Field

from agent_eval.engine.model import ToolCallingModel
from agent_eval.engine.prompt import PromptEngine
from agent_eval.multi_turn.conditions import ConversationContext
from agent_eval.protocol.progressive import ProgressivePattern

DEFAULT_PERSONA = """You are simulating a realistic user in a conversation with an AI assistant.

## Your Role
Generate natural, context-appropriate user messages based on the conversation history.

## Guidelines
1. Stay in character. Write the way a real user would, casual phrasing included.
2. Be goal-oriented. Answer the assistant's questions, ask for clarification when \
something is unclear, and steer the task toward completion.
3. React to what the assistant says. Acknowledge help, point out confusion and \
correct misunderstandings.
4. Keep it realistic. Real users do not always give complete information upfront \
and may add requirements along the way.

## Output Format
Submit ONLY the user's message. No formatting, explanation or meta-commentary."""

TRANSCRIPT_TEMPLATE = """{% if history -%}
## Conversation History
{% for turn in history -%}
[Turn {{ turn.turn_index }}]
User: {{ turn.input | tojson_pretty }}
Assistant: {{ turn.output | tojson_pretty }}

{% endfor -%}
## Your Task
Generate the next user message based on the conversation above.
{%- else -%}
## Your Task
This is the start of a new conversation. Generate an appropriate opening message from the user.
{%- endif %}"""


class UserThought(BaseModel):
    thought: str = Field(description="What the simulated user is thinking")


class UserReply(BaseModel):
    message: str = Field(description="The next message the user sends")


BuildInput = Callable[[str, ConversationContext], Any]
PersonaFn = Callable[[ConversationContext], str]


def _message_only(message: str, context: ConversationContext) -> Any:
    return message


class AIUser:
    """A model playing the human side of a conversation.

    ``persona`` is the system prompt: a Jinja template rendered with
    ``turn_index``, ``history`` and ``latest_output``, or a callable taking the
    conversation context. The submitted message goes through ``build_input``
    to become the agent's next input.
    """

    def __init__(
        self,
        model: ToolCallingModel,
        *,
        persona: str | PersonaFn | None = None,
        build_input: BuildInput | None = None,
        transcript_template: str = TRANSCRIPT_TEMPLATE,
        name: str | None = None,
    ):
        self.model = model
        self.persona = persona if persona is not None else DEFAULT_PERSONA
        self.build_input = build_input or _message_only
        self.transcript_template = transcript_template
        self.name = name
        self.pattern = ProgressivePattern(UserThought, UserReply)
        self.prompt_engine = PromptEngine()

    def render_persona(self, context: ConversationContext) -> str:
        if callable(self.persona):
            return self.persona(context)
        return self.prompt_engine.render(
            self.persona,
            turn_index=context.turn_index,
            history=context.history,
            latest_output=context.latest_output,
        )

    def render_transcript(self, context: ConversationContext) -> str:
        return self.prompt_engine.render(
            self.transcript_template,
            turn_index=context.turn_index,
            history=context.history,
            latest_output=context.latest_output,
        )

    async def __call__(self, context: ConversationContext) -> Any:
        outcome = await self.pattern.execute(
            self.model,
            prompt=self.render_transcript(context),
            system=self.render_persona(context),
        )
        reply: UserReply = outcome.data
        return self.build_input(reply.message, context)

    def __repr__(self) -> str:
        return f"AIUser(name={self.name!r})"
