"""Declarative eval files.

Decoding YAML/JSON happens elsewhere; this module takes the parsed mapping::

    agent: support-bot
    defaults: {maxTurns: 6, endWhen: {field: status, equals: done}}
    personas:
      impatient: {name: Impatient customer, systemPrompt: "You are in a hurry..."}
    cases:
      - id: refund
        input: {message: "I want a refund"}
        persona: impatient
"""

from collections.abc import Mapping
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from agent_eval.core.errors import ConfigurationError
from agent_eval.engine.model import ToolCallingModel
from agent_eval.multi_turn.ai_user import AIUser, BuildInput
from agent_eval.multi_turn.conditions import (
    ConversationContext,
    FieldSetCondition,
    FieldValueCondition,
    NaturalLanguageCondition,
    TerminationCondition,
)
from agent_eval.multi_turn.types import (
    UNBOUNDED,
    FollowUpInput,
    MultiTurnTestCase,
    Outcome,
)
from agent_eval.suite import TestCase


class _Declarative(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class EndWhen(_Declarative):
    field: str | None = None
    equals: Any = None
    natural_language: str | None = Field(default=None, alias="naturalLanguage")

    @model_validator(mode="after")
    def _check_kind(self) -> Self:
        if not self.natural_language and not self.field:
            raise ValueError(
                "Invalid termination condition: no field or naturalLanguage specified"
            )
        return self

    def to_condition(self) -> TerminationCondition:
        if self.natural_language:
            return NaturalLanguageCondition(description=self.natural_language)
        assert self.field is not None
        # `equals: null` is a real expectation, so presence matters, not value.
        if "equals" in self.model_fields_set:
            return FieldValueCondition(field_path=self.field, expected_value=self.equals)
        return FieldSetCondition(field_path=self.field)


class Persona(_Declarative):
    name: str
    description: str | None = None
    system_prompt: str = Field(alias="systemPrompt")


class CaseDefaults(_Declarative):
    max_turns: int | None = Field(default=None, alias="maxTurns", ge=1)
    end_when: EndWhen | None = Field(default=None, alias="endWhen")
    on_condition_met: Outcome | None = Field(default=None, alias="onConditionMet")
    on_max_turns_reached: Outcome | None = Field(default=None, alias="onMaxTurnsReached")
    tags: list[str] = Field(default_factory=list)


class DeclaredCase(CaseDefaults):
    id: str
    name: str | None = None
    description: str | None = None
    input: Any
    persona: str | Persona | None = None


class EvalFile(_Declarative):
    agent: str
    name: str | None = None
    description: str | None = None
    defaults: CaseDefaults = Field(default_factory=CaseDefaults)
    personas: dict[str, Persona] = Field(default_factory=dict)
    cases: list[DeclaredCase] = Field(min_length=1)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid eval file: {e}",
                context={"errors": e.errors(include_url=False, include_context=False)},
                cause=e,
            ) from e

    def resolve_persona(self, ref: str | Persona | None) -> Persona | None:
        if ref is None or isinstance(ref, Persona):
            return ref
        if ref not in self.personas:
            raise ConfigurationError(
                f'Persona not found: "{ref}"',
                context={"persona_ref": ref, "available_personas": list(self.personas)},
            )
        return self.personas[ref]

    def to_test_cases(
        self,
        *,
        user_model: ToolCallingModel | None = None,
        build_input: BuildInput | None = None,
    ) -> list[TestCase | MultiTurnTestCase]:
        """Convert to runnable cases, applying ``defaults`` underneath each case.

        A case with a ``persona`` or an ``endWhen`` becomes multi-turn; its
        persona drives an unbounded :class:`AIUser` follow-up backed by
        ``user_model``.
        """
        return [
            self._convert(case, user_model=user_model, build_input=build_input)
            for case in self.cases
        ]

    def _convert(
        self,
        case: DeclaredCase,
        *,
        user_model: ToolCallingModel | None,
        build_input: BuildInput | None,
    ) -> TestCase | MultiTurnTestCase:
        defaults = self.defaults
        end_when = case.end_when or defaults.end_when
        tags = tuple([*defaults.tags, *case.tags])
        description = case.name or case.description

        if case.persona is None and end_when is None:
            return TestCase(
                id=case.id, input=case.input, description=description, tags=tags
            )

        follow_ups: list[FollowUpInput] = []
        persona = self.resolve_persona(case.persona)
        if persona is not None:
            if user_model is None:
                raise ConfigurationError(
                    "A user model is required for cases with a persona",
                    context={"case_id": case.id, "persona": persona.name},
                )
            follow_ups.append(
                FollowUpInput(
                    input=AIUser(
                        user_model,
                        persona=persona.system_prompt,
                        build_input=build_input or _message_input,
                        name=persona.name,
                    ),
                    description=f"AI User ({persona.name})",
                    turns=UNBOUNDED,
                )
            )

        return MultiTurnTestCase(
            id=case.id,
            input=case.input,
            follow_ups=tuple(follow_ups),
            terminate_when=(end_when.to_condition(),) if end_when else (),
            max_turns=case.max_turns or defaults.max_turns,
            on_condition_met=case.on_condition_met or defaults.on_condition_met or "pass",
            on_max_turns_reached=(
                case.on_max_turns_reached or defaults.on_max_turns_reached or "fail"
            ),
            description=description,
            tags=tags,
        )


def _message_input(message: str, context: ConversationContext) -> dict[str, str]:
    return {"message": message}
