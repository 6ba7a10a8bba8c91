from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)

from agent_eval.core.errors import ConfigurationError
from agent_eval.core.types import ConversationTurn


class ConversationContext(BaseModel):
    """State handed to termination checks and follow-up input resolvers."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    turn_index: int
    latest_output: Any = None
    history: list[ConversationTurn] = Field(default_factory=list)


class _Condition(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
    )


class MaxTurnsCondition(_Condition):
    type: Literal["maxTurns"] = "maxTurns"
    count: int = Field(ge=1)


class FieldSetCondition(_Condition):
    type: Literal["fieldSet"] = "fieldSet"
    field_path: str = Field(alias="fieldPath", min_length=1)


class FieldValueCondition(_Condition):
    type: Literal["fieldValue"] = "fieldValue"
    field_path: str = Field(alias="fieldPath", min_length=1)
    expected_value: Any = Field(alias="expectedValue")


CheckFn = Callable[[ConversationContext], bool | Awaitable[bool]]


class CustomCondition(_Condition):
    type: Literal["custom"] = "custom"
    check: CheckFn
    description: str | None = None


class NaturalLanguageCondition(_Condition):
    """Asks a model whether ``description`` holds for the conversation so far."""

    type: Literal["naturalLanguage"] = "naturalLanguage"
    description: str = Field(min_length=1)
    system_prompt: str | None = Field(default=None, alias="systemPrompt")


TerminationCondition = Annotated[
    MaxTurnsCondition
    | FieldSetCondition
    | FieldValueCondition
    | CustomCondition
    | NaturalLanguageCondition,
    Field(discriminator="type"),
]

_conditions_adapter = TypeAdapter(list[TerminationCondition])


def parse_conditions(
    raw: Sequence[Mapping[str, Any] | BaseModel],
) -> list[TerminationCondition]:
    """Validate a declarative condition list once, at load time."""
    try:
        return _conditions_adapter.validate_python(list(raw))
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid termination conditions: {e}",
            context={"errors": e.errors(include_url=False, include_context=False)},
            cause=e,
        ) from e


def describe_condition(condition: TerminationCondition) -> str:
    match condition:
        case MaxTurnsCondition(count=count):
            return f"maxTurns({count})"
        case FieldSetCondition(field_path=path):
            return f"fieldSet({path})"
        case FieldValueCondition(field_path=path, expected_value=expected):
            return f"fieldValue({path}, {expected!r})"
        case CustomCondition(description=description):
            return description or "custom"
        case NaturalLanguageCondition(description=description):
            short = description if len(description) <= 50 else description[:47] + "..."
            return f"NL: {short}"
    return str(condition.type)


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

_SCALARS = (str, bytes, int, float, bool)


def get_field_value(obj: Any, field_path: str) -> Any:
    """Look up a dot-separated path on mappings, attributes and list indices.

    Returns :data:`MISSING` when any segment does not resolve, so an absent
    field can be told apart from one explicitly set to ``None``.
    """
    current = obj
    for part in field_path.split("."):
        if current is None or current is MISSING or isinstance(current, _SCALARS):
            return MISSING
        if isinstance(current, Mapping):
            current = current.get(part, MISSING)
        elif isinstance(current, Sequence):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            current = getattr(current, part, MISSING)
    return current
