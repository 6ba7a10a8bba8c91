import inspect
import logging
from collections.abc import Mapping, Sequence
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict

from agent_eval.core.errors import ConfigurationError, EvalError, ModelCallError
from agent_eval.engine.model import StructuredModel
from agent_eval.engine.prompt import PromptEngine, to_json
from agent_eval.multi_turn.conditions import (
    MISSING,
    ConversationContext,
    CustomCondition,
    FieldSetCondition,
    FieldValueCondition,
    MaxTurnsCondition,
    NaturalLanguageCondition,
    TerminationCondition,
    describe_condition,
    get_field_value,
)

logger = logging.getLogger(__name__)


class TerminationType(StrEnum):
    MAX_TURNS = "maxTurns"
    FIELD_SET = "fieldSet"
    FIELD_VALUE = "fieldValue"
    CUSTOM = "custom"
    NATURAL_LANGUAGE = "naturalLanguage"
    EXHAUSTED = "exhausted"
    ERROR = "error"


class TerminationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    terminated: bool
    reason: str
    termination_type: TerminationType | None = None
    matched_condition: TerminationCondition | None = None


NL_SYSTEM_PROMPT = """You are an assistant that evaluates whether a conversation should terminate.
Analyze the conversation history and determine if the specified condition is met.
Respond with ONLY "yes" or "no" - nothing else."""

NL_USER_TEMPLATE = """## Termination Condition
{{ description }}

## Conversation History
{% for turn in history -%}
Turn {{ turn.turn_index }}:
Input: {{ turn.input | tojson_pretty }}
Output: {{ turn.output | tojson_pretty }}

{% else -%}
(No history yet)

{% endfor -%}
## Current Turn
Turn: {{ turn_index }}
Last Output: {{ latest_output | tojson_pretty }}

Should the conversation terminate based on the condition above? Answer "yes" or "no" only."""

_prompt_engine = PromptEngine()


def _met(condition: TerminationCondition, reason: str) -> TerminationResult:
    return TerminationResult(
        terminated=True,
        reason=reason,
        termination_type=TerminationType(condition.type),
        matched_condition=condition,
    )


def _not_met(reason: str) -> TerminationResult:
    return TerminationResult(terminated=False, reason=reason)


def _check_max_turns(
    condition: MaxTurnsCondition, context: ConversationContext
) -> TerminationResult:
    if context.turn_index >= condition.count:
        return _met(condition, f"Maximum turns reached ({condition.count})")
    return _not_met(f"Turn {context.turn_index} of {condition.count}")


def _check_field_set(
    condition: FieldSetCondition, context: ConversationContext
) -> TerminationResult:
    value = get_field_value(context.latest_output, condition.field_path)
    if value is not MISSING and value is not None:
        return _met(
            condition,
            f'Field "{condition.field_path}" is set (value: {to_json(value, indent=None)})',
        )
    return _not_met(f'Field "{condition.field_path}" is not set')


def values_equal(actual: Any, expected: Any) -> bool:
    """Structural equality that never treats a bool as equal to a number."""
    if isinstance(actual, Mapping) and isinstance(expected, Mapping):
        return actual.keys() == expected.keys() and all(
            values_equal(actual[key], expected[key]) for key in actual
        )
    if isinstance(actual, list | tuple) and isinstance(expected, list | tuple):
        return len(actual) == len(expected) and all(map(values_equal, actual, expected))
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    return actual == expected


def _check_field_value(
    condition: FieldValueCondition, context: ConversationContext
) -> TerminationResult:
    value = get_field_value(context.latest_output, condition.field_path)
    if value is not MISSING and values_equal(value, condition.expected_value):
        return _met(condition, f'Field "{condition.field_path}" equals expected value')
    got = repr(value) if value is MISSING else to_json(value, indent=None)
    return _not_met(
        f'Field "{condition.field_path}" does not equal expected value (got: {got})'
    )


async def _check_custom(
    condition: CustomCondition, context: ConversationContext
) -> TerminationResult:
    description = condition.description or "Custom condition"
    try:
        outcome: Any = condition.check(context)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except Exception as e:
        logger.warning("Termination check '%s' raised: %s", description, e)
        return _not_met(f"{description} failed: {e}")

    if outcome:
        return _met(condition, f"{description} met")
    return _not_met(f"{description} not met")


async def _check_natural_language(
    condition: NaturalLanguageCondition,
    context: ConversationContext,
    model: StructuredModel | None,
) -> TerminationResult:
    if model is None:
        raise ConfigurationError(
            "naturalLanguage termination conditions need a model",
            context={"description": condition.description},
        )

    prompt = _prompt_engine.render(
        NL_USER_TEMPLATE,
        description=condition.description,
        history=context.history,
        turn_index=context.turn_index,
        latest_output=context.latest_output,
    )
    try:
        generation = await model.generate(
            prompt, system=condition.system_prompt or NL_SYSTEM_PROMPT
        )
    except EvalError:
        raise
    except Exception as e:
        raise ModelCallError.from_exception(
            e, condition=describe_condition(condition)
        ) from e

    answer = generation.text.strip().lower()
    label = describe_condition(condition)
    if answer.startswith("yes"):
        return _met(condition, f"{label} met")
    return _not_met(f"{label} not met (answer: {answer[:20]!r})")


async def check_condition(
    condition: TerminationCondition,
    context: ConversationContext,
    *,
    model: StructuredModel | None = None,
) -> TerminationResult:
    match condition:
        case MaxTurnsCondition():
            return _check_max_turns(condition, context)
        case FieldValueCondition():
            return _check_field_value(condition, context)
        case FieldSetCondition():
            return _check_field_set(condition, context)
        case CustomCondition():
            return await _check_custom(condition, context)
        case NaturalLanguageCondition():
            return await _check_natural_language(condition, context, model)
    raise ConfigurationError(
        f"Unknown condition type: {condition!r}", context={"condition": condition}
    )


async def check_termination(
    conditions: Sequence[TerminationCondition],
    context: ConversationContext,
    *,
    model: StructuredModel | None = None,
) -> TerminationResult:
    """Check conditions in declaration order; the first one satisfied wins."""
    if not conditions:
        return _not_met("No termination conditions specified")

    for condition in conditions:
        result = await check_condition(condition, context, model=model)
        if result.terminated:
            return result

    return _not_met("No termination conditions met")


def all_of(
    *conditions: TerminationCondition, model: StructuredModel | None = None
) -> CustomCondition:
    """Satisfied when every sub-condition is. Empty means never."""

    async def check(context: ConversationContext) -> bool:
        if not conditions:
            return False
        for condition in conditions:
            result = await check_condition(condition, context, model=model)
            if not result.terminated:
                return False
        return True

    labels = ", ".join(describe_condition(c) for c in conditions)
    return CustomCondition(check=check, description=f"all_of({labels})")


def any_of(
    *conditions: TerminationCondition, model: StructuredModel | None = None
) -> CustomCondition:
    """Satisfied when any sub-condition is. Empty means never."""

    async def check(context: ConversationContext) -> bool:
        for condition in conditions:
            result = await check_condition(condition, context, model=model)
            if result.terminated:
                return True
        return False

    labels = ", ".join(describe_condition(c) for c in conditions)
    return CustomCondition(check=check, description=f"any_of({labels})")


def negate(
    condition: TerminationCondition, model: StructuredModel | None = None
) -> CustomCondition:
    async def check(context: ConversationContext) -> bool:
        result = await check_condition(condition, context, model=model)
        return not result.terminated

    return CustomCondition(
        check=check, description=f"not({describe_condition(condition)})"
    )


def after_turns(count: int) -> CustomCondition:
    return CustomCondition(
        check=lambda context: context.turn_index >= count,
        description=f"after_turns({count})",
    )


def field_equals(field_path: str, expected_value: Any) -> CustomCondition:
    condition = FieldValueCondition(field_path=field_path, expected_value=expected_value)
    return CustomCondition(
        check=lambda context: _check_field_value(condition, context).terminated,
        description=f"field_equals({field_path}, {expected_value!r})",
    )


def field_is_set(field_path: str) -> CustomCondition:
    condition = FieldSetCondition(field_path=field_path)
    return CustomCondition(
        check=lambda context: _check_field_set(condition, context).terminated,
        description=f"field_is_set({field_path})",
    )
