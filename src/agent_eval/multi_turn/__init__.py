from .ai_user import AIUser, UserReply
from .conditions import (
    MISSING,
    ConversationContext,
    CustomCondition,
    FieldSetCondition,
    FieldValueCondition,
    MaxTurnsCondition,
    NaturalLanguageCondition,
    TerminationCondition,
    get_field_value,
    parse_conditions,
)
from .runner import (
    ConversationState,
    MultiTurnRunner,
    execute_multi_turn_case,
)
from .termination import (
    TerminationResult,
    TerminationType,
    after_turns,
    all_of,
    any_of,
    check_condition,
    check_termination,
    field_equals,
    field_is_set,
    negate,
)
from .types import UNBOUNDED, EvaluationResult, FollowUpInput, MultiTurnTestCase

__all__ = [
    "MISSING",
    "UNBOUNDED",
    "AIUser",
    "ConversationContext",
    "ConversationState",
    "CustomCondition",
    "EvaluationResult",
    "FieldSetCondition",
    "FieldValueCondition",
    "FollowUpInput",
    "MaxTurnsCondition",
    "MultiTurnRunner",
    "MultiTurnTestCase",
    "NaturalLanguageCondition",
    "TerminationCondition",
    "TerminationResult",
    "TerminationType",
    "UserReply",
    "after_turns",
    "all_of",
    "any_of",
    "check_condition",
    "check_termination",
    "execute_multi_turn_case",
    "field_equals",
    "field_is_set",
    "get_field_value",
    "negate",
    "parse_conditions",
]
