import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from agent_eval.core.errors import EvalError
from agent_eval.core.types import (
    ConversationTurn,
    JudgeMetadata,
    MetricsResult,
    MultiTurnIterationStats,
    Verdict,
)
from agent_eval.multi_turn.conditions import TerminationCondition
from agent_eval.multi_turn.termination import TerminationResult

UNBOUNDED = math.inf
"""Repeat count for a follow-up that keeps going until the conversation ends."""

Outcome = Literal["pass", "fail"]


class FollowUpInput(BaseModel):
    """Input for turns 2 and later.

    ``input`` is a static value, a sync or async callable taking the
    :class:`ConversationContext`, or an :class:`AIUser`.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    input: Any
    description: str | None = None
    turns: int | float = 1


class MultiTurnTestCase(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    input: Any
    follow_ups: tuple[FollowUpInput, ...] = ()
    terminate_when: tuple[TerminationCondition, ...] = ()
    max_turns: int | None = Field(default=None, ge=1)
    on_condition_met: Outcome = "pass"
    on_max_turns_reached: Outcome = "fail"
    description: str | None = None
    tags: tuple[str, ...] = ()


class EvaluationResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    test_case: MultiTurnTestCase
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    total_turns: int = 0
    termination: TerminationResult
    verdicts: list[Verdict] = Field(default_factory=list)
    overall_score: float = 0.0
    passed: bool = False
    metrics: MetricsResult = Field(default_factory=MetricsResult)
    judge_metadata: JudgeMetadata | None = None
    error: EvalError | None = None
    iteration_stats: MultiTurnIterationStats | None = None
    iteration_results: list["EvaluationResult"] = Field(default_factory=list)

    @property
    def output(self) -> Any:
        if not self.conversation_history:
            return None
        return self.conversation_history[-1].output

    @field_serializer("error")
    def _serialize_error(self, error: EvalError | None) -> dict[str, Any] | None:
        return error.to_dict() if error is not None else None
