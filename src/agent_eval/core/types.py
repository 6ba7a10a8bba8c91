from collections.abc import Callable
from typing import Any, Protocol, Self, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

SCORE_MIN = 0.0
SCORE_MAX = 100.0
DEFAULT_PASS_THRESHOLD = 70.0
DEFAULT_MAX_TURNS = 10
MAJORITY_PASS_RATE = 0.5


class TokenUsage(BaseModel):
    """Token counts for one or more model calls."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: "TokenUsage | None") -> "TokenUsage":
        if other is None:
            return self
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def sum(cls, usages: "list[TokenUsage | None]") -> Self:
        total = cls()
        for usage in usages:
            total = total + usage
        return total


class AgentMetadata(BaseModel):
    token_usage: TokenUsage | None = None
    latency_ms: float | None = None
    model: str | None = None


class AgentResult(BaseModel):
    """What an agent returns from ``execute``."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    result: Any
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)


@runtime_checkable
class EvalAgent(Protocol):
    """The agent under test."""

    async def execute(self, input: Any) -> AgentResult:  # noqa: A002
        """Run one turn and return its structured output."""
        ...


class ValidationResult(BaseModel):
    valid: bool
    errors: list[dict[str, Any]] = Field(default_factory=list)
    error_summary: str | None = None


ValidatorFn = Callable[[Any], ValidationResult]


class Criterion(BaseModel):
    """A named, weighted check contributing to the overall score.

    Criteria with a ``validator`` are evaluated programmatically; the rest are
    graded by the judge model.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    name: str
    description: str
    weight: float = Field(default=1.0, ge=0)
    validator: ValidatorFn | None = Field(default=None, exclude=True)

    @property
    def is_deterministic(self) -> bool:
        return self.validator is not None


class Verdict(BaseModel):
    criterion_id: str
    score: float = Field(ge=SCORE_MIN, le=SCORE_MAX)
    reasoning: str
    passed: bool


class JudgeMetadata(BaseModel):
    token_usage: TokenUsage
    model: str | None = None


class EvalContext(BaseModel):
    """Everything the judge needs to grade one output."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    input: Any
    output: Any
    agent_description: str = ""


class JudgeResult(BaseModel):
    verdicts: list[Verdict]
    overall_score: float
    passed: bool
    metadata: JudgeMetadata | None = None

    def with_pass_threshold(self, threshold: float | None) -> "JudgeResult":
        """Re-derive ``passed`` from ``overall_score``. ``None`` keeps the judge's call."""
        if threshold is None:
            return self
        return self.model_copy(update={"passed": self.overall_score >= threshold})


@runtime_checkable
class Judge(Protocol):
    async def evaluate(self, context: EvalContext) -> JudgeResult: ...


class ConversationTurn(BaseModel):
    """One agent exchange. ``output`` is ``None`` when the agent failed."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    turn_index: int = Field(ge=1)
    input: Any
    output: Any = None
    metadata: AgentMetadata | None = None
    latency_ms: float = 0.0


class MetricsResult(BaseModel):
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    latency_ms: float = 0.0


class IterationStats(BaseModel):
    """Spread of one case's results over repeated runs.

    ``std_dev`` is the population standard deviation of ``scores``.
    """

    iterations: int = 0
    scores: list[float] = Field(default_factory=list)
    mean: float = 0.0
    std_dev: float = 0.0
    min_score: float = 0.0
    max_score: float = 0.0
    pass_rate: float = 0.0
    pass_count: int = 0


class MultiTurnIterationStats(IterationStats):
    avg_turns: float = 0.0
    min_turns: int = 0
    max_turns: int = 0
    termination_counts: dict[str, int] = Field(default_factory=dict)
