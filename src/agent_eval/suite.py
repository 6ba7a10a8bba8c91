import asyncio
import logging
import time
from collections.abc import Sequence
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from agent_eval.core.config import EvalSettings
from agent_eval.core.errors import AgentExecutionError, EvalError
from agent_eval.core.events import CASE_COMPLETED, Event, EventBus, event_bus
from agent_eval.core.logging import setup_eval_logging
from agent_eval.core.types import (
    EvalAgent,
    EvalContext,
    IterationStats,
    Judge,
    JudgeMetadata,
    MetricsResult,
    TokenUsage,
    Verdict,
)
from agent_eval.engine.model import StructuredModel
from agent_eval.iteration import (
    aggregate_iteration_results,
    calculate_avg_pass_rate,
    calculate_avg_std_dev,
    validate_iterations,
)
from agent_eval.multi_turn.runner import MultiTurnRunner
from agent_eval.multi_turn.types import EvaluationResult, MultiTurnTestCase

logger = logging.getLogger(__name__)


class TestCase(BaseModel):
    """A single-turn case: one agent call, one judge call."""

    __test__ = False
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: str
    input: Any
    description: str | None = None
    tags: tuple[str, ...] = ()


class TestResult(BaseModel):
    __test__ = False
    model_config = ConfigDict(arbitrary_types_allowed=True)

    test_case: TestCase
    output: Any = None
    verdicts: list[Verdict] = Field(default_factory=list)
    overall_score: float = 0.0
    passed: bool = False
    metrics: MetricsResult = Field(default_factory=MetricsResult)
    judge_metadata: JudgeMetadata | None = None
    error: EvalError | None = None
    iteration_stats: IterationStats | None = None
    iteration_results: list["TestResult"] = Field(default_factory=list)

    @field_serializer("error")
    def _serialize_error(self, error: EvalError | None) -> dict[str, Any] | None:
        return error.to_dict() if error is not None else None


type CaseResult = TestResult | EvaluationResult


class ReportSummary(BaseModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    pass_rate: float = 0.0
    avg_score: float = 0.0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    iterations: int | None = None
    avg_std_dev: float | None = None
    avg_pass_rate: float | None = None


class EvalReport(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    results: list[TestResult | EvaluationResult] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)

    @classmethod
    def from_results(
        cls, results: Sequence[CaseResult], iterations: int | None = None
    ) -> Self:
        """Summarize results. Iteration averages are filled in for ``iterations > 1``."""
        total = len(results)
        passed = sum(1 for r in results if r.passed)
        summary = ReportSummary(
            total=total,
            passed=passed,
            failed=total - passed,
            pass_rate=round(passed / total, 4) if total else 0.0,
            avg_score=(
                round(sum(r.overall_score for r in results) / total, 2) if total else 0.0
            ),
            token_usage=TokenUsage.sum([r.metrics.token_usage for r in results]),
        )
        if iterations is not None and iterations > 1:
            summary.iterations = iterations
            summary.avg_std_dev = calculate_avg_std_dev(results)
            summary.avg_pass_rate = calculate_avg_pass_rate(results)
        return cls(results=list(results), summary=summary)

    @property
    def failures(self) -> list[CaseResult]:
        return [r for r in self.results if not r.passed]


async def execute_test_case(
    test_case: TestCase,
    *,
    agent: EvalAgent,
    judge: Judge,
    agent_description: str = "",
    pass_threshold: float | None = None,
) -> TestResult:
    """Run one agent call and grade it. An agent failure skips the judge.

    A ``pass_threshold`` replaces the judge's pass decision with
    ``overall_score >= pass_threshold``.
    """
    start = time.perf_counter()
    try:
        agent_result = await agent.execute(test_case.input)
    except Exception as e:
        logger.warning("Agent failed on case '%s': %s", test_case.id, e)
        return TestResult(
            test_case=test_case,
            metrics=MetricsResult(latency_ms=(time.perf_counter() - start) * 1000),
            error=AgentExecutionError(
                f"{type(e).__name__}: {e}",
                context={"test_case_id": test_case.id, "turn": 1},
                cause=e,
            ),
        )

    metrics = MetricsResult(
        token_usage=agent_result.metadata.token_usage or TokenUsage(),
        latency_ms=(time.perf_counter() - start) * 1000,
    )
    try:
        judge_result = await judge.evaluate(
            EvalContext(
                input=test_case.input,
                output=agent_result.result,
                agent_description=agent_description,
            )
        )
    except Exception as e:
        logger.exception("Judge failed for case '%s'", test_case.id)
        return TestResult(
            test_case=test_case,
            output=agent_result.result,
            metrics=metrics,
            error=EvalError.from_exception(e, test_case_id=test_case.id),
        )

    judge_result = judge_result.with_pass_threshold(pass_threshold)
    return TestResult(
        test_case=test_case,
        output=agent_result.result,
        verdicts=judge_result.verdicts,
        overall_score=judge_result.overall_score,
        passed=judge_result.passed,
        metrics=metrics,
        judge_metadata=judge_result.metadata,
    )


class EvalSuite:
    """Runs single-turn and multi-turn cases against one agent and judge.

    ``settings.pass_threshold`` (when set) overrides the judge's pass decision
    and ``settings.max_turns`` bounds multi-turn cases without their own bound.
    """

    def __init__(
        self,
        agent: EvalAgent,
        judge: Judge,
        *,
        agent_description: str = "",
        settings: EvalSettings | None = None,
        termination_model: StructuredModel | None = None,
        bus: EventBus | None = None,
    ):
        self.agent = agent
        self.judge = judge
        self.agent_description = agent_description
        self.settings = settings or EvalSettings()
        self.termination_model = termination_model
        self.bus = bus or event_bus

        if self.settings.log_file:
            setup_eval_logging(self.settings.log_file, self.settings.log_level_value)

    def with_agent(self, agent: EvalAgent) -> "EvalSuite":
        """A new suite for another agent, sharing the judge and settings."""
        return EvalSuite(
            agent,
            self.judge,
            agent_description=self.agent_description,
            settings=self.settings,
            termination_model=self.termination_model,
            bus=self.bus,
        )

    async def run_case(self, case: TestCase | MultiTurnTestCase) -> CaseResult:
        if isinstance(case, MultiTurnTestCase):
            runner = MultiTurnRunner(
                self.agent,
                self.judge,
                agent_description=self.agent_description,
                judge_scope=self.settings.judge_scope,
                termination_model=self.termination_model,
                bus=self.bus,
                max_turns=self.settings.max_turns,
                pass_threshold=self.settings.pass_threshold,
            )
            result: CaseResult = await runner.run(case)
        else:
            result = await execute_test_case(
                case,
                agent=self.agent,
                judge=self.judge,
                agent_description=self.agent_description,
                pass_threshold=self.settings.pass_threshold,
            )

        await self.bus.emit(
            Event(
                name=CASE_COMPLETED,
                case_id=case.id,
                payload={"passed": result.passed, "overall_score": result.overall_score},
            )
        )
        return result

    async def run(
        self,
        cases: Sequence[TestCase | MultiTurnTestCase],
        *,
        iterations: int = 1,
        stop_on_first_failure: bool = False,
    ) -> EvalReport:
        """Run every case ``iterations`` times and summarize.

        With ``iterations > 1`` each case result carries its iteration stats,
        scores the mean and passes on a majority. With ``stop_on_first_failure``
        no new case (or round) starts after a failure; cases already running
        finish, and cases that never ran are left out of the report.
        """
        validate_iterations(iterations)
        stop = asyncio.Event() if stop_on_first_failure else None

        if iterations == 1:
            results = [r for r in await self._run_round(cases, stop) if r is not None]
        else:
            rounds = []
            for iteration in range(iterations):
                if stop is not None and stop.is_set():
                    break
                logger.debug("Starting iteration %s/%s", iteration + 1, iterations)
                rounds.append(await self._run_round(cases, stop))
            results = aggregate_iteration_results(rounds)

        report = EvalReport.from_results(results, iterations)
        logger.info(
            "Suite finished: %s/%s passed (avg score %.2f)",
            report.summary.passed,
            report.summary.total,
            report.summary.avg_score,
        )
        return report

    async def _run_round(
        self,
        cases: Sequence[TestCase | MultiTurnTestCase],
        stop: asyncio.Event | None,
    ) -> list[CaseResult | None]:
        semaphore = asyncio.Semaphore(self.settings.concurrency)

        async def _sem_run(case: TestCase | MultiTurnTestCase) -> CaseResult | None:
            async with semaphore:
                if stop is not None and stop.is_set():
                    return None
                result = await self.run_case(case)
            if stop is not None and not result.passed and not stop.is_set():
                logger.info("Case '%s' failed; skipping cases not yet started", case.id)
                stop.set()
            return result

        return await asyncio.gather(*[_sem_run(case) for case in cases])
