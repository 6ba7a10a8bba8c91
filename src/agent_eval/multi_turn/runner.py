import inspect
import logging
import time
from collections.abc import Sequence
from enum import StrEnum
from typing import Any

from agent_eval.core.config import JudgeScope
from agent_eval.core.errors import (
    AgentExecutionError,
    ConfigurationError,
    EvalError,
    InputResolutionError,
)
from agent_eval.core.events import (
    CONVERSATION_TERMINATED,
    TURN_COMPLETED,
    Event,
    EventBus,
    event_bus,
)
from agent_eval.core.types import (
    DEFAULT_MAX_TURNS,
    ConversationTurn,
    EvalAgent,
    EvalContext,
    Judge,
    JudgeResult,
    MetricsResult,
    TokenUsage,
)
from agent_eval.engine.model import StructuredModel
from agent_eval.multi_turn.conditions import ConversationContext, MaxTurnsCondition
from agent_eval.multi_turn.termination import (
    TerminationResult,
    TerminationType,
    check_termination,
)
from agent_eval.multi_turn.types import (
    UNBOUNDED,
    EvaluationResult,
    FollowUpInput,
    MultiTurnTestCase,
)

logger = logging.getLogger(__name__)


class ConversationState(StrEnum):
    AWAITING_INPUT = "awaiting_input"
    EXECUTING_TURN = "executing_turn"
    EVALUATING_TERMINATION = "evaluating_termination"
    TERMINATED = "terminated"


def validate_follow_ups(follow_ups: Sequence[FollowUpInput]) -> None:
    """Reject repeat counts that are not positive, and unreachable entries."""
    last = len(follow_ups) - 1
    for position, follow_up in enumerate(follow_ups):
        turns = follow_up.turns
        if turns == UNBOUNDED:
            if position < last:
                raise ConfigurationError(
                    "An UNBOUNDED follow-up must be the last one "
                    "(subsequent items would be unreachable)",
                    context={
                        "description": follow_up.description,
                        "position": position,
                        "total_items": len(follow_ups),
                    },
                )
            continue
        if isinstance(turns, bool) or not isinstance(turns, int) or turns < 1:
            raise ConfigurationError(
                "turns must be a positive integer or UNBOUNDED",
                context={"description": follow_up.description, "turns": turns},
            )


def effective_max_turns(
    test_case: MultiTurnTestCase, default: int = DEFAULT_MAX_TURNS
) -> int:
    """The case bound (or ``default``), capped by its first ``maxTurns`` condition."""
    bound = test_case.max_turns if test_case.max_turns is not None else default
    for condition in test_case.terminate_when:
        if isinstance(condition, MaxTurnsCondition):
            return min(condition.count, bound)
    return bound


def follow_up_at(
    follow_ups: Sequence[FollowUpInput], index: int
) -> FollowUpInput | None:
    """Pick the follow-up for the ``index``-th follow-up turn, counting repeats."""
    start = 0
    for follow_up in follow_ups:
        if follow_up.turns == UNBOUNDED or index < start + follow_up.turns:
            return follow_up
        start += int(follow_up.turns)
    return None


def passed_by_termination(
    termination: TerminationResult, test_case: MultiTurnTestCase
) -> bool:
    match termination.termination_type:
        case None:
            return True
        case TerminationType.ERROR:
            return False
        case TerminationType.MAX_TURNS | TerminationType.EXHAUSTED:
            return test_case.on_max_turns_reached == "pass"
        case _:
            return test_case.on_condition_met == "pass"


_EXHAUSTED = object()


class MultiTurnRunner:
    """Runs multi-turn test cases against one agent and one judge.

    The runner itself is stateless; each :meth:`run` call gets its own
    :class:`ConversationRun`, so concurrent runs never share history.
    """

    def __init__(
        self,
        agent: EvalAgent,
        judge: Judge,
        *,
        agent_description: str = "",
        judge_scope: JudgeScope = JudgeScope.LAST_TURN,
        termination_model: StructuredModel | None = None,
        bus: EventBus | None = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        pass_threshold: float | None = None,
    ):
        self.agent = agent
        self.judge = judge
        self.agent_description = agent_description
        self.judge_scope = judge_scope
        self.termination_model = termination_model
        self.bus = bus or event_bus
        self.max_turns = max_turns
        self.pass_threshold = pass_threshold

    async def run(self, test_case: MultiTurnTestCase) -> EvaluationResult:
        validate_follow_ups(test_case.follow_ups)
        return await ConversationRun(self, test_case).execute()


class ConversationRun:
    """Private state of a single conversation."""

    def __init__(self, runner: MultiTurnRunner, test_case: MultiTurnTestCase):
        self.runner = runner
        self.test_case = test_case
        self.max_turns = effective_max_turns(test_case, runner.max_turns)
        self.state = ConversationState.AWAITING_INPUT
        self.history: list[ConversationTurn] = []
        self.usages: list[TokenUsage | None] = []
        self.latency_ms = 0.0
        self.error: EvalError | None = None
        self.termination = TerminationResult(
            terminated=False, reason="Execution not started"
        )

    def context(self, turn_index: int) -> ConversationContext:
        return ConversationContext(
            turn_index=turn_index,
            latest_output=self.history[-1].output if self.history else None,
            history=list(self.history),
        )

    async def execute(self) -> EvaluationResult:
        try:
            await self._loop()
        except EvalError as e:
            self._fail(e, f"{type(e).__name__}: {e.message}")

        self.state = ConversationState.TERMINATED
        logger.info(
            "Case '%s' terminated after %s turn(s): %s",
            self.test_case.id,
            len(self.history),
            self.termination.reason,
        )
        await self.runner.bus.emit(
            Event(
                name=CONVERSATION_TERMINATED,
                case_id=self.test_case.id,
                payload={
                    "total_turns": len(self.history),
                    "termination_type": self.termination.termination_type,
                    "reason": self.termination.reason,
                },
            )
        )
        return await self._finish()

    def _fail(self, error: EvalError, reason: str) -> None:
        self.error = error
        self.termination = TerminationResult(
            terminated=True,
            reason=reason,
            termination_type=TerminationType.ERROR,
        )

    async def _loop(self) -> None:
        for turn_index in range(1, self.max_turns + 1):
            self.state = ConversationState.AWAITING_INPUT
            turn_input = await self._next_input(turn_index)
            if turn_input is _EXHAUSTED:
                self.termination = TerminationResult(
                    terminated=True,
                    reason="All follow-up inputs exhausted",
                    termination_type=TerminationType.EXHAUSTED,
                )
                return

            self.state = ConversationState.EXECUTING_TURN
            if not await self._execute_turn(turn_index, turn_input):
                return

            self.state = ConversationState.EVALUATING_TERMINATION
            self.termination = await check_termination(
                self.test_case.terminate_when,
                self.context(turn_index),
                model=self.runner.termination_model,
            )
            if self.termination.terminated:
                return

            if turn_index >= self.max_turns:
                self.termination = TerminationResult(
                    terminated=True,
                    reason=f"Maximum turns reached ({self.max_turns})",
                    termination_type=TerminationType.MAX_TURNS,
                    matched_condition=MaxTurnsCondition(count=self.max_turns),
                )
                return

    async def _next_input(self, turn_index: int) -> Any:
        if turn_index == 1:
            return self.test_case.input

        follow_up = follow_up_at(self.test_case.follow_ups, turn_index - 2)
        if follow_up is None:
            return _EXHAUSTED

        value = follow_up.input
        if not callable(value):
            return value
        try:
            value = value(self.context(turn_index))
            if inspect.isawaitable(value):
                value = await value
        except EvalError:
            raise
        except Exception as e:
            raise InputResolutionError(
                f"Failed to resolve input for turn {turn_index}: {type(e).__name__}: {e}",
                context={
                    "test_case_id": self.test_case.id,
                    "turn": turn_index,
                    "follow_up": follow_up.description,
                },
                cause=e,
            ) from e
        return value

    async def _execute_turn(self, turn_index: int, turn_input: Any) -> bool:
        start = time.perf_counter()
        try:
            agent_result = await self.runner.agent.execute(turn_input)
        except Exception as e:
            latency_ms = (time.perf_counter() - start) * 1000
            self.latency_ms += latency_ms
            self.history.append(
                ConversationTurn(
                    turn_index=turn_index,
                    input=turn_input,
                    output=None,
                    latency_ms=latency_ms,
                )
            )
            logger.warning(
                "Agent failed on turn %s of case '%s': %s",
                turn_index,
                self.test_case.id,
                e,
            )
            error = AgentExecutionError(
                f"{type(e).__name__}: {e}",
                context={"test_case_id": self.test_case.id, "turn": turn_index},
                cause=e,
            )
            self._fail(error, f"Agent execution failed on turn {turn_index}: {e}")
            return False

        latency_ms = (time.perf_counter() - start) * 1000
        self.latency_ms += latency_ms
        self.usages.append(agent_result.metadata.token_usage)
        self.history.append(
            ConversationTurn(
                turn_index=turn_index,
                input=turn_input,
                output=agent_result.result,
                metadata=agent_result.metadata,
                latency_ms=latency_ms,
            )
        )
        logger.debug(
            "Case '%s' turn %s completed in %.1f ms",
            self.test_case.id,
            turn_index,
            latency_ms,
        )
        await self.runner.bus.emit(
            Event(
                name=TURN_COMPLETED,
                case_id=self.test_case.id,
                payload={"turn_index": turn_index, "latency_ms": latency_ms},
            )
        )
        return True

    def judge_context(self) -> EvalContext:
        if self.runner.judge_scope == JudgeScope.TRANSCRIPT:
            return EvalContext(
                input=[{"turn": t.turn_index, "input": t.input} for t in self.history],
                output=[{"turn": t.turn_index, "output": t.output} for t in self.history],
                agent_description=self.runner.agent_description,
            )
        return EvalContext(
            input=self.test_case.input,
            output=self.history[-1].output if self.history else None,
            agent_description=self.runner.agent_description,
        )

    async def _finish(self) -> EvaluationResult:
        judge_result: JudgeResult | None = None
        if self.termination.termination_type != TerminationType.ERROR:
            try:
                judge_result = await self.runner.judge.evaluate(self.judge_context())
            except Exception as e:
                logger.exception("Judge failed for case '%s'", self.test_case.id)
                self.error = EvalError.from_exception(e, test_case_id=self.test_case.id)
            else:
                judge_result = judge_result.with_pass_threshold(self.runner.pass_threshold)

        passed = (
            self.error is None
            and judge_result is not None
            and judge_result.passed
            and passed_by_termination(self.termination, self.test_case)
        )
        return EvaluationResult(
            test_case=self.test_case,
            conversation_history=self.history,
            total_turns=len(self.history),
            termination=self.termination,
            verdicts=judge_result.verdicts if judge_result else [],
            overall_score=judge_result.overall_score if judge_result else 0.0,
            passed=passed,
            metrics=MetricsResult(
                token_usage=TokenUsage.sum(self.usages),
                latency_ms=self.latency_ms,
            ),
            judge_metadata=judge_result.metadata if judge_result else None,
            error=self.error,
        )


async def execute_multi_turn_case(
    test_case: MultiTurnTestCase,
    *,
    agent: EvalAgent,
    judge: Judge,
    agent_description: str = "",
    judge_scope: JudgeScope = JudgeScope.LAST_TURN,
    termination_model: StructuredModel | None = None,
    max_turns: int = DEFAULT_MAX_TURNS,
    pass_threshold: float | None = None,
) -> EvaluationResult:
    runner = MultiTurnRunner(
        agent,
        judge,
        agent_description=agent_description,
        judge_scope=judge_scope,
        termination_model=termination_model,
        max_turns=max_turns,
        pass_threshold=pass_threshold,
    )
    return await runner.run(test_case)
