"""Aggregation of repeated runs of the same cases."""

import statistics
from collections import Counter
from collections.abc import Sequence
from typing import Any

from agent_eval.core.errors import ConfigurationError, EvalError
from agent_eval.core.types import (
    MAJORITY_PASS_RATE,
    IterationStats,
    MultiTurnIterationStats,
)
from agent_eval.multi_turn.types import EvaluationResult


def validate_iterations(iterations: Any) -> None:
    if isinstance(iterations, bool) or not isinstance(iterations, int) or iterations < 1:
        raise ConfigurationError(
            f"Invalid iterations value: {iterations}. Must be a positive integer.",
            context={"iterations": iterations},
        )


def calculate_iteration_stats(results: Sequence[Any]) -> IterationStats:
    """Mean, population standard deviation, range and pass rate of the scores."""
    if not results:
        return IterationStats()

    scores = [r.overall_score for r in results]
    pass_count = sum(1 for r in results if r.passed)
    return IterationStats(
        iterations=len(results),
        scores=scores,
        mean=statistics.fmean(scores),
        std_dev=statistics.pstdev(scores),
        min_score=min(scores),
        max_score=max(scores),
        pass_rate=pass_count / len(results),
        pass_count=pass_count,
    )


def calculate_multi_turn_iteration_stats(
    results: Sequence[EvaluationResult],
) -> MultiTurnIterationStats:
    base = calculate_iteration_stats(results)
    turns = [r.total_turns for r in results]
    counts = Counter(
        str(r.termination.termination_type)
        for r in results
        if r.termination.termination_type is not None
    )
    return MultiTurnIterationStats(
        **base.model_dump(),
        avg_turns=statistics.fmean(turns) if turns else 0.0,
        min_turns=min(turns, default=0),
        max_turns=max(turns, default=0),
        termination_counts=dict(counts),
    )


def select_representative(results: Sequence[Any], mean: float) -> Any:
    """The result whose score is closest to ``mean``; the earliest wins ties."""
    if not results:
        raise EvalError("Cannot select a representative result from no results")
    return min(results, key=lambda r: abs(r.overall_score - mean))


def aggregate_case(results: Sequence[Any]) -> Any:
    """Fold the runs of one case into a single result carrying the stats.

    The representative run supplies output, verdicts and metrics; the score
    becomes the mean and the case passes when at least half the runs passed.
    """
    if all(isinstance(r, EvaluationResult) for r in results):
        stats: IterationStats = calculate_multi_turn_iteration_stats(results)
    else:
        stats = calculate_iteration_stats(results)
    representative = select_representative(results, stats.mean)
    return representative.model_copy(
        update={
            "overall_score": stats.mean,
            "passed": stats.pass_rate >= MAJORITY_PASS_RATE,
            "iteration_stats": stats,
            "iteration_results": list(results),
        }
    )


def aggregate_iteration_results(rounds: Sequence[Sequence[Any | None]]) -> list[Any]:
    """Group per-round results by case position and aggregate each case.

    Every round lists one slot per case; ``None`` marks a case that did not
    run in that round. Cases that never ran are left out.
    """
    if not rounds:
        return []

    aggregated = []
    for index in range(len(rounds[0])):
        runs = [r[index] for r in rounds if r[index] is not None]
        if runs:
            aggregated.append(aggregate_case(runs))
    return aggregated


def _average_stat(results: Sequence[Any], field: str) -> float | None:
    values = [
        getattr(r.iteration_stats, field)
        for r in results
        if getattr(r, "iteration_stats", None) is not None
    ]
    return statistics.fmean(values) if values else None


def calculate_avg_std_dev(results: Sequence[Any]) -> float | None:
    return _average_stat(results, "std_dev")


def calculate_avg_pass_rate(results: Sequence[Any]) -> float | None:
    return _average_stat(results, "pass_rate")
