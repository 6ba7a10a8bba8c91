from rich.console import Console
from rich.table import Table
from rich.text import Text

from agent_eval.multi_turn.types import EvaluationResult
from agent_eval.suite import CaseResult, EvalReport


def _termination_label(result: CaseResult) -> str:
    if not isinstance(result, EvaluationResult):
        return "-"
    termination = result.termination
    if termination.termination_type is None:
        return "-"
    return str(termination.termination_type)


def _status(result: CaseResult) -> Text:
    if result.passed:
        return Text("PASS", style="bold green")
    if result.error is not None:
        return Text(f"FAIL ({result.error.code})", style="bold red")
    return Text("FAIL", style="bold red")


def build_report_table(report: EvalReport) -> Table:
    table = Table(title="Evaluation Results", expand=True)
    table.add_column("Case", style="cyan")
    table.add_column("Turns", justify="right")
    table.add_column("Termination", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Std Dev", justify="right")
    table.add_column("Result")

    for result in report.results:
        turns = result.total_turns if isinstance(result, EvaluationResult) else 1
        table.add_row(
            result.test_case.id,
            str(turns),
            _termination_label(result),
            f"{result.overall_score:.2f}",
            (
                f"{result.iteration_stats.std_dev:.2f}"
                if result.iteration_stats is not None
                else "-"
            ),
            _status(result),
        )
    return table


def print_report(report: EvalReport, console: Console | None = None) -> None:
    """Render a results table and a one-line summary."""
    console = console or Console()
    console.print(build_report_table(report))

    summary = report.summary
    style = "green" if summary.failed == 0 else "yellow"
    console.print(
        f"[bold {style}]{summary.passed}/{summary.total} passed[/bold {style}] "
        f"(pass rate {summary.pass_rate:.0%}, avg score {summary.avg_score:.2f}, "
        f"tokens {summary.token_usage.total_tokens})"
    )
    if summary.iterations is not None:
        console.print(
            f"[dim]{summary.iterations} iterations per case: "
            f"avg std dev {summary.avg_std_dev or 0:.2f}, "
            f"avg pass rate {summary.avg_pass_rate or 0:.0%}[/dim]"
        )
