"""Rich output formatting for the provision CLI.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from provision_engine.checks.models import CheckResult
from provision_engine.models.run import PipelineResult
from provision_engine.models.snapshot import RestoreReport
from provision_engine.orchestrator import PipelineDefinition

# ---------------------------------------------------------------------------
# Status colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "SUCCEEDED": "green",
    "UNDONE": "green",
    "RESTORED": "green",
    "ROLLED_BACK": "yellow",
    "FAILED_IGNORED": "yellow",
    "FAILED": "red",
    "NOT_RUN": "dim",
    "NO_UNDO": "dim",
    "PENDING": "dim",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _check_mark(result: CheckResult) -> str:
    if result.passed:
        return "[green]✓[/green]"
    if result.required:
        return "[red]✗[/red]"
    return "[yellow]![/yellow]"


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


def display_plan(console: Console, definition: PipelineDefinition) -> None:
    """Render the steps of *definition* without running anything."""
    table = Table(title=f"Pipeline: {definition.name}", show_lines=False, expand=False)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Step", style="bold")
    table.add_column("Resources")
    table.add_column("Undo", justify="center")
    table.add_column("On failure")
    table.add_column("Description")

    for idx, step in enumerate(definition.steps, start=1):
        table.add_row(
            str(idx),
            step.name,
            "\n".join(step.resources) or "-",
            "yes" if step.undo is not None else "-",
            "[yellow]continue[/yellow]" if step.continue_on_failure else "roll back",
            step.description,
        )

    console.print(table)
    console.print(
        f"[dim]{len(definition.preconditions)} precondition(s), "
        f"{len(definition.verifications)} verification(s)[/dim]"
    )


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def display_check_results(console: Console, title: str, results: Sequence[CheckResult]) -> None:
    """Render a list of precondition or verification results.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    title:
        Heading for the table.
    results:
        Results in evaluation order.  Failed advisory checks are shown
        in yellow; failed required checks in red.
    """
    if not results:
        console.print(f"[dim]No {title.lower()} to run.[/dim]")
        return

    table = Table(title=title, show_lines=False, expand=False)
    table.add_column("", justify="center")
    table.add_column("Check", style="bold")
    table.add_column("Required", justify="center")
    table.add_column("Detail")
    table.add_column("Duration", justify="right")

    for result in results:
        table.add_row(
            _check_mark(result),
            result.name,
            "yes" if result.required else "no",
            result.detail,
            f"{result.duration_ms}ms",
        )
    console.print(table)

    blocking = sum(1 for r in results if r.is_blocking)
    warnings = sum(1 for r in results if r.is_warning)
    parts = [f"[bold]{len(results)}[/bold] check(s)"]
    if blocking:
        parts.append(f"[red]{blocking} failed[/red]")
    if warnings:
        parts.append(f"[yellow]{warnings} warning(s)[/yellow]")
    if not blocking and not warnings:
        parts.append("[green]all passed[/green]")
    console.print(", ".join(parts))


# ---------------------------------------------------------------------------
# Pipeline result
# ---------------------------------------------------------------------------


def display_pipeline_result(console: Console, result: PipelineResult) -> None:
    """Render the full report of a pipeline run."""
    if result.precondition_results:
        display_check_results(console, "Preconditions", result.precondition_results)

    if result.aborted_before_running:
        console.print(
            Panel(
                result.failure.detail if result.failure else "Preconditions failed",
                title="Aborted before any step ran",
                border_style="red",
            )
        )
        return

    table = Table(title="Steps", show_lines=False, expand=False)
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Duration", justify="right")
    table.add_column("Detail")
    for outcome in result.step_outcomes:
        detail = outcome.failure.detail if outcome.failure else ""
        table.add_row(
            outcome.step_name,
            _coloured_status(outcome.status.value),
            f"{outcome.duration_ms / 1000:.2f}s" if outcome.duration_ms else "-",
            detail,
        )
    console.print(table)

    if result.rolled_back:
        _display_rollback(console, result)

    if result.verification_results:
        display_check_results(console, "Verification", result.verification_results)

    for warning in result.warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    for vwarning in result.verification_warnings:
        console.print(f"[yellow]verification:[/yellow] {vwarning.check_name}: {vwarning.detail}")

    header = [
        f"[bold]Run:[/bold]      {result.run_id}",
        f"[bold]Pipeline:[/bold] {result.pipeline_name or '-'}",
        f"[bold]Status:[/bold]   {_coloured_status(result.status.value)}",
    ]
    if result.audit_dir is not None:
        header.append(f"[bold]Snapshot:[/bold] {result.audit_dir}")
    border = "green" if result.succeeded else "red"
    console.print(Panel("\n".join(header), title="Provisioning Result", border_style=border))


def _display_rollback(console: Console, result: PipelineResult) -> None:
    console.print(f"[red]Step {result.failed_step} failed:[/red] {result.failure.detail if result.failure else ''}")
    if result.failure is not None and result.failure.stderr:
        console.print(Panel(result.failure.stderr, title="stderr", border_style="dim"))

    if result.restore_report is not None:
        display_restore_report(console, result.restore_report)

    if result.undo_outcomes:
        table = Table(title="Undo", show_lines=False, expand=False)
        table.add_column("Step", style="bold")
        table.add_column("Status")
        table.add_column("Detail")
        for undo in result.undo_outcomes:
            table.add_row(
                undo.step_name,
                _coloured_status(undo.status.value),
                undo.failure.detail if undo.failure else "",
            )
        console.print(table)

    residual = result.residual_discrepancies
    if residual:
        console.print("[bold red]Rollback left the host partially changed:[/bold red]")
        for issue in residual:
            console.print(f"  [red]✗[/red] {issue}")


def display_restore_report(console: Console, report: RestoreReport) -> None:
    """Render per-resource restore outcomes."""
    if not report.outcomes:
        console.print("[dim]Snapshot was empty; nothing to restore.[/dim]")
        return

    table = Table(title=f"Restore of {report.snapshot_id}", show_lines=False, expand=False)
    table.add_column("Resource", style="bold")
    table.add_column("Status")
    table.add_column("Reason")
    for outcome in report.outcomes:
        table.add_row(outcome.resource_id, _coloured_status(outcome.status.value), outcome.reason)
    console.print(table)
