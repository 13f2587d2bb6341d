"""Rich terminal renderer for run reports, plans, and history.

Color scheme
------------
- green        : SUCCEEDED
- yellow       : SUCCEEDED WITH WARNINGS, RUNNING
- red          : FAILED
- dim          : SKIPPED (by condition or upstream skip), PENDING
- bold red     : SKIPPED because an upstream failed or the run was cancelled
"""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gantry.models.artifacts import ArtifactRef
from gantry.models.reports import RunReport, RunStatus, TaskEvent, TaskReport
from gantry.models.tasks import TaskOutcome, TaskStatus


# ---------------------------------------------------------------------------
# Outcome -> Rich markup
# ---------------------------------------------------------------------------

_OUTCOME_LABELS: dict[TaskOutcome, str] = {
    TaskOutcome.SUCCEEDED: "[green]SUCCEEDED[/green]",
    TaskOutcome.SUCCEEDED_WITH_WARNINGS: "[yellow]WARNINGS[/yellow]",
    TaskOutcome.FAILED: "[bold red]FAILED[/bold red]",
    TaskOutcome.SKIPPED: "[dim]SKIPPED[/dim]",
}

_STATUS_STYLES: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "dim",
    TaskStatus.READY: "cyan",
    TaskStatus.RUNNING: "yellow",
    TaskStatus.SUCCEEDED: "green",
    TaskStatus.FAILED: "bold red",
    TaskStatus.SKIPPED: "dim",
}

_RUN_STATUS_LABELS: dict[RunStatus, str] = {
    RunStatus.PENDING: "[dim]PENDING[/dim]",
    RunStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    RunStatus.SUCCEEDED: "[bold green]SUCCEEDED[/bold green]",
    RunStatus.FAILED: "[bold red]FAILED[/bold red]",
}


def outcome_label(task: TaskReport) -> str:
    """Markup for a task's outcome column."""
    if task.status == TaskStatus.SKIPPED and task.counts_as_failure:
        return "[bold red]SKIPPED[/bold red]"
    return _OUTCOME_LABELS.get(task.outcome, task.outcome.value)


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


class RunRenderer:
    """Renders run reports and related views as Rich output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Run report
    # ------------------------------------------------------------------

    def render_report(self, report: RunReport) -> Panel:
        """Render a RunReport as a Panel holding the task table and a summary."""
        table = self._build_task_table(report.tasks)

        summary_parts = [
            f"[bold]Run:[/bold] {report.run_id}",
            f"[bold]Status:[/bold] {_RUN_STATUS_LABELS[report.status]}",
            f"[bold]Duration:[/bold] {report.duration_seconds:.1f}s",
            f"[bold]Artifacts:[/bold] {len(report.artifacts)}",
        ]
        if report.ref:
            summary_parts.append(f"[bold]Ref:[/bold] {report.ref}")
        if report.environment:
            summary_parts.append(f"[bold]Env:[/bold] {report.environment}")
        if report.cancelled:
            summary_parts.append("[bold red]CANCELLED[/bold red]")
        summary = "  |  ".join(summary_parts)

        parts: list = [table, Text(""), Text.from_markup(summary)]
        if report.error:
            parts.append(Text(f"Run aborted: {report.error}", style="bold red"))

        border = "green" if report.succeeded else "red"
        return Panel(
            Group(*parts),
            title=f"[bold]{report.pipeline}[/bold]",
            subtitle=report.started_at.strftime("%Y-%m-%d %H:%M:%S UTC"),
            border_style=border,
            padding=(1, 2),
        )

    def _build_task_table(self, tasks: Sequence[TaskReport]) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("Task", min_width=16)
        table.add_column("Outcome", min_width=12, justify="center")
        table.add_column("Attempts", justify="right", width=8)
        table.add_column("Duration", justify="right", width=10)
        table.add_column("Details", min_width=20)
        table.add_column("Artifacts", justify="right", width=9)

        for task in tasks:
            style = _STATUS_STYLES.get(task.status, "")
            name = task.name if task.required else f"{task.name} [dim](best-effort)[/dim]"

            details: list[str] = []
            if task.skip_reason is not None:
                details.append(f"[dim]{task.skip_reason.value}[/dim]")
            if task.error:
                details.append(f"[red]{escape(task.error)}[/red]")
            detail = " | ".join(details) if details else "[dim]-[/dim]"

            duration = f"{task.duration_seconds:.1f}s" if task.started_at else "[dim]-[/dim]"
            table.add_row(
                f"[{style}]{name}[/{style}]",
                outcome_label(task),
                str(task.attempts) if task.attempts else "[dim]0[/dim]",
                duration,
                detail,
                str(len(task.artifacts)) if task.artifacts else "[dim]0[/dim]",
            )
        return table

    def print_report(self, report: RunReport) -> None:
        self.console.print(self.render_report(report))

    def print_failures(self, report: RunReport) -> None:
        """Print the failing tasks and the tail of their logs."""
        for task in report.tasks:
            if not task.counts_as_failure:
                continue
            status = f" (exit {task.exit_code})" if task.exit_code is not None else ""
            self.console.print(
                f"[bold red]{task.name}[/bold red]{status}: {escape(task.error)}"
            )
            if task.logs:
                tail = "\n".join(task.logs.splitlines()[-20:])
                self.console.print(Panel(Text(tail), title=f"{task.name} log", border_style="red"))

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    def render_plan(self, name: str, waves: Sequence[Sequence[str]]) -> Table:
        """Render execution waves: each wave's tasks can run concurrently."""
        table = Table(title=f"Plan: {name}", show_header=True, header_style="bold cyan")
        table.add_column("Wave", style="dim", justify="right", width=5)
        table.add_column("Tasks")
        for i, wave in enumerate(waves):
            table.add_row(str(i), ", ".join(wave))
        return table

    # ------------------------------------------------------------------
    # History and artifacts
    # ------------------------------------------------------------------

    def render_history(self, runs: Sequence[dict[str, str | None]]) -> Table:
        table = Table(title="Runs", show_header=True, header_style="bold cyan")
        table.add_column("Run ID", style="cyan")
        table.add_column("Pipeline")
        table.add_column("Status", justify="center")
        table.add_column("Started")
        table.add_column("Finished")
        for row in runs:
            status = row.get("status") or "running"
            try:
                label = _RUN_STATUS_LABELS[RunStatus(status)]
            except ValueError:
                label = status
            table.add_row(
                row["run_id"] or "",
                row.get("pipeline") or "",
                label,
                row.get("started_at") or "",
                row.get("finished_at") or "[dim]-[/dim]",
            )
        return table

    def render_artifacts(self, run_id: str, refs: Sequence[ArtifactRef]) -> Table:
        table = Table(title=f"Artifacts of {run_id}", show_header=True, header_style="bold cyan")
        table.add_column("Name", style="cyan")
        table.add_column("Producer")
        table.add_column("Size", justify="right")
        table.add_column("Digest", style="dim")
        for ref in refs:
            table.add_row(ref.name, ref.producer, _format_size(ref.size_bytes), ref.digest)
        return table

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def print_event(self, event: TaskEvent) -> None:
        """One line per task transition, for live progress during a run."""
        style = _STATUS_STYLES.get(event.to_status, "")
        line = (
            f"[dim]{event.timestamp_utc.strftime('%H:%M:%S')}[/dim] "
            f"[{style}]{event.task_name:<20} {event.to_status.value}[/{style}]"
        )
        if event.attempt > 1:
            line += f" [dim](attempt {event.attempt})[/dim]"
        if event.detail and event.to_status in (TaskStatus.FAILED, TaskStatus.SKIPPED):
            line += f" [dim]{escape(event.detail)}[/dim]"
        self.console.print(line)

    def print_chain_verification(self, run_id: str, valid: bool) -> None:
        if valid:
            self.console.print(f"[green]Hash chain for run {run_id} is valid.[/green]")
        else:
            self.console.print(f"[bold red]Hash chain for run {run_id} is BROKEN![/bold red]")
