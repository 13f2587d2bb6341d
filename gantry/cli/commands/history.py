"""Commands that inspect past runs: ``history``, ``show``, ``verify``,
``artifacts`` and ``prune``.

All of them read the Run Ledger and the artifact store configured by
``GANTRY_*`` settings; none of them execute tasks.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from gantry.core.errors import ArtifactError, LedgerIntegrityError
from gantry.core.orchestrator import Orchestrator
from gantry.monitor.renderer import RunRenderer

console = Console()


def history_cmd(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of runs to list."),
) -> None:
    """List recent runs, newest first."""
    runs = Orchestrator().list_runs(limit)
    if not runs:
        console.print("[dim]No runs recorded yet.[/dim]")
        return
    console.print(RunRenderer(console=console).render_history(runs))


def show_cmd(
    run_id: str = typer.Argument(..., help="The run to show."),
    logs: bool = typer.Option(False, "--logs", help="Also print each task's log."),
) -> None:
    """Show the report of a finished run."""
    report = Orchestrator().get_report(run_id)
    if report is None:
        console.print(f"[bold red]No finished run named {escape(run_id)}.[/bold red]")
        raise typer.Exit(code=1)

    renderer = RunRenderer(console=console)
    renderer.print_report(report)
    if logs:
        for task in report.tasks:
            if task.logs:
                console.rule(task.name)
                console.print(task.logs, markup=False, highlight=False)
    raise typer.Exit(code=report.exit_code)


def verify_cmd(
    run_id: str = typer.Argument(..., help="The run to verify."),
) -> None:
    """Verify the ledger hash chain and every artifact digest of a run."""
    orchestrator = Orchestrator()
    renderer = RunRenderer(console=console)
    ok = True

    try:
        orchestrator.verify_chain(run_id)
        renderer.print_chain_verification(run_id, True)
    except LedgerIntegrityError as exc:
        ok = False
        renderer.print_chain_verification(run_id, False)
        console.print(f"  [red]{escape(str(exc))}[/red]")

    for ref in orchestrator.artifact_store.list_artifacts(run_id):
        if orchestrator.artifact_store.verify(run_id, ref.name):
            console.print(f"[green]OK[/green]       {ref.name} [dim]{ref.digest}[/dim]")
        else:
            ok = False
            console.print(f"[bold red]CORRUPT[/bold red]  {ref.name}")

    if not ok:
        raise typer.Exit(code=1)


def artifacts_cmd(
    run_id: str = typer.Argument(..., help="The run whose artifacts to list."),
    fetch: Optional[str] = typer.Option(
        None, "--fetch", help="Name of an artifact to fetch instead of listing."
    ),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Where to write a fetched artifact (default: stdout)."
    ),
) -> None:
    """List the artifacts of a run, or fetch one of them."""
    store = Orchestrator().artifact_store

    if fetch is None:
        refs = store.list_artifacts(run_id)
        if not refs:
            console.print(f"[dim]No artifacts for run {escape(run_id)}.[/dim]")
            return
        console.print(RunRenderer(console=console).render_artifacts(run_id, refs))
        return

    try:
        data = store.fetch(run_id, fetch)
    except ArtifactError as exc:
        console.print(f"[bold red]{escape(str(exc))}[/bold red]")
        raise typer.Exit(code=1)

    if output is None:
        sys.stdout.buffer.write(data)
        sys.stdout.flush()
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(data)
        console.print(f"Wrote {fetch} ({len(data)} bytes) to {output}")


def prune_cmd(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        min=0,
        help="Retention in days (default: GANTRY_ARTIFACT_RETENTION_DAYS).",
    ),
) -> None:
    """Delete the artifacts of runs older than the retention period."""
    purged = Orchestrator().prune_artifacts(days)
    if not purged:
        console.print("[dim]Nothing to prune.[/dim]")
        return
    for run_id in purged:
        console.print(f"Pruned [cyan]{run_id}[/cyan]")
