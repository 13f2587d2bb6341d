"""Main Typer application — imports and registers all CLI commands.

Entry point: ``gantry`` (configured via pyproject.toml scripts).
"""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from gantry import __version__
from gantry.cli.commands.history import (
    artifacts_cmd,
    history_cmd,
    prune_cmd,
    show_cmd,
    verify_cmd,
)
from gantry.cli.commands.plan import plan_cmd, validate_cmd
from gantry.cli.commands.run import run_cmd
from gantry.config import get_settings

app = typer.Typer(
    name="gantry",
    help="Gantry: build-pipeline orchestrator.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="run", help="Execute a pipeline.")(run_cmd)
app.command(name="plan", help="Show the execution waves of a pipeline.")(plan_cmd)
app.command(name="validate", help="Validate a pipeline file without running it.")(validate_cmd)
app.command(name="history", help="List recent runs.")(history_cmd)
app.command(name="show", help="Show the report of a past run.")(show_cmd)
app.command(name="verify", help="Verify a run's ledger chain and artifacts.")(verify_cmd)
app.command(name="artifacts", help="List or fetch the artifacts of a run.")(artifacts_cmd)
app.command(name="prune", help="Delete artifacts older than the retention period.")(prune_cmd)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"gantry {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    log_level: str = typer.Option(
        None,
        "--log-level",
        help="Logging level (default: GANTRY_LOG_LEVEL or INFO).",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Configure logging for every subcommand."""
    level = (log_level or get_settings().log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
