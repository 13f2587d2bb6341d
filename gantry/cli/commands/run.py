"""``gantry run PIPELINE`` — execute a pipeline and report the outcome.

Exit code 0 if the run succeeded, 1 if it failed or was cancelled, and 2
if the pipeline definition or the supplied parameters are invalid.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from gantry.core.errors import DefinitionError
from gantry.core.loader import load_pipeline
from gantry.core.orchestrator import Orchestrator
from gantry.models.config import RunContext
from gantry.monitor.renderer import RunRenderer

console = Console()


def parse_assignments(values: list[str] | None, option: str) -> dict[str, str]:
    """Turn repeated ``NAME=VALUE`` options into a mapping."""
    result: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise typer.BadParameter(f"expected NAME=VALUE, got {item!r}", param_hint=option)
        result[name.strip()] = value
    return result


def run_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Pipeline definition (YAML).",
    ),
    param: Optional[list[str]] = typer.Option(
        None,
        "--param",
        "-p",
        help="Pipeline parameter as NAME=VALUE. Repeatable.",
    ),
    secret: Optional[list[str]] = typer.Option(
        None,
        "--secret",
        "-s",
        help=(
            "Read secret NAME from environment variable VAR, as NAME=VAR. "
            "Declared secrets default to the variable of the same name."
        ),
    ),
    ref: str = typer.Option("", "--ref", help="Git ref being built, e.g. refs/heads/main."),
    revision: str = typer.Option("", "--revision", help="Commit SHA being built."),
    environment: Optional[str] = typer.Option(
        None,
        "--environment",
        "-e",
        help="Deployment target (default: GANTRY_ENVIRONMENT).",
    ),
    source_dir: Path = typer.Option(
        Path("."),
        "--source-dir",
        help="Checked-out source tree exposed to tasks as run.source_dir.",
    ),
    max_parallel: Optional[int] = typer.Option(
        None,
        "--max-parallel",
        "-j",
        min=1,
        help="Maximum tasks running at once (default: GANTRY_MAX_PARALLELISM).",
    ),
    report_path: Optional[Path] = typer.Option(
        None,
        "--report",
        help="Write the run report as JSON to this file.",
    ),
    quiet: bool = typer.Option(
        False,
        "--quiet",
        "-q",
        help="Do not print task transitions while running.",
    ),
) -> None:
    """Execute a pipeline.

    Parameters are passed on the command line; secrets are only ever read
    from the environment so they never appear in shell history.
    """
    renderer = RunRenderer(console=console)

    try:
        definition = load_pipeline(pipeline_file)
        parameters = parse_assignments(param, "--param")
        secret_sources = {name: name for name in definition.secrets}
        secret_sources.update(parse_assignments(secret, "--secret"))
        secrets = {
            name: os.environ[var]
            for name, var in secret_sources.items()
            if var in os.environ
        }

        orchestrator = Orchestrator()
        if not quiet:
            orchestrator.add_listener(renderer.print_event)
        context = RunContext(
            ref=ref,
            revision=revision,
            environment=orchestrator.settings.environment if environment is None else environment,
            source_dir=source_dir.resolve(),
        )
        report = orchestrator.run(
            definition,
            parameters,
            secrets,
            context=context,
            max_parallelism=max_parallel,
        )
    except DefinitionError as exc:
        console.print(f"[bold red]Invalid pipeline:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=2)

    console.print()
    renderer.print_report(report)

    if report_path is not None:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[dim]Report written to {report_path}[/dim]")

    if not report.succeeded:
        console.print()
        renderer.print_failures(report)
        failing = [t.name for t in report.tasks if t.counts_as_failure]
        if failing:
            console.print(f"[bold red]Failing tasks:[/bold red] {', '.join(failing)}")
    raise typer.Exit(code=report.exit_code)
