"""``gantry plan`` and ``gantry validate`` — inspect a pipeline without running it."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape

from gantry.core.errors import DefinitionError
from gantry.core.loader import load_pipeline, validate_definition
from gantry.monitor.renderer import RunRenderer

console = Console()


def plan_cmd(
    pipeline_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="Pipeline definition (YAML).",
    ),
) -> None:
    """Show the execution waves of a pipeline.

    Tasks in the same wave have no dependencies on each other and may run
    concurrently, up to the configured parallelism.
    """
    try:
        definition = load_pipeline(pipeline_file)
        waves = validate_definition(definition).topological_batches()
    except DefinitionError as exc:
        console.print(f"[bold red]Invalid pipeline:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=2)

    console.print(RunRenderer(console=console).render_plan(definition.name, waves))


def validate_cmd(
    pipeline_files: list[Path] = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="One or more pipeline definitions (YAML).",
    ),
) -> None:
    """Validate pipeline files: schema, graph, artifact hand-offs, and templates."""
    invalid = 0
    for path in pipeline_files:
        try:
            definition = load_pipeline(path)
        except DefinitionError as exc:
            invalid += 1
            console.print(f"[bold red]INVALID[/bold red] {path}: {escape(str(exc))}")
            continue
        console.print(
            f"[green]OK[/green] {path} "
            f"[dim]({definition.name}, {len(definition.tasks)} task(s))[/dim]"
        )
    if invalid:
        raise typer.Exit(code=2)
