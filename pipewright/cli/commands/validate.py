"""``pipewright validate`` — load and check a pipeline definition.

Runs every static check the orchestrator performs at startup and prints
the stages in execution order.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from pipewright.config import PipewrightSettings
from pipewright.core.orchestrator import Orchestrator
from pipewright.core.production_guard import ProductionConfigError
from pipewright.core.stage_graph import ConfigurationError
from pipewright.loader import load_definition
from pipewright.models.config import PipelineDefinition

console = Console()


def resolve_definition(
    definition_path: Path | None, settings: PipewrightSettings
) -> PipelineDefinition | None:
    """Load *definition_path*, else the configured path if it exists, else None (default pipeline)."""
    if definition_path is not None:
        return load_definition(definition_path)
    if settings.definition_path.is_file():
        return load_definition(settings.definition_path)
    return None


def validate_cmd(
    definition_path: Path = typer.Option(
        None,
        "--definition",
        "-f",
        help="Path to pipewright.toml. Defaults to PIPEWRIGHT_DEFINITION_PATH, "
        "or the built-in pipeline if that file does not exist.",
    ),
) -> None:
    """Validate a pipeline definition and print its execution order."""
    settings = PipewrightSettings()
    try:
        definition = resolve_definition(definition_path, settings)
        orchestrator = Orchestrator(definition, settings=settings)
    except (ConfigurationError, ProductionConfigError) as exc:
        console.print(f"[bold red]Invalid pipeline:[/bold red] {exc}")
        raise typer.Exit(code=1) from None

    graph = orchestrator.graph
    table = Table(title=f"Pipeline '{orchestrator.definition.name}'", header_style="bold cyan")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Depends on")
    table.add_column("Steps", justify="right")
    table.add_column("Inputs")
    table.add_column("Produces")
    table.add_column("Secrets")

    for i, stage_id in enumerate(graph.stage_ids):
        sd = graph.get_stage_definition(stage_id)
        table.add_row(
            str(i),
            stage_id,
            ", ".join(sd.depends_on) or "[dim]-[/dim]",
            str(len(sd.steps)),
            ", ".join(sd.required_inputs) or "[dim]-[/dim]",
            ", ".join(sorted(sd.produced_keys)) or "[dim]-[/dim]",
            ", ".join(sd.secrets) or "[dim]-[/dim]",
        )

    console.print(table)
    if orchestrator.definition.gitops is not None:
        console.print(
            f"[green]Loop-safe:[/green] {orchestrator.definition.gitops.manifest_path} "
            f"is covered by ignore_paths {orchestrator.definition.triggers.ignore_paths}"
        )
    console.print(f"[bold green]OK[/bold green] {len(graph)} stage(s)")
