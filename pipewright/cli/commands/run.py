"""``pipewright run`` — filter an event and run the pipeline for it.

Uses the process-wide settings (``PIPEWRIGHT_*``) for credentials, image
coordinates and scheduling limits.  Exits non-zero when the run fails or
is cancelled.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from pipewright.cli.commands.trigger import build_event
from pipewright.cli.commands.validate import resolve_definition
from pipewright.config import PipewrightSettings
from pipewright.core.orchestrator import Orchestrator
from pipewright.core.production_guard import ProductionConfigError
from pipewright.core.stage_graph import ConfigurationError
from pipewright.logging_setup import configure_logging
from pipewright.models.run import RunStatus
from pipewright.monitor.renderer import RunRenderer

console = Console()


def run_cmd(
    event_type: str = typer.Option("manual", "--type", "-t", help="push, pull_request or manual."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch the event refers to."),
    paths: list[str] = typer.Option(None, "--path", "-p", help="Changed path (repeatable)."),
    commit: str = typer.Option("", "--commit", "-c", help="Commit sha the event refers to."),
    definition_path: Path = typer.Option(
        None, "--definition", "-f", help="Path to pipewright.toml."
    ),
) -> None:
    """Evaluate an event and, if accepted, run the pipeline."""
    settings = PipewrightSettings()
    try:
        definition = resolve_definition(definition_path, settings)
        orchestrator = Orchestrator(definition, settings=settings)
    except (ConfigurationError, ProductionConfigError) as exc:
        console.print(f"[bold red]Cannot start:[/bold red] {exc}")
        raise typer.Exit(code=1) from None

    configure_logging(settings.log_level, scope=orchestrator.secret_scope)
    renderer = RunRenderer(console)

    event = build_event(event_type, branch, paths, commit)
    outcome = orchestrator.handle_event(event)
    renderer.print_decision(outcome.decision)
    if outcome.run is None:
        return

    renderer.print_run(outcome.run)
    for replay in outcome.write_backs:
        renderer.print_decision(replay)

    if outcome.run.status != RunStatus.SUCCEEDED:
        raise typer.Exit(code=1)
