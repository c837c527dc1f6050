"""``pipewright trigger`` — evaluate an event against the trigger filter.

Does not run anything; prints whether the event would start a run.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from pipewright.cli.commands.validate import resolve_definition
from pipewright.config import PipewrightSettings
from pipewright.core.stage_graph import ConfigurationError
from pipewright.core.trigger_filter import TriggerFilter
from pipewright.models.config import default_pipeline
from pipewright.models.events import Event, EventType
from pipewright.monitor.renderer import RunRenderer

console = Console()


def build_event(
    event_type: str, branch: str, paths: list[str] | None, commit: str = ""
) -> Event:
    try:
        kind = EventType(event_type)
    except ValueError:
        allowed = ", ".join(t.value for t in EventType)
        raise typer.BadParameter(f"unknown event type {event_type!r} (expected {allowed})") from None
    return Event(
        type=kind,
        branch=branch,
        changed_paths=frozenset(paths or ()),
        commit_sha=commit,
        actor="cli",
    )


def trigger_cmd(
    event_type: str = typer.Option("push", "--type", "-t", help="push, pull_request or manual."),
    branch: str = typer.Option("main", "--branch", "-b", help="Branch the event refers to."),
    paths: list[str] = typer.Option(
        None, "--path", "-p", help="Changed path (repeatable)."
    ),
    definition_path: Path = typer.Option(
        None, "--definition", "-f", help="Path to pipewright.toml."
    ),
) -> None:
    """Evaluate an event against the pipeline's trigger configuration."""
    settings = PipewrightSettings()
    try:
        definition = resolve_definition(definition_path, settings) or default_pipeline(
            registry=settings.registry,
            image_name=settings.image_name,
            manifest_path=settings.manifest_path,
            branch=settings.gitops_branch,
        )
    except ConfigurationError as exc:
        console.print(f"[bold red]Invalid pipeline:[/bold red] {exc}")
        raise typer.Exit(code=1) from None

    event = build_event(event_type, branch, paths)
    decision = TriggerFilter(definition.triggers).evaluate(event)
    RunRenderer(console).print_decision(decision)
