"""Rich terminal renderer for pipeline runs.

Turns a ``PipelineRun`` into Rich renderables, with color-coded stage
statuses and the first failure called out.

Color scheme
------------
- green     : SUCCEEDED
- red       : FAILED
- yellow    : RUNNING
- dim       : PENDING / CANCELLED
"""

from __future__ import annotations

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from pipewright.models.events import TriggerDecision
from pipewright.models.run import PipelineRun, RunStatus
from pipewright.models.stages import StageResult, StageStatus

# ---------------------------------------------------------------------------
# Status -> Rich style mapping
# ---------------------------------------------------------------------------

_STATUS_STYLES: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "bold green",
    StageStatus.FAILED: "bold red",
    StageStatus.RUNNING: "bold yellow",
    StageStatus.PENDING: "dim",
    StageStatus.CANCELLED: "dim",
}

_STATUS_LABELS: dict[StageStatus, str] = {
    StageStatus.SUCCEEDED: "[green]SUCCEEDED[/green]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
    StageStatus.RUNNING: "[yellow]RUNNING[/yellow]",
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.CANCELLED: "[dim]CANCELLED[/dim]",
}

_RUN_STYLES: dict[RunStatus, str] = {
    RunStatus.SUCCEEDED: "green",
    RunStatus.FAILED: "red",
    RunStatus.CANCELLED: "yellow",
    RunStatus.RUNNING: "yellow",
    RunStatus.PENDING: "dim",
}


class RunRenderer:
    """Renders ``PipelineRun`` reports as Rich terminal output.

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

    def render_run(self, run: PipelineRun) -> Panel:
        """Render a run as a Panel holding the stage table and summary."""
        parts: list = [self._build_stage_table(run)]

        if run.first_failure is not None:
            ff = run.first_failure
            where = f"{ff.stage_id}" + (f" / {ff.step}" if ff.step else "")
            parts.append(Text(""))
            parts.append(
                Panel(
                    Text(ff.reason or "-"),
                    title=f"[bold red]First failure: {where} ({ff.kind.value})[/bold red]",
                    border_style="red",
                )
            )

        if run.outputs:
            outputs = ", ".join(f"{k}={escape(v)}" for k, v in sorted(run.outputs.items()))
            parts.append(Text.from_markup(f"[bold]Outputs:[/bold] {outputs}"))

        style = _RUN_STYLES.get(run.status, "")
        completed = sum(1 for r in run.stages.values() if r.status == StageStatus.SUCCEEDED)
        summary = "  |  ".join([
            f"[bold]Run:[/bold] {run.run_id}",
            f"[bold]Event:[/bold] {run.event.type.value} on {run.event.branch}",
            f"[bold]Succeeded:[/bold] {completed}/{len(run.stages)}",
            f"[bold]Status:[/bold] [{style}]{run.status.value.upper()}[/{style}]",
        ])
        parts.append(Text(""))
        parts.append(Text.from_markup(summary))

        return Panel(
            Group(*parts),
            title="[bold]Pipewright Run[/bold]",
            border_style=style or "blue",
            padding=(1, 2),
        )

    def _build_stage_table(self, run: PipelineRun) -> Table:
        table = Table(show_header=True, header_style="bold cyan", expand=True)
        table.add_column("#", style="dim", width=3, justify="right")
        table.add_column("Stage", min_width=20)
        table.add_column("Status", min_width=11, justify="center")
        table.add_column("Steps", justify="right", width=7)
        table.add_column("Details", min_width=20)
        table.add_column("Time", justify="right", width=8)

        for i, stage_id in enumerate(run.order or list(run.stages)):
            result = run.stages[stage_id]
            name_style = _STATUS_STYLES.get(result.status, "")
            passed = sum(1 for s in result.steps if s.succeeded)
            steps = f"{passed}/{len(result.steps)}" if result.steps else "[dim]-[/dim]"
            duration = (
                f"{result.duration_seconds:.1f}s" if result.status in (StageStatus.SUCCEEDED, StageStatus.FAILED)
                else "[dim]-[/dim]"
            )
            table.add_row(
                str(i),
                f"[{name_style}]{stage_id}[/{name_style}]",
                _STATUS_LABELS.get(result.status, result.status.value),
                steps,
                self._details(result),
                duration,
            )
        return table

    @staticmethod
    def _details(result: StageResult) -> str:
        if result.status == StageStatus.FAILED:
            where = f"{result.failed_step}: " if result.failed_step else ""
            return f"[red]{where}{escape(result.reason)}[/red]"
        if result.status == StageStatus.CANCELLED:
            return f"[dim]{escape(result.reason)}[/dim]"
        soft = [s.name for s in result.steps if not s.succeeded]
        details: list[str] = []
        if soft:
            details.append(f"[yellow]continued past: {', '.join(soft)}[/yellow]")
        if result.published:
            details.append(f"published {', '.join(result.published)}")
        return " | ".join(details) if details else "[dim]-[/dim]"

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_run(self, run: PipelineRun) -> None:
        self.console.print(self.render_run(run))

    def print_decision(self, decision: TriggerDecision) -> None:
        """Print a one-line trigger decision."""
        if decision.start:
            self.console.print(
                f"[green]Trigger accepted[/green] ({decision.reason.value}): {escape(decision.detail)}"
            )
        else:
            self.console.print(
                f"[yellow]Trigger rejected[/yellow] ({decision.reason.value}): {escape(decision.detail)}"
            )
