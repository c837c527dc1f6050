"""Main Typer application — imports and registers all CLI commands.

Entry point: ``pipewright`` (configured via pyproject.toml project.scripts).
"""

from __future__ import annotations

import typer

from pipewright.cli.commands.demo import demo_cmd
from pipewright.cli.commands.run import run_cmd
from pipewright.cli.commands.trigger import trigger_cmd
from pipewright.cli.commands.validate import validate_cmd

app = typer.Typer(
    name="pipewright",
    help="Pipewright: DAG pipeline orchestration for CI/CD.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="validate", help="Validate a pipeline definition.")(validate_cmd)
app.command(name="trigger", help="Check whether an event would start a run.")(trigger_cmd)
app.command(name="run", help="Filter an event and run the pipeline.")(run_cmd)
app.command(name="demo", help="Run the default pipeline against in-memory services.")(demo_cmd)


@app.command(name="version", help="Print the Pipewright version.")
def version_cmd() -> None:
    from pipewright import __version__

    typer.echo(__version__)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
