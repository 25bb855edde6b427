"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app and callback are
defined here; command modules register themselves on import.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from workflow_runner import __version__
from workflow_runner.cli.common import get_console, set_project_dir

# Create Typer app
app = typer.Typer(
    name="workflow-runner",
    help="Drive an LLM worker through setup, planning, implementation, CI and review",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"workflow-runner version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Workflow Runner - resumable phase orchestrator for an LLM worker.

    Use --project/-p to operate on a different project directory.
    """
    if project:
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(1)
        set_project_dir(str(project_path.absolute()))
    else:
        set_project_dir(None)

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================
# These modules import `app` from here, so they must load after it exists

import workflow_runner.cli.workflow  # noqa: F401, E402
import workflow_runner.cli.ci  # noqa: F401, E402


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
