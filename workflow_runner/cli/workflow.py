"""Workflow commands: run, resume, status.

Exit codes:
    0    workflow reached COMPLETED
    1    workflow FAILED, fatal error, nothing to resume, or workspace locked
    130  cancelled by SIGINT/SIGTERM; the checkpoint is saved and resumable
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional

import typer
from rich.panel import Panel

from workflow_runner.cli.app import app
from workflow_runner.cli.common import (
    build_logger,
    build_notifier,
    get_console,
    load_runner_config,
    resolve_research_file,
)
from workflow_runner.cli.display import (
    make_progress_printer,
    show_cancelled,
    show_final_report,
    show_status,
)

if TYPE_CHECKING:
    from workflow_runner.config import RunnerConfig
    from workflow_runner.logger import RunnerLogger
    from workflow_runner.models import WorkflowResult
    from workflow_runner.orchestrator import Orchestrator

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

console = get_console()


def _apply_overrides(
    config: RunnerConfig,
    max_iterations: Optional[int],
    timeout: Optional[int],
) -> None:
    if max_iterations is not None:
        config.limits.max_iterations = max_iterations
    if timeout is not None:
        config.worker.timeout_seconds = timeout


def _build_orchestrator(
    config: RunnerConfig,
    logger: RunnerLogger,
    verbose: bool,
) -> Orchestrator:
    from workflow_runner.orchestrator import Orchestrator

    return Orchestrator(
        config,
        logger=logger,
        notifier=build_notifier(config),
        progress_callback=make_progress_printer(console, verbose),
    )


def _execute(action: Callable[[], WorkflowResult]) -> None:
    """Run the orchestrator action and map its outcome to an exit code."""
    from workflow_runner.orchestrator import (
        NoWorkflowInProgressError,
        WorkflowCancelledError,
    )
    from workflow_runner.progress_store import ProgressLockError, ProgressStoreError

    try:
        result = action()
    except WorkflowCancelledError as e:
        show_cancelled(console, e.result)
        raise typer.Exit(EXIT_CANCELLED)
    except NoWorkflowInProgressError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("  Start one with: [cyan]workflow-runner run <research-file>[/cyan]")
        raise typer.Exit(EXIT_FAILURE)
    except ProgressLockError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(EXIT_FAILURE)
    except ProgressStoreError as e:
        console.print(
            Panel(
                f"[red]Could not save progress; the run was aborted.[/red]\n\n{e}",
                title="Fatal Error",
                border_style="red",
            )
        )
        raise typer.Exit(EXIT_FAILURE)

    show_final_report(console, result)
    raise typer.Exit(EXIT_SUCCESS if result.success else EXIT_FAILURE)


@app.command()
def run(
    research_file: str = typer.Argument(
        ...,
        help="Research document the workflow is built from.",
    ),
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        min=1,
        help="Hard ceiling on loop iterations (default from workflow.yaml, else 50).",
    ),
    timeout: Optional[int] = typer.Option(
        None,
        "--timeout",
        "-t",
        min=1,
        help="Per-phase worker timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Print every accepted signal and checkpoint.",
    ),
) -> None:
    """
    Start a fresh workflow from a research document.

    Overwrites any existing progress file in the project.
    """
    from workflow_runner.logger import workflow_id_for

    config = load_runner_config()
    _apply_overrides(config, max_iterations, timeout)

    if resolve_research_file(config, research_file) is None:
        console.print(f"[red]Error:[/red] Research file not found: {research_file}")
        raise typer.Exit(EXIT_FAILURE)

    logger = build_logger(config, workflow_id_for(research_file))
    orchestrator = _build_orchestrator(config, logger, verbose)
    _execute(lambda: orchestrator.run(research_file))


@app.command()
def resume(
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        min=1,
        help="Hard ceiling on loop iterations for this resume.",
    ),
    timeout: Optional[int] = typer.Option(
        None,
        "--timeout",
        "-t",
        min=1,
        help="Per-phase worker timeout in seconds.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Print every accepted signal and checkpoint.",
    ),
) -> None:
    """
    Continue the workflow recorded in the progress file.
    """
    from workflow_runner.logger import workflow_id_for
    from workflow_runner.progress_store import ProgressStore

    config = load_runner_config()
    _apply_overrides(config, max_iterations, timeout)

    # Peek at the record only to name the log file; the orchestrator re-reads it under lock
    record = ProgressStore(config).read()
    research_file = record.context.research_file if record else ""

    logger = build_logger(config, workflow_id_for(research_file))
    orchestrator = _build_orchestrator(config, logger, verbose)
    _execute(orchestrator.resume)


@app.command()
def status() -> None:
    """
    Show the workflow recorded in the progress file.
    """
    from workflow_runner.progress_store import ProgressStore

    config = load_runner_config()
    store = ProgressStore(config)

    record = store.read()
    if record is None:
        console.print("[yellow]No workflow in progress.[/yellow]")
        console.print(f"  Expected progress file: {store.path}")
        raise typer.Exit(EXIT_FAILURE)

    show_status(console, record)
