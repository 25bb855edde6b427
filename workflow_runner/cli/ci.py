"""CI helper commands.

`ci-wait` blocks until a CI run finishes so that worker phase commands can
wait on CI without their own polling loop.

Exit codes:
    0  run completed successfully
    1  run failed, or its status could not be fetched
    2  polling timed out
"""
from __future__ import annotations

from typing import Optional

import typer
from rich.markup import escape

from workflow_runner.cli.app import app
from workflow_runner.cli.common import get_console, load_runner_config

EXIT_CI_TIMEOUT = 2

console = get_console()


@app.command("ci-wait")
def ci_wait(
    run_id: int = typer.Argument(..., help="CI run id (as shown by `gh run list`)."),
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        min=1,
        help="Seconds between polls (default 30).",
    ),
    timeout: Optional[int] = typer.Option(
        None,
        "--timeout",
        "-t",
        min=1,
        help="Give up after this many seconds (default 1800).",
    ),
) -> None:
    """
    Wait for a CI run to finish and report its conclusion.
    """
    from workflow_runner.ci_poller import (
        GitHubCliClient,
        get_ci_status_message,
        poll_ci_status,
    )

    config = load_runner_config()
    client = GitHubCliClient(config.ci, cwd=config.repo_root)

    last_message: list[str] = []

    def on_poll(details) -> None:
        message = get_ci_status_message(details)
        # Only print status changes
        if not last_message or last_message[-1] != message:
            console.print(f"[dim]{escape(message)}[/dim]")
            last_message.append(message)

    result = poll_ci_status(
        client,
        run_id,
        interval_seconds=interval or config.ci.poll_interval_seconds,
        timeout_seconds=timeout or config.ci.timeout_seconds,
        on_poll=on_poll,
    )

    if result.status == "error":
        console.print(f"[red]Error:[/red] {escape(result.error or 'unknown error')}")
        raise typer.Exit(1)

    if result.status == "timeout":
        console.print(f"[yellow]CI run {run_id} did not finish in time.[/yellow]")
        raise typer.Exit(EXIT_CI_TIMEOUT)

    if result.succeeded:
        console.print(f"[green]CI run {run_id} passed.[/green]")
        raise typer.Exit(0)

    console.print(f"[red]{escape(get_ci_status_message(result.details))}[/red]")
    raise typer.Exit(1)
