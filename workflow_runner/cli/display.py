"""Display helpers and formatters for the CLI.

Contains Rich formatting for phases, the live progress printer, the final
report and the status view. This module should NOT import from the command
modules to avoid circular imports.
"""
from __future__ import annotations

from typing import Callable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from workflow_runner.models import Phase, ProgressRecord, WorkflowContext, WorkflowResult
from workflow_runner.phase_mapper import get_phase_name, get_phase_progress

# Phase display colors
PHASE_STYLES: dict[Phase, str] = {
    Phase.IDLE: "dim",
    Phase.SETUP: "blue",
    Phase.PLANNING: "blue",
    Phase.IMPLEMENTING: "cyan bold",
    Phase.SUBMITTING: "cyan",
    Phase.CI_VERIFY: "yellow",
    Phase.CI_FIX: "yellow bold",
    Phase.COMMENT_VERIFY: "magenta",
    Phase.COMMENT_FIX: "magenta bold",
    Phase.COMPLETED: "green bold",
    Phase.FAILED: "red bold",
}

# Signals shown in the report tables
SIGNAL_HISTORY_LIMIT = 20


def format_phase(phase: Phase) -> Text:
    """Format a phase enum as colored text."""
    return Text(get_phase_name(phase), style=PHASE_STYLES.get(phase, "white"))


def get_plan_summary(context: WorkflowContext) -> str:
    """Get a summary of plan completion."""
    if not context.plans:
        return "-"
    return f"{context.completed_plan_count}/{len(context.plans)} done"


def _escape_tag_text(value: str) -> str:
    # Keep payloads from closing the surrounding tag early
    return value.replace("<", "&lt;").replace(">", "&gt;")


def build_final_report(result: WorkflowResult) -> str:
    """
    Render the machine-readable final report.

    Uses the same tag protocol as the worker, so a parent process can read
    the outcome with the signal parser.
    """
    context = result.context
    lines = []
    if result.success:
        lines.append("<promise>COMPLETE</promise>")
    else:
        lines.append("<promise>FAILED</promise>")
        lines.append(f"<error>{_escape_tag_text(result.error or 'Unknown error')}</error>")

    lines.append(f"final_phase: {result.final_phase.value}")
    if context.failed_phase:
        lines.append(f"failed_phase: {context.failed_phase.value}")
    lines.append(f"iterations: {result.iterations}")
    if context.pr_url:
        lines.append(f"pr_url: {context.pr_url}")
    if context.pr_number is not None:
        lines.append(f"pr_number: {context.pr_number}")
    lines.append("signals:")
    for record in context.signals:
        lines.append(f"  - {record.timestamp} {record.signal}")
    return "\n".join(lines)


def _signals_table(context: WorkflowContext, limit: int = SIGNAL_HISTORY_LIMIT) -> Table:
    table = Table(title="Signal History", show_lines=False)
    table.add_column("Time", style="dim")
    table.add_column("Signal", style="cyan")
    table.add_column("Data")

    records = context.signals[-limit:]
    for record in records:
        data = ", ".join(f"{k}={v}" for k, v in record.data.items())
        table.add_row(record.timestamp, record.signal, Text(data))
    if len(context.signals) > limit:
        table.caption = f"showing last {limit} of {len(context.signals)}"
    return table


def _plans_table(context: WorkflowContext) -> Table:
    table = Table(title="Plans")
    table.add_column("#", justify="right")
    table.add_column("Plan")
    table.add_column("Issue", justify="right")
    table.add_column("Status")

    for i, plan in enumerate(context.plans):
        if plan.completed:
            status = Text("done", style="green")
        elif i == context.current_plan_index:
            status = Text("current", style="cyan bold")
        else:
            status = Text("pending", style="dim")
        issue = f"#{plan.issue_number}" if plan.issue_number is not None else "-"
        table.add_row(str(i + 1), Text(plan.path), issue, status)
    return table


def show_final_report(console: Console, result: WorkflowResult) -> None:
    """Print the outcome panel, the signal history and the tag report."""
    context = result.context

    if result.success:
        body = (
            f"[green]Workflow completed successfully![/green]\n\n"
            f"Iterations: {result.iterations}\n"
            f"Plans: {get_plan_summary(context)}\n"
            f"CI attempts: {context.ci_attempts}\n"
            f"Comment rounds: {context.comment_attempts}\n"
            f"PR: {context.pr_url or '-'}"
        )
        console.print(Panel(body, title="Workflow Complete", border_style="green"))
    else:
        failed_phase = context.failed_phase or result.final_phase
        body = Text.assemble(
            ("Workflow failed.\n\n", "red"),
            "Failed in: ", format_phase(failed_phase), "\n",
            f"Iterations: {result.iterations}\n",
            f"CI attempts: {context.ci_attempts}\n",
            f"Comment rounds: {context.comment_attempts}\n",
            f"Last error: {result.error or 'Unknown error'}",
        )
        console.print(Panel(body, title="Workflow Failed", border_style="red"))

    if context.signals:
        console.print(_signals_table(context, limit=len(context.signals)))

    console.print()
    console.print(build_final_report(result), markup=False, highlight=False)


def show_cancelled(console: Console, result: WorkflowResult) -> None:
    console.print(
        Panel(
            Text.assemble(
                ("Workflow cancelled.\n\n", "yellow"),
                "Stopped in: ", format_phase(result.final_phase), "\n",
                f"Iterations: {result.iterations}\n\n",
                "Progress was saved. Continue with: ",
                ("workflow-runner resume", "cyan"),
            ),
            title="Cancelled",
            border_style="yellow",
        )
    )


def show_status(console: Console, record: ProgressRecord) -> None:
    """Render a progress record: status panel, plans and recent signals."""
    context = record.context
    percent = get_phase_progress(record.phase)

    body = Text.assemble(
        "Phase: ", format_phase(record.phase), f"  ({percent}%)\n",
        f"Iteration: {record.iteration}\n",
        f"Research: {context.research_file or '-'}\n",
        f"Worktree: {context.worktree_path or 'not created'}\n",
        f"Branch: {context.branch or 'not created'}\n",
        f"Started: {context.started_at or '-'}\n",
        f"Last update: {context.last_update or '-'}\n",
        f"PR: {context.pr_url or context.pr_number or '-'}\n",
        f"CI: {record.ci_status or '-'} ({context.ci_attempts} attempts)\n",
        f"Comment rounds: {context.comment_attempts}",
    )
    if context.error:
        body.append(f"\nLast error: {context.error}", style="red")
    console.print(Panel(body, title="Workflow Status", border_style="cyan"))

    if context.plans:
        console.print(_plans_table(context))
    if context.signals:
        console.print(_signals_table(context))


def make_progress_printer(console: Console, verbose: bool = False) -> Callable[[str, dict], None]:
    """Build the orchestrator progress callback."""

    def on_progress(event: str, data: dict) -> None:
        if event == "workflow_start":
            console.print(f"[bold]Starting workflow[/bold] {data.get('workflow_id', '')}")
        elif event == "workflow_resume":
            console.print(
                f"[bold]Resuming workflow[/bold] {data.get('workflow_id', '')} "
                f"at {data.get('phase', '?')} (iteration {data.get('iteration', 0)})"
            )
        elif event == "iteration_start":
            console.print(
                f"[yellow]-> [{data.get('iteration')}] {data.get('phase')}:[/yellow] "
                f"{escape(str(data.get('command', '')))}",
                highlight=False,
            )
        elif event == "transition":
            if data.get("from_phase") != data.get("to_phase"):
                console.print(
                    f"[green]   {data.get('signal')}[/green] "
                    f"{data.get('from_phase')} -> {data.get('to_phase')}"
                )
            elif verbose:
                console.print(f"[green]   {data.get('signal')}[/green]")
        elif event == "signal_rejected":
            console.print(
                f"[yellow]   Ignored {data.get('signal')} in {data.get('phase')}[/yellow]"
            )
        elif event == "no_signal":
            console.print("[yellow]   No signal in worker output, retrying phase[/yellow]")
        elif event == "worker_error":
            console.print(f"[red]   {escape(str(data.get('error')))}[/red]", highlight=False)
        elif event == "stuck_detected":
            console.print(f"[red]   {escape(str(data.get('reason')))}[/red]", highlight=False)
        elif event == "iteration_limit":
            console.print(
                f"[red]   Iteration limit reached ({data.get('max_iterations')})[/red]"
            )
        elif verbose and event == "iteration_complete":
            console.print(f"[dim]   checkpoint saved (iteration {data.get('iteration')})[/dim]")

    return on_progress
