"""
Phase-to-task mapping and phase metadata.

Each non-terminal phase maps to one slash command handed to the worker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from workflow_runner.models import Phase, WorkflowContext


DEFAULT_COMMAND_PREFIX = "/workflows:"


@dataclass(frozen=True)
class PhaseCommand:
    """A worker command and its positional arguments."""
    command: str
    args: tuple[str, ...] = field(default_factory=tuple)


PHASE_NAMES: dict[Phase, str] = {
    Phase.IDLE: "Idle",
    Phase.SETUP: "Setup",
    Phase.PLANNING: "Planning",
    Phase.IMPLEMENTING: "Implementing",
    Phase.SUBMITTING: "Submitting PR",
    Phase.CI_VERIFY: "Verifying CI",
    Phase.CI_FIX: "Fixing CI",
    Phase.COMMENT_VERIFY: "Resolving Comments",
    Phase.COMMENT_FIX: "Applying Comment Fixes",
    Phase.COMPLETED: "Completed",
    Phase.FAILED: "Failed",
}

PHASE_DESCRIPTIONS: dict[Phase, str] = {
    Phase.IDLE: "Waiting to start",
    Phase.SETUP: "Creating the worktree and branch",
    Phase.PLANNING: "Generating implementation plans from research",
    Phase.IMPLEMENTING: "Executing implementation plans",
    Phase.SUBMITTING: "Pushing the branch and opening a pull request",
    Phase.CI_VERIFY: "Waiting for CI to report",
    Phase.CI_FIX: "Fixing CI failures",
    Phase.COMMENT_VERIFY: "Checking for unresolved review comments",
    Phase.COMMENT_FIX: "Addressing review comments",
    Phase.COMPLETED: "Workflow completed successfully",
    Phase.FAILED: "Workflow encountered an error",
}

# Forward progress order; fix phases loop back and are not listed
HAPPY_PATH: list[Phase] = [
    Phase.SETUP,
    Phase.PLANNING,
    Phase.IMPLEMENTING,
    Phase.SUBMITTING,
    Phase.CI_VERIFY,
    Phase.COMMENT_VERIFY,
    Phase.COMPLETED,
]

_LOOP_PARENT = {
    Phase.CI_FIX: Phase.CI_VERIFY,
    Phase.COMMENT_FIX: Phase.COMMENT_VERIFY,
}


def _pr_args(context: WorkflowContext) -> tuple[str, ...]:
    return (str(context.pr_number),) if context.pr_number is not None else ()


def map_phase_to_command(
    phase: Phase,
    context: WorkflowContext,
    prefix: str = DEFAULT_COMMAND_PREFIX,
) -> Optional[PhaseCommand]:
    """
    Pick the worker command for a phase.

    Args:
        phase: Current phase.
        context: Current context (research file, plans, PR number).
        prefix: Slash-command namespace.

    Returns:
        PhaseCommand, or None for idle and terminal phases.
    """
    if phase == Phase.SETUP:
        return PhaseCommand(f"{prefix}phase-setup", (context.research_file,))

    if phase == Phase.PLANNING:
        return PhaseCommand(f"{prefix}phase-plan", (context.research_file,))

    if phase == Phase.IMPLEMENTING:
        plan = context.current_plan
        # No plan outstanding: ask the worker to confirm implementation is done
        args = (plan.path,) if plan is not None else ()
        return PhaseCommand(f"{prefix}phase-impl", args)

    if phase == Phase.SUBMITTING:
        return PhaseCommand(f"{prefix}phase-submit")

    if phase == Phase.CI_VERIFY:
        return PhaseCommand(f"{prefix}phase-verify-ci", _pr_args(context))

    if phase == Phase.CI_FIX:
        return PhaseCommand(f"{prefix}phase-fix-ci", _pr_args(context))

    if phase in (Phase.COMMENT_VERIFY, Phase.COMMENT_FIX):
        return PhaseCommand(f"{prefix}phase-resolve-comments", _pr_args(context))

    return None


def format_command(phase_command: PhaseCommand) -> str:
    """Render a command with its arguments as a single prompt string."""
    if not phase_command.args:
        return phase_command.command
    return " ".join([phase_command.command, *phase_command.args])


def get_phase_name(phase: Phase) -> str:
    return PHASE_NAMES.get(phase, phase.value)


def get_phase_description(phase: Phase) -> str:
    return PHASE_DESCRIPTIONS.get(phase, "")


def is_terminal_phase(phase: Phase) -> bool:
    return phase.is_terminal


def is_success_phase(phase: Phase) -> bool:
    return phase == Phase.COMPLETED


def is_failure_phase(phase: Phase) -> bool:
    return phase == Phase.FAILED


def get_happy_path_phases() -> list[Phase]:
    return list(HAPPY_PATH)


def get_phase_progress(phase: Phase) -> int:
    """
    Percentage of the happy path reached by a phase.

    Fix phases report the progress of the verify phase they loop back to.
    FAILED and IDLE report 0.
    """
    phase = _LOOP_PARENT.get(phase, phase)
    if phase not in HAPPY_PATH:
        return 0
    return round((HAPPY_PATH.index(phase) + 1) * 100 / len(HAPPY_PATH))
