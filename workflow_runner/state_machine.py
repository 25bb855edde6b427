"""
Phase State Machine for Workflow Runner.

This module handles:
- The pure transition function (phase, event, context) -> outcome
- Guarded retry ceilings for the CI and review-comment loops
- Recording every accepted signal in the context history
- Holding the in-memory (phase, context) snapshot the run loop reads

┌──────────┐ START  ┌──────────┐ SETUP_COMPLETE ┌──────────┐ PLANNING_COMPLETE
│   IDLE   │ -----> │  SETUP   │ -------------> │ PLANNING │ ----------------┐
└──────────┘        └──────────┘                └──────────┘                 │
                                                                            ▼
┌────────────┐ PR_CREATED ┌────────────┐ IMPLEMENTATION_COMPLETE ┌──────────────┐
│ CI_VERIFY  │ <--------- │ SUBMITTING │ <---------------------- │ IMPLEMENTING │ <─┐
└────────────┘            └────────────┘                         └──────────────┘   │
   │     ▲  CI_FIX_PUSHED ┌────────────┐                                │ PLAN_COMPLETE
   │     └─────────────── │   CI_FIX   │ <── CI_FAILED (guarded)        └──────────┘
   │ CI_PASSED            └────────────┘
   ▼
┌────────────────┐ COMMENTS_PENDING (guarded) ┌─────────────┐
│ COMMENT_VERIFY │ -------------------------> │ COMMENT_FIX │
└────────────────┘ <------------------------- └─────────────┘
   │ COMMENTS_RESOLVED       COMMENT_FIX_PUSHED
   ▼
┌────────────┐        any non-terminal phase --FAIL--> ┌────────┐
│ COMPLETED  │                                         │ FAILED │
└────────────┘                                         └────────┘

FIX_FAILED (a crashed or timed-out fix invocation) is guarded by the same
ceilings and sends ci_fix back to ci_verify, comment_fix back to comment_verify.

Unknown (phase, event) pairs are rejected without touching the context, so a
stray or duplicated worker signal is a no-op rather than a corruption.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional, Union

from workflow_runner.models import (
    Event,
    EventType,
    Phase,
    PlanUnit,
    SignalRecord,
    WorkflowContext,
    now_iso,
)

if TYPE_CHECKING:
    from workflow_runner.logger import RunnerLogger


DEFAULT_MAX_CI_ATTEMPTS = 5
DEFAULT_MAX_COMMENT_ATTEMPTS = 10

# Signal name recorded for FAIL events
FAILED_SIGNAL = "FAILED"


class StateMachineError(Exception):
    """Raised when the state machine is used incorrectly."""
    pass


@dataclass(frozen=True)
class TransitionLimits:
    """Retry ceilings enforced by the guarded edges."""
    max_ci_attempts: int = DEFAULT_MAX_CI_ATTEMPTS
    max_comment_attempts: int = DEFAULT_MAX_COMMENT_ATTEMPTS


DEFAULT_LIMITS = TransitionLimits()


@dataclass
class Transition:
    """An accepted event: the new phase and the replacement context."""
    phase: Phase
    context: WorkflowContext

    @property
    def accepted(self) -> bool:
        return True


@dataclass
class Rejected:
    """An event that is not valid for the current phase."""
    phase: Phase
    event: Event
    reason: str

    @property
    def accepted(self) -> bool:
        return False


TransitionOutcome = Union[Transition, Rejected]

_Handler = Callable[[WorkflowContext, Event, TransitionLimits], TransitionOutcome]


# =========================================================================
# Event Handlers
# =========================================================================
# Each handler receives a private copy of the context and may mutate it.


def _handle_start(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    research_file = event.data.get("input")
    if not research_file:
        return Rejected(Phase.IDLE, event, "START requires a research file reference")
    ctx.research_file = str(research_file)
    ctx.started_at = ctx.last_update
    return Transition(Phase.SETUP, ctx)


def _handle_setup_complete(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    if event.data.get("worktree_path"):
        ctx.worktree_path = event.data["worktree_path"]
    if event.data.get("branch"):
        ctx.branch = event.data["branch"]
    return Transition(Phase.PLANNING, ctx)


def _handle_planning_complete(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    plan_files = list(event.data.get("plan_files") or [])
    if not plan_files:
        count = event.data.get("plan_count") or 0
        plan_files = [f"PLAN_{n}" for n in range(1, count + 1)]

    issues = list(event.data.get("plan_issues") or [])
    ctx.plans = [
        PlanUnit(path=path, issue_number=issues[i] if i < len(issues) else None)
        for i, path in enumerate(plan_files)
    ]
    ctx.current_plan_index = 0
    return Transition(Phase.IMPLEMENTING, ctx)


def _handle_plan_complete(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    current = ctx.current_plan
    if current is None:
        return Rejected(Phase.IMPLEMENTING, event, "No plans remain to complete")

    plan_number = event.data.get("plan_number")
    expected = ctx.current_plan_index + 1
    if plan_number is not None and plan_number != expected:
        if 1 <= plan_number < expected:
            return Rejected(Phase.IMPLEMENTING, event, f"Plan {plan_number} is already complete")
        return Rejected(
            Phase.IMPLEMENTING, event,
            f"Plan {plan_number} is out of order; expected plan {expected}",
        )

    current.completed = True
    ctx.current_plan_index += 1
    return Transition(Phase.IMPLEMENTING, ctx)


def _handle_implementation_complete(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    # The phase signal subsumes any plan signals it outranked
    for plan in ctx.plans:
        plan.completed = True
    ctx.current_plan_index = len(ctx.plans)
    return Transition(Phase.SUBMITTING, ctx)


def _handle_pr_created(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    if event.data.get("pr_number") is not None:
        ctx.pr_number = event.data["pr_number"]
    if event.data.get("pr_url"):
        ctx.pr_url = event.data["pr_url"]
    # Opening the PR starts the first CI run
    ctx.ci_attempts += 1
    return Transition(Phase.CI_VERIFY, ctx)


def _handle_ci_passed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    return Transition(Phase.COMMENT_VERIFY, ctx)


def _handle_ci_failed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    reason = event.reason or "CI failed"
    ctx.ci_attempts += 1

    if ctx.ci_attempts < limits.max_ci_attempts:
        ctx.error = reason
        return Transition(Phase.CI_FIX, ctx)

    ctx.error = (
        f"CI still failing after {ctx.ci_attempts} attempts "
        f"(limit {limits.max_ci_attempts}): {reason}"
    )
    ctx.failed_phase = Phase.CI_VERIFY
    return Transition(Phase.FAILED, ctx)


def _handle_ci_fix_pushed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    return Transition(Phase.CI_VERIFY, ctx)


def _handle_ci_fix_failed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    # Spends a CI attempt; the push may have landed before the worker died
    reason = event.reason or "CI fix attempt failed"
    ctx.ci_attempts += 1

    if ctx.ci_attempts < limits.max_ci_attempts:
        ctx.error = reason
        return Transition(Phase.CI_VERIFY, ctx)

    ctx.error = (
        f"CI fix attempts exhausted after {ctx.ci_attempts} attempts "
        f"(limit {limits.max_ci_attempts}): {reason}"
    )
    ctx.failed_phase = Phase.CI_FIX
    return Transition(Phase.FAILED, ctx)


def _handle_comments_resolved(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    return Transition(Phase.COMPLETED, ctx)


def _handle_comments_pending(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    under_limit = ctx.comment_attempts < limits.max_comment_attempts
    ctx.comment_attempts += 1

    if under_limit:
        return Transition(Phase.COMMENT_FIX, ctx)

    ctx.error = (
        f"Review comments still pending after {limits.max_comment_attempts} "
        f"fix attempts (limit {limits.max_comment_attempts})"
    )
    ctx.failed_phase = Phase.COMMENT_VERIFY
    return Transition(Phase.FAILED, ctx)


def _handle_comment_fix_pushed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    return Transition(Phase.COMMENT_VERIFY, ctx)


def _handle_comment_fix_failed(ctx: WorkflowContext, event: Event, limits: TransitionLimits) -> TransitionOutcome:
    reason = event.reason or "Comment fix attempt failed"
    under_limit = ctx.comment_attempts < limits.max_comment_attempts
    ctx.comment_attempts += 1

    if under_limit:
        ctx.error = reason
        return Transition(Phase.COMMENT_VERIFY, ctx)

    ctx.error = (
        f"Comment fix attempts exhausted after {limits.max_comment_attempts} "
        f"attempts (limit {limits.max_comment_attempts}): {reason}"
    )
    ctx.failed_phase = Phase.COMMENT_FIX
    return Transition(Phase.FAILED, ctx)


TRANSITIONS: dict[tuple[Phase, EventType], _Handler] = {
    (Phase.IDLE, EventType.START): _handle_start,
    (Phase.SETUP, EventType.SETUP_COMPLETE): _handle_setup_complete,
    (Phase.PLANNING, EventType.PLANNING_COMPLETE): _handle_planning_complete,
    (Phase.IMPLEMENTING, EventType.PLAN_COMPLETE): _handle_plan_complete,
    (Phase.IMPLEMENTING, EventType.IMPLEMENTATION_COMPLETE): _handle_implementation_complete,
    (Phase.SUBMITTING, EventType.PR_CREATED): _handle_pr_created,
    (Phase.CI_VERIFY, EventType.CI_PASSED): _handle_ci_passed,
    (Phase.CI_VERIFY, EventType.CI_FAILED): _handle_ci_failed,
    (Phase.CI_FIX, EventType.CI_FIX_PUSHED): _handle_ci_fix_pushed,
    (Phase.CI_FIX, EventType.FIX_FAILED): _handle_ci_fix_failed,
    (Phase.COMMENT_VERIFY, EventType.COMMENTS_RESOLVED): _handle_comments_resolved,
    (Phase.COMMENT_VERIFY, EventType.COMMENTS_PENDING): _handle_comments_pending,
    (Phase.COMMENT_FIX, EventType.COMMENT_FIX_PUSHED): _handle_comment_fix_pushed,
    (Phase.COMMENT_FIX, EventType.FIX_FAILED): _handle_comment_fix_failed,
}


def valid_events(phase: Phase) -> list[EventType]:
    """
    List the events a phase accepts.

    Args:
        phase: The phase to inspect.

    Returns:
        Accepted event types; empty for terminal phases.
    """
    if phase.is_terminal:
        return []
    events = [event_type for (p, event_type) in TRANSITIONS if p == phase]
    events.append(EventType.FAIL)
    return events


def transition(
    phase: Phase,
    event: Event,
    context: WorkflowContext,
    limits: TransitionLimits = DEFAULT_LIMITS,
    now: Optional[str] = None,
) -> TransitionOutcome:
    """
    Apply one event to a (phase, context) pair.

    Pure: the given context is never mutated, and for a fixed ``now`` the
    result is deterministic.

    Args:
        phase: Current phase.
        event: Event to apply.
        context: Current context.
        limits: CI and comment retry ceilings.
        now: Timestamp to stamp on the new context. Defaults to the clock.

    Returns:
        Transition with the new phase and a fresh context, or Rejected.
    """
    if phase.is_terminal:
        return Rejected(phase, event, f"Phase '{phase.value}' is terminal")

    timestamp = now or now_iso()

    if event.type == EventType.FAIL:
        ctx = context.copy()
        reason = event.reason or "Unknown error"
        ctx.error = reason
        ctx.failed_phase = phase
        ctx.last_update = timestamp
        ctx.signals.append(SignalRecord(
            signal=FAILED_SIGNAL,
            timestamp=timestamp,
            data={"reason": reason, "phase": phase.value},
        ))
        return Transition(Phase.FAILED, ctx)

    handler = TRANSITIONS.get((phase, event.type))
    if handler is None:
        allowed = ", ".join(e.name for e in valid_events(phase))
        return Rejected(
            phase,
            event,
            f"Event {event.name} is not valid in phase '{phase.value}'. "
            f"Valid events: {allowed}",
        )

    ctx = context.copy()
    ctx.last_update = timestamp
    outcome = handler(ctx, event, limits)

    # START is implicit setup, not a worker signal
    if isinstance(outcome, Transition) and event.type != EventType.START:
        outcome.context.signals.append(SignalRecord(
            signal=event.name,
            timestamp=timestamp,
            data=dict(event.data),
        ))

    return outcome


class StateMachine:
    """
    Holds the live (phase, context) snapshot for one workflow.

    Every accepted event replaces the snapshot wholesale; rejected events
    leave it untouched.
    """

    def __init__(
        self,
        limits: Optional[TransitionLimits] = None,
        logger: Optional[RunnerLogger] = None,
        phase: Phase = Phase.IDLE,
        context: Optional[WorkflowContext] = None,
    ) -> None:
        """
        Initialize the State Machine.

        Args:
            limits: Retry ceilings. Defaults to 5 CI and 10 comment attempts.
            logger: Optional logger for recording operations.
            phase: Phase to start from (used when resuming).
            context: Context to start from (used when resuming).
        """
        self.limits = limits or DEFAULT_LIMITS
        self.logger = logger
        self._phase = phase
        self._context = context if context is not None else WorkflowContext()

    @classmethod
    def restore(
        cls,
        phase: Phase,
        context: WorkflowContext,
        limits: Optional[TransitionLimits] = None,
        logger: Optional[RunnerLogger] = None,
    ) -> StateMachine:
        """Rebuild a machine from a persisted checkpoint."""
        return cls(limits=limits, logger=logger, phase=phase, context=context)

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info",
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "state_machine"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def context(self) -> WorkflowContext:
        return self._context

    def snapshot(self) -> tuple[Phase, WorkflowContext]:
        """Current (phase, context) pair."""
        return self._phase, self._context

    @property
    def is_terminal(self) -> bool:
        return self._phase.is_terminal

    @property
    def is_success(self) -> bool:
        return self._phase == Phase.COMPLETED

    def start(self, research_file: str) -> TransitionOutcome:
        """
        Send START for a fresh workflow.

        Raises:
            StateMachineError: If the machine has already left IDLE.
        """
        if self._phase != Phase.IDLE:
            raise StateMachineError(
                f"Cannot start a workflow from phase '{self._phase.value}'"
            )
        return self.send(Event.start(research_file))

    def send(self, event: Event, now: Optional[str] = None) -> TransitionOutcome:
        """
        Apply an event to the current snapshot.

        Args:
            event: The event to apply.
            now: Optional timestamp override.

        Returns:
            The transition outcome. The snapshot changes only when accepted.
        """
        outcome = transition(self._phase, event, self._context, self.limits, now)

        if isinstance(outcome, Rejected):
            self._log("transition_rejected", {
                "phase": self._phase.value,
                "event": event.name,
                "reason": outcome.reason,
            }, level="warn")
            return outcome

        old_phase = self._phase
        self._phase = outcome.phase
        self._context = outcome.context

        self._log("transition_applied", {
            "event": event.name,
            "from_phase": old_phase.value,
            "to_phase": outcome.phase.value,
            "ci_attempts": outcome.context.ci_attempts,
            "comment_attempts": outcome.context.comment_attempts,
        })

        return outcome
