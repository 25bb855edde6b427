"""Tests for the phase state machine.

Covers:
- The happy-path transition table
- Guarded CI and review-comment loops
- Rejection of out-of-order and terminal-phase events
- Purity of transition() and signal history recording
"""
import pytest
from unittest.mock import MagicMock

from workflow_runner.models import Event, EventType, Phase, PlanUnit, WorkflowContext
from workflow_runner.state_machine import (
    Rejected,
    StateMachine,
    StateMachineError,
    TRANSITIONS,
    Transition,
    TransitionLimits,
    transition,
    valid_events,
)

NOW = "2025-01-01T00:00:00Z"


def _ctx(**overrides) -> WorkflowContext:
    ctx = WorkflowContext(research_file="docs/research.md", started_at=NOW, last_update=NOW)
    for key, value in overrides.items():
        setattr(ctx, key, value)
    return ctx


class TestStartTransition:
    """Tests for IDLE --START--> SETUP."""

    def test_start_moves_to_setup(self):
        outcome = transition(Phase.IDLE, Event.start("docs/research.md"), WorkflowContext(), now=NOW)

        assert isinstance(outcome, Transition)
        assert outcome.phase == Phase.SETUP
        assert outcome.context.research_file == "docs/research.md"
        assert outcome.context.started_at == NOW
        assert outcome.context.last_update == NOW

    def test_start_is_not_recorded_as_signal(self):
        outcome = transition(Phase.IDLE, Event.start("r.md"), WorkflowContext(), now=NOW)
        assert outcome.context.signals == []

    def test_start_without_research_file_is_rejected(self):
        outcome = transition(Phase.IDLE, Event(EventType.START, {}), WorkflowContext(), now=NOW)

        assert isinstance(outcome, Rejected)
        assert outcome.accepted is False
        assert outcome.phase == Phase.IDLE


class TestHappyPath:
    """Tests for the forward transitions."""

    def test_setup_complete_records_worktree(self):
        event = Event(EventType.SETUP_COMPLETE, {"worktree_path": "/wt/auth", "branch": "feat/auth"})
        outcome = transition(Phase.SETUP, event, _ctx(), now=NOW)

        assert outcome.phase == Phase.PLANNING
        assert outcome.context.worktree_path == "/wt/auth"
        assert outcome.context.branch == "feat/auth"

    def test_planning_complete_with_files_and_issues(self):
        event = Event(EventType.PLANNING_COMPLETE, {
            "plan_files": ["plans/a.md", "plans/b.md"],
            "plan_issues": [10, 11],
        })
        outcome = transition(Phase.PLANNING, event, _ctx(), now=NOW)

        assert outcome.phase == Phase.IMPLEMENTING
        assert [p.path for p in outcome.context.plans] == ["plans/a.md", "plans/b.md"]
        assert [p.issue_number for p in outcome.context.plans] == [10, 11]
        assert outcome.context.current_plan_index == 0

    def test_planning_complete_with_count_only(self):
        event = Event(EventType.PLANNING_COMPLETE, {"plan_count": 3})
        outcome = transition(Phase.PLANNING, event, _ctx(), now=NOW)

        assert [p.path for p in outcome.context.plans] == ["PLAN_1", "PLAN_2", "PLAN_3"]
        assert all(p.issue_number is None for p in outcome.context.plans)

    def test_plan_complete_advances_current_plan(self):
        ctx = _ctx(plans=[PlanUnit("a.md"), PlanUnit("b.md")])
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.PLAN_COMPLETE, {"plan_number": 1}), ctx, now=NOW)

        assert outcome.phase == Phase.IMPLEMENTING
        assert outcome.context.plans[0].completed is True
        assert outcome.context.plans[1].completed is False
        assert outcome.context.current_plan_index == 1

    def test_plan_complete_without_remaining_plans_is_rejected(self):
        ctx = _ctx(plans=[PlanUnit("a.md", completed=True)], current_plan_index=1)
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.PLAN_COMPLETE, {"plan_number": 1}), ctx, now=NOW)
        assert isinstance(outcome, Rejected)

    def test_duplicate_plan_complete_is_rejected(self):
        ctx = _ctx(
            plans=[PlanUnit("a.md", completed=True), PlanUnit("b.md")],
            current_plan_index=1,
        )
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.PLAN_COMPLETE, {"plan_number": 1}), ctx, now=NOW)

        assert isinstance(outcome, Rejected)
        assert "already complete" in outcome.reason

    def test_plan_complete_out_of_order_is_rejected(self):
        ctx = _ctx(plans=[PlanUnit("a.md"), PlanUnit("b.md")])
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.PLAN_COMPLETE, {"plan_number": 2}), ctx, now=NOW)

        assert isinstance(outcome, Rejected)
        assert "expected plan 1" in outcome.reason

    def test_implementation_complete_marks_every_plan(self):
        ctx = _ctx(plans=[PlanUnit("a.md"), PlanUnit("b.md")])
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.IMPLEMENTATION_COMPLETE), ctx, now=NOW)

        assert outcome.phase == Phase.SUBMITTING
        assert outcome.context.completed_plan_count == 2
        assert outcome.context.current_plan is None

    def test_pr_created_starts_first_ci_attempt(self):
        event = Event(EventType.PR_CREATED, {"pr_number": 7, "pr_url": "https://x/pull/7"})
        outcome = transition(Phase.SUBMITTING, event, _ctx(), now=NOW)

        assert outcome.phase == Phase.CI_VERIFY
        assert outcome.context.pr_number == 7
        assert outcome.context.pr_url == "https://x/pull/7"
        assert outcome.context.ci_attempts == 1

    def test_ci_passed_then_comments_resolved_completes(self):
        ctx = _ctx(pr_number=7, ci_attempts=1)
        after_ci = transition(Phase.CI_VERIFY, Event(EventType.CI_PASSED), ctx, now=NOW)
        assert after_ci.phase == Phase.COMMENT_VERIFY

        done = transition(Phase.COMMENT_VERIFY, Event(EventType.COMMENTS_RESOLVED), after_ci.context, now=NOW)
        assert done.phase == Phase.COMPLETED
        assert [s.signal for s in done.context.signals] == ["CI_PASSED", "COMMENTS_RESOLVED"]


class TestCILoopGuard:
    """Tests for the CI_VERIFY <-> CI_FIX retry ceiling."""

    def test_ci_failure_under_limit_goes_to_fix(self):
        ctx = _ctx(ci_attempts=3)
        outcome = transition(Phase.CI_VERIFY, Event(EventType.CI_FAILED, {"reason": "lint"}), ctx, now=NOW)

        assert outcome.phase == Phase.CI_FIX
        assert outcome.context.ci_attempts == 4
        assert outcome.context.error == "lint"

    def test_ci_failure_at_limit_fails_workflow(self):
        ctx = _ctx(ci_attempts=4)
        outcome = transition(Phase.CI_VERIFY, Event(EventType.CI_FAILED, {"reason": "lint"}), ctx, now=NOW)

        assert outcome.phase == Phase.FAILED
        assert outcome.context.ci_attempts == 5
        assert outcome.context.failed_phase == Phase.CI_VERIFY
        assert outcome.context.error.startswith("CI still failing after 5 attempts (limit 5)")
        assert outcome.context.error.endswith("lint")

    def test_custom_ci_limit(self):
        limits = TransitionLimits(max_ci_attempts=2)
        outcome = transition(Phase.CI_VERIFY, Event(EventType.CI_FAILED), _ctx(ci_attempts=1), limits, now=NOW)
        assert outcome.phase == Phase.FAILED

    def test_fix_pushed_returns_to_verify(self):
        outcome = transition(Phase.CI_FIX, Event(EventType.CI_FIX_PUSHED), _ctx(ci_attempts=2), now=NOW)

        assert outcome.phase == Phase.CI_VERIFY
        assert outcome.context.ci_attempts == 2


    def test_fix_failure_under_limit_returns_to_verify(self):
        outcome = transition(
            Phase.CI_FIX, Event.fix_failed("Worker timeout: Worker timed out after 900 seconds"),
            _ctx(ci_attempts=2), now=NOW,
        )

        assert outcome.phase == Phase.CI_VERIFY
        assert outcome.context.ci_attempts == 3
        assert outcome.context.error.startswith("Worker timeout")
        assert outcome.context.signals[-1].signal == "FIX_FAILED"

    def test_fix_failure_at_limit_fails_workflow(self):
        outcome = transition(Phase.CI_FIX, Event.fix_failed("crash"), _ctx(ci_attempts=4), now=NOW)

        assert outcome.phase == Phase.FAILED
        assert outcome.context.ci_attempts == 5
        assert outcome.context.failed_phase == Phase.CI_FIX
        assert "limit 5" in outcome.context.error


class TestCommentLoopGuard:
    """Tests for the COMMENT_VERIFY <-> COMMENT_FIX retry ceiling."""

    def test_pending_under_limit_goes_to_fix(self):
        outcome = transition(
            Phase.COMMENT_VERIFY, Event(EventType.COMMENTS_PENDING, {"count": 2}),
            _ctx(comment_attempts=9), now=NOW,
        )

        assert outcome.phase == Phase.COMMENT_FIX
        assert outcome.context.comment_attempts == 10

    def test_pending_at_limit_fails_workflow(self):
        outcome = transition(
            Phase.COMMENT_VERIFY, Event(EventType.COMMENTS_PENDING),
            _ctx(comment_attempts=10), now=NOW,
        )

        assert outcome.phase == Phase.FAILED
        assert outcome.context.failed_phase == Phase.COMMENT_VERIFY
        assert "limit 10" in outcome.context.error

    def test_comment_fix_pushed_returns_to_verify(self):
        outcome = transition(Phase.COMMENT_FIX, Event(EventType.COMMENT_FIX_PUSHED), _ctx(), now=NOW)
        assert outcome.phase == Phase.COMMENT_VERIFY


    def test_fix_failure_under_limit_returns_to_verify(self):
        outcome = transition(Phase.COMMENT_FIX, Event.fix_failed("crash"), _ctx(comment_attempts=3), now=NOW)

        assert outcome.phase == Phase.COMMENT_VERIFY
        assert outcome.context.comment_attempts == 4

    def test_fix_failure_at_limit_fails_workflow(self):
        outcome = transition(Phase.COMMENT_FIX, Event.fix_failed("crash"), _ctx(comment_attempts=10), now=NOW)

        assert outcome.phase == Phase.FAILED
        assert outcome.context.comment_attempts == 11
        assert outcome.context.failed_phase == Phase.COMMENT_FIX


class TestFailAndRejection:
    """Tests for FAIL, terminal phases and unknown pairs."""

    @pytest.mark.parametrize("phase", [Phase.SETUP, Phase.IMPLEMENTING, Phase.CI_FIX])
    def test_fail_from_any_active_phase(self, phase):
        outcome = transition(phase, Event.fail("boom"), _ctx(), now=NOW)

        assert outcome.phase == Phase.FAILED
        assert outcome.context.error == "boom"
        assert outcome.context.failed_phase == phase
        record = outcome.context.signals[-1]
        assert record.signal == "FAILED"
        assert record.data == {"reason": "boom", "phase": phase.value}

    def test_fail_without_reason(self):
        outcome = transition(Phase.SETUP, Event(EventType.FAIL), _ctx(), now=NOW)
        assert outcome.context.error == "Unknown error"

    @pytest.mark.parametrize("phase", [Phase.COMPLETED, Phase.FAILED])
    def test_terminal_phases_reject_everything(self, phase):
        outcome = transition(phase, Event.fail("late"), _ctx(), now=NOW)

        assert isinstance(outcome, Rejected)
        assert "terminal" in outcome.reason

    def test_out_of_order_signal_is_rejected(self):
        outcome = transition(Phase.SETUP, Event(EventType.CI_PASSED), _ctx(), now=NOW)

        assert isinstance(outcome, Rejected)
        assert "SETUP_COMPLETE" in outcome.reason
        assert "FAIL" in outcome.reason

    def test_workflow_complete_is_never_accepted(self):
        outcome = transition(Phase.COMMENT_VERIFY, Event(EventType.WORKFLOW_COMPLETE), _ctx(), now=NOW)
        assert isinstance(outcome, Rejected)

    def test_valid_events_for_terminal_phase_is_empty(self):
        assert valid_events(Phase.COMPLETED) == []
        assert valid_events(Phase.CI_VERIFY) == [EventType.CI_PASSED, EventType.CI_FAILED, EventType.FAIL]


class TestPurity:
    """transition() must never mutate its input."""

    def test_input_context_untouched(self):
        ctx = _ctx(plans=[PlanUnit("a.md")])
        outcome = transition(Phase.IMPLEMENTING, Event(EventType.PLAN_COMPLETE, {"plan_number": 1}), ctx, now="T1")

        assert ctx.plans[0].completed is False
        assert ctx.current_plan_index == 0
        assert ctx.signals == []
        assert ctx.last_update == NOW
        assert outcome.context is not ctx

    def test_deterministic_for_fixed_timestamp(self):
        ctx = _ctx(ci_attempts=1)
        event = Event(EventType.CI_FAILED, {"reason": "x"})
        first = transition(Phase.CI_VERIFY, event, ctx, now=NOW)
        second = transition(Phase.CI_VERIFY, event, ctx, now=NOW)

        assert first.phase == second.phase
        assert first.context == second.context

    def test_signal_records_payload(self):
        event = Event(EventType.PR_CREATED, {"pr_number": 7})
        outcome = transition(Phase.SUBMITTING, event, _ctx(), now="T9")

        record = outcome.context.signals[-1]
        assert record.signal == "PR_CREATED"
        assert record.timestamp == "T9"
        assert record.data == {"pr_number": 7}


class TestStateMachine:
    """Tests for the stateful wrapper."""

    def test_start_and_send(self):
        machine = StateMachine()
        machine.start("r.md")
        assert machine.phase == Phase.SETUP

        machine.send(Event(EventType.SETUP_COMPLETE))
        assert machine.phase == Phase.PLANNING
        assert machine.is_terminal is False

    def test_start_twice_raises(self):
        machine = StateMachine()
        machine.start("r.md")
        with pytest.raises(StateMachineError):
            machine.start("r.md")

    def test_rejected_event_keeps_snapshot_and_logs(self):
        logger = MagicMock()
        machine = StateMachine(logger=logger)
        machine.start("r.md")
        before = machine.snapshot()

        outcome = machine.send(Event(EventType.PR_CREATED))

        assert isinstance(outcome, Rejected)
        assert machine.snapshot() == before
        event_types = [call.args[0] for call in logger.log.call_args_list]
        assert "transition_rejected" in event_types

    def test_restore_continues_from_checkpoint(self):
        ctx = _ctx(pr_number=7, ci_attempts=2)
        machine = StateMachine.restore(Phase.CI_FIX, ctx)

        machine.send(Event(EventType.CI_FIX_PUSHED))

        assert machine.phase == Phase.CI_VERIFY
        assert machine.context.ci_attempts == 2

    def test_is_success(self):
        machine = StateMachine.restore(Phase.COMMENT_VERIFY, _ctx())
        machine.send(Event(EventType.COMMENTS_RESOLVED))

        assert machine.is_terminal is True
        assert machine.is_success is True


DOCUMENTED_TARGETS = {
    (Phase.IDLE, EventType.START): Phase.SETUP,
    (Phase.SETUP, EventType.SETUP_COMPLETE): Phase.PLANNING,
    (Phase.PLANNING, EventType.PLANNING_COMPLETE): Phase.IMPLEMENTING,
    (Phase.IMPLEMENTING, EventType.PLAN_COMPLETE): Phase.IMPLEMENTING,
    (Phase.IMPLEMENTING, EventType.IMPLEMENTATION_COMPLETE): Phase.SUBMITTING,
    (Phase.SUBMITTING, EventType.PR_CREATED): Phase.CI_VERIFY,
    (Phase.CI_VERIFY, EventType.CI_PASSED): Phase.COMMENT_VERIFY,
    (Phase.CI_VERIFY, EventType.CI_FAILED): Phase.CI_FIX,
    (Phase.CI_FIX, EventType.CI_FIX_PUSHED): Phase.CI_VERIFY,
    (Phase.CI_FIX, EventType.FIX_FAILED): Phase.CI_VERIFY,
    (Phase.COMMENT_VERIFY, EventType.COMMENTS_RESOLVED): Phase.COMPLETED,
    (Phase.COMMENT_VERIFY, EventType.COMMENTS_PENDING): Phase.COMMENT_FIX,
    (Phase.COMMENT_FIX, EventType.COMMENT_FIX_PUSHED): Phase.COMMENT_VERIFY,
    (Phase.COMMENT_FIX, EventType.FIX_FAILED): Phase.COMMENT_VERIFY,
}

ALL_PAIRS = [(phase, event_type) for phase in Phase for event_type in EventType]


def _event_for(event_type: EventType) -> Event:
    payloads = {
        EventType.START: {"input": "docs/research.md"},
        EventType.PLAN_COMPLETE: {"plan_number": 1},
        EventType.FAIL: {"reason": "boom"},
    }
    return Event(event_type, payloads.get(event_type, {}))


class TestTransitionTable:
    """Every (phase, event) pair either follows the table or is rejected untouched."""

    def test_table_matches_documented_edges(self):
        assert set(TRANSITIONS) == set(DOCUMENTED_TARGETS)

    @pytest.mark.parametrize(
        "phase,event_type", ALL_PAIRS,
        ids=[f"{p.name}-{e.name}" for p, e in ALL_PAIRS],
    )
    def test_pair(self, phase, event_type):
        ctx = _ctx(plans=[PlanUnit("a.md")], ci_attempts=1)
        before = ctx.copy()

        outcome = transition(phase, _event_for(event_type), ctx, now="T1")

        if (phase, event_type) in DOCUMENTED_TARGETS:
            expected = DOCUMENTED_TARGETS[(phase, event_type)]
        elif event_type == EventType.FAIL and not phase.is_terminal:
            expected = Phase.FAILED
        else:
            expected = None

        if expected is None:
            assert isinstance(outcome, Rejected)
            assert outcome.phase == phase
        else:
            assert isinstance(outcome, Transition)
            assert outcome.phase == expected
        assert ctx == before
