"""
Core data models for Workflow Runner.

This module defines the foundational data structures used throughout the system:
- Enums for workflow phases and event types
- Dataclasses for the workflow context, plans, signals and results
- Dictionary serialization support for all models
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum, auto
from typing import Any, Optional


def now_iso() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Phase(Enum):
    """
    Phases of the delivery pipeline.

    Exactly one phase is active at a time. COMPLETED and FAILED are terminal.
    """
    IDLE = "idle"
    SETUP = "setup"                      # Worktree / branch creation
    PLANNING = "planning"                # Research -> implementation plans
    IMPLEMENTING = "implementing"        # One plan per worker invocation
    SUBMITTING = "submitting"            # Push and open the pull request
    CI_VERIFY = "ci_verify"              # Wait for CI verdict
    CI_FIX = "ci_fix"                    # Push a fix for a CI failure
    COMMENT_VERIFY = "comment_verify"    # Check for unresolved review comments
    COMMENT_FIX = "comment_fix"          # Address review comments
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES


TERMINAL_PHASES = frozenset({Phase.COMPLETED, Phase.FAILED})


class EventType(Enum):
    """
    Kinds of events the state machine understands.

    Everything except the control events is a worker-emitted completion signal.
    """
    # Control events
    START = auto()
    FAIL = auto()
    # A fix-phase worker invocation crashed or timed out
    FIX_FAILED = auto()

    # Phase completion signals
    SETUP_COMPLETE = auto()
    PLANNING_COMPLETE = auto()
    PLAN_COMPLETE = auto()
    IMPLEMENTATION_COMPLETE = auto()
    PR_CREATED = auto()
    CI_PASSED = auto()
    CI_FAILED = auto()
    CI_FIX_PUSHED = auto()
    COMMENTS_RESOLVED = auto()
    COMMENTS_PENDING = auto()
    COMMENT_FIX_PUSHED = auto()

    # <promise>COMPLETE</promise>; parsed, never accepted by the transition table
    WORKFLOW_COMPLETE = auto()


@dataclass
class Event:
    """
    One parsed signal or control event.

    Payload keys by type:
    - START: input
    - FAIL: reason
    - FIX_FAILED: reason
    - SETUP_COMPLETE: worktree_path, branch
    - PLANNING_COMPLETE: plan_count, plan_files, plan_issues
    - PLAN_COMPLETE: plan_number
    - PR_CREATED: pr_number, pr_url
    - CI_FAILED: reason
    - COMMENTS_PENDING: count
    """
    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def start(cls, research_file: str) -> Event:
        return cls(EventType.START, {"input": research_file})

    @classmethod
    def fail(cls, reason: str) -> Event:
        return cls(EventType.FAIL, {"reason": reason})

    @classmethod
    def fix_failed(cls, reason: str) -> Event:
        return cls(EventType.FIX_FAILED, {"reason": reason})

    @property
    def name(self) -> str:
        return self.type.name

    @property
    def reason(self) -> Optional[str]:
        return self.data.get("reason")


@dataclass
class PlanUnit:
    """A single implementation plan produced by the planning phase."""
    path: str                            # Plan file path (or PLAN_<n> label)
    issue_number: Optional[int] = None   # External issue tracking this plan
    completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanUnit:
        """Create from dictionary."""
        return cls(**data)


@dataclass
class SignalRecord:
    """An accepted signal, appended to the context history."""
    signal: str                          # Signal name, e.g. "PR_CREATED"
    timestamp: str                       # ISO format timestamp
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SignalRecord:
        """Create from dictionary."""
        return cls(
            signal=data["signal"],
            timestamp=data["timestamp"],
            data=dict(data.get("data") or {}),
        )


@dataclass
class WorkflowContext:
    """
    Mutable record carried across transitions.

    Created once at START and replaced (never partially patched) by every
    accepted transition. The signal list is append-only.
    """
    research_file: str = ""
    worktree_path: Optional[str] = None
    branch: Optional[str] = None
    plans: list[PlanUnit] = field(default_factory=list)
    current_plan_index: int = 0
    pr_number: Optional[int] = None
    pr_url: Optional[str] = None
    ci_attempts: int = 0
    comment_attempts: int = 0
    error: Optional[str] = None
    failed_phase: Optional[Phase] = None  # Phase active when the run failed
    started_at: str = ""
    last_update: str = ""
    signals: list[SignalRecord] = field(default_factory=list)

    def copy(self) -> WorkflowContext:
        """Deep copy, so transitions never alias the previous context."""
        return copy.deepcopy(self)

    @property
    def current_plan(self) -> Optional[PlanUnit]:
        """Plan at the current index, or None once every plan is done."""
        if 0 <= self.current_plan_index < len(self.plans):
            return self.plans[self.current_plan_index]
        return None

    @property
    def completed_plan_count(self) -> int:
        return sum(1 for plan in self.plans if plan.completed)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data = asdict(self)
        data["failed_phase"] = self.failed_phase.value if self.failed_phase else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowContext:
        """Create from dictionary."""
        data = data.copy()
        data["plans"] = [
            PlanUnit.from_dict(p) if isinstance(p, dict) else p
            for p in data.get("plans", [])
        ]
        data["signals"] = [
            SignalRecord.from_dict(s) if isinstance(s, dict) else s
            for s in data.get("signals", [])
        ]
        if data.get("failed_phase") is not None:
            data["failed_phase"] = Phase(data["failed_phase"])
        return cls(**data)


@dataclass
class ProgressRecord:
    """
    Durable checkpoint: the full context plus the literal phase and iteration.

    This is the only state a crashed orchestrator needs to resume.
    """
    context: WorkflowContext
    phase: Phase
    iteration: int = 0
    ci_status: Optional[str] = None      # pending / passing / failing
    generated_at: Optional[str] = None


@dataclass
class WorkflowResult:
    """Outcome of a run or resume."""
    success: bool
    context: WorkflowContext
    final_phase: Phase
    iterations: int = 0

    @property
    def error(self) -> Optional[str]:
        return self.context.error
