"""
Progress persistence for Workflow Runner.

This module handles:
- Writing the full checkpoint to .workflow-progress.txt after every iteration
- Atomic writes so a resuming reader never sees a torn file
- Best-effort parsing of hand-edited or older progress files
- The advisory lock that keeps a second orchestrator off the workspace

File layout:

    # Workflow Progress
    # Generated: 2025-01-01T00:00:00Z
    # Research: docs/research/auth.md
    # Worktree: /work/auth            ("not created" when unset)
    # Branch: feat/auth               ("not created" when unset)

    ## Status
    current_phase: IMPLEMENTING
    iteration: 4
    ...

    ## Plans
    - [x] plans/auth-1.md (issue: #42)
    - [ ] plans/auth-2.md (issue: #43) <- CURRENT

    ## PR / ## Comments / ## Signals
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from workflow_runner.models import (
    EventType,
    Phase,
    PlanUnit,
    ProgressRecord,
    SignalRecord,
    WorkflowContext,
    now_iso,
)
from workflow_runner.utils.fs import FileSystemError, ensure_dir, read_file, safe_write

if TYPE_CHECKING:
    from workflow_runner.config import RunnerConfig
    from workflow_runner.logger import RunnerLogger


NOT_CREATED = "not created"
NULL = "null"

# An ownerless lock file younger than this is assumed to be mid-creation
UNREADABLE_LOCK_GRACE_SECONDS = 10

# Phase names written by older versions of the progress file
LEGACY_PHASES = {
    "CI_RESOLUTION": Phase.CI_VERIFY,
    "CI_FIXING": Phase.CI_FIX,
    "COMMENT_RESOLUTION": Phase.COMMENT_VERIFY,
    "COMMENT_RESOLVING": Phase.COMMENT_FIX,
}

_PLAN_LINE = re.compile(
    r"^- \[(?P<mark>[xX ])\] (?P<path>.+?)"
    r"(?: \(issue: #(?P<issue>\d+)\))?"
    r"(?P<current> <- CURRENT)?\s*$"
)
_SIGNAL_LINE = re.compile(r"^- (?P<ts>\S+): (?P<name>[A-Z_]+)(?: (?P<data>\{.*\}))?\s*$")
_KEY_VALUE = re.compile(r"^(?P<key>[a-z_]+):\s*(?P<value>.*?)\s*$")


class ProgressStoreError(Exception):
    """Raised when the progress file cannot be written."""
    pass


class ProgressLockError(ProgressStoreError):
    """Raised when another live orchestrator holds the workspace lock."""
    pass


def ci_status_for(context: WorkflowContext, phase: Phase) -> Optional[str]:
    """Derive the CI status token shown in the PR block."""
    if context.pr_number is None:
        return None
    if phase in (Phase.COMPLETED, Phase.COMMENT_VERIFY, Phase.COMMENT_FIX):
        return "passing"
    if phase == Phase.CI_FIX:
        return "failing"
    if phase == Phase.FAILED and context.failed_phase in (Phase.CI_VERIFY, Phase.CI_FIX):
        return "failing"
    return "pending"


def _pending_comments(context: WorkflowContext, phase: Phase) -> int:
    if phase != Phase.COMMENT_FIX:
        return 0
    for record in reversed(context.signals):
        if record.signal == EventType.COMMENTS_PENDING.name:
            return int(record.data.get("count") or 0)
    return 0


def _fmt(value: Any) -> str:
    return NULL if value is None else str(value)


def _fmt_text(value: Optional[str]) -> str:
    # JSON-quoted so multi-line error text stays on one line
    return NULL if value is None else json.dumps(value)


def render_progress(
    context: WorkflowContext,
    phase: Phase,
    iteration: int,
    generated_at: Optional[str] = None,
) -> str:
    """
    Render the full progress document.

    Args:
        context: Context to persist.
        phase: Current phase.
        iteration: Cumulative iteration counter.
        generated_at: Timestamp for the header. Defaults to now.

    Returns:
        The document text.
    """
    generated_at = generated_at or now_iso()

    plan_lines = []
    for i, plan in enumerate(context.plans):
        mark = "[x]" if plan.completed else "[ ]"
        issue = f" (issue: #{plan.issue_number})" if plan.issue_number is not None else ""
        current = " <- CURRENT" if not plan.completed and i == context.current_plan_index else ""
        plan_lines.append(f"- {mark} {plan.path}{issue}{current}")

    signal_lines = []
    for record in context.signals:
        line = f"- {record.timestamp}: {record.signal}"
        if record.data:
            line += " " + json.dumps(record.data, sort_keys=True, default=str)
        signal_lines.append(line)

    lines = [
        "# Workflow Progress",
        f"# Generated: {generated_at}",
        f"# Research: {context.research_file}",
        f"# Worktree: {context.worktree_path or NOT_CREATED}",
        f"# Branch: {context.branch or NOT_CREATED}",
        "",
        "## Status",
        f"current_phase: {phase.value.upper()}",
        f"iteration: {iteration}",
        f"started_at: {context.started_at}",
        f"last_update: {context.last_update or generated_at}",
        f"error: {_fmt_text(context.error)}",
        f"failed_phase: {context.failed_phase.value if context.failed_phase else NULL}",
        "",
        "## Plans",
        f"total: {len(context.plans)}",
        f"completed: {context.completed_plan_count}",
        f"current: {context.current_plan_index}",
        *(plan_lines or ["(no plans yet)"]),
        "",
        "## PR",
        f"number: {_fmt(context.pr_number)}",
        f"url: {_fmt(context.pr_url)}",
        f"ci_status: {_fmt(ci_status_for(context, phase))}",
        f"ci_attempts: {context.ci_attempts}",
        "",
        "## Comments",
        f"attempts: {context.comment_attempts}",
        f"pending: {_pending_comments(context, phase)}",
        "",
        "## Signals",
        *(signal_lines or ["(no signals yet)"]),
    ]
    return "\n".join(lines) + "\n"


# =========================================================================
# Parsing
# =========================================================================


def _split_sections(content: str) -> tuple[list[str], dict[str, list[str]]]:
    """Split into header comment lines and named '## ' sections."""
    header: list[str] = []
    sections: dict[str, list[str]] = {}
    current: Optional[list[str]] = None

    for raw in content.splitlines():
        line = raw.rstrip()
        if line.startswith("## "):
            current = sections.setdefault(line[3:].strip().lower(), [])
        elif current is None:
            header.append(line)
        elif line:
            current.append(line)
    return header, sections


def _header_value(header: list[str], key: str) -> Optional[str]:
    prefix = f"# {key}:"
    for line in header:
        if line.startswith(prefix):
            return line[len(prefix):].strip()
    return None


def _key_values(lines: list[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in lines:
        match = _KEY_VALUE.match(line)
        if match and match.group("key") not in values:
            values[match.group("key")] = match.group("value")
    return values


def _parse_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _parse_optional_int(value: Optional[str]) -> Optional[int]:
    if not value or value == NULL:
        return None
    try:
        return int(value.lstrip("#"))
    except ValueError:
        return None


def _parse_optional_str(value: Optional[str]) -> Optional[str]:
    if not value or value in (NULL, NOT_CREATED):
        return None
    return value


def _parse_text(value: Optional[str]) -> Optional[str]:
    if not value or value == NULL:
        return None
    if value.startswith('"'):
        try:
            decoded = json.loads(value)
        except json.JSONDecodeError:
            return value
        return decoded if isinstance(decoded, str) else value
    return value


def _parse_phase(value: Optional[str]) -> Optional[Phase]:
    if not value:
        return None
    name = value.strip().upper()
    if name in LEGACY_PHASES:
        return LEGACY_PHASES[name]
    try:
        return Phase(name.lower())
    except ValueError:
        return None


def _parse_plans(lines: list[str]) -> tuple[list[PlanUnit], Optional[int]]:
    plans: list[PlanUnit] = []
    marker_index: Optional[int] = None
    for line in lines:
        match = _PLAN_LINE.match(line)
        if not match:
            continue
        if match.group("current"):
            marker_index = len(plans)
        plans.append(PlanUnit(
            path=match.group("path").strip(),
            issue_number=int(match.group("issue")) if match.group("issue") else None,
            completed=match.group("mark").lower() == "x",
        ))
    return plans, marker_index


def _parse_signals(lines: list[str]) -> list[SignalRecord]:
    signals: list[SignalRecord] = []
    for line in lines:
        match = _SIGNAL_LINE.match(line)
        if not match:
            continue
        data: dict[str, Any] = {}
        if match.group("data"):
            try:
                decoded = json.loads(match.group("data"))
            except json.JSONDecodeError:
                decoded = None
            if isinstance(decoded, dict):
                data = decoded
        signals.append(SignalRecord(
            signal=match.group("name"),
            timestamp=match.group("ts"),
            data=data,
        ))
    return signals


def parse_progress(content: str) -> Optional[ProgressRecord]:
    """
    Best-effort parse of a progress document.

    Missing fields fall back to null/zero. Returns None only when the
    document has no status section at all (empty or torn file).
    """
    header, sections = _split_sections(content)
    if "status" not in sections:
        return None

    status = _key_values(sections["status"])
    plans_section = sections.get("plans", [])
    plan_values = _key_values(plans_section)
    pr = _key_values(sections.get("pr", []))
    comments = _key_values(sections.get("comments", []))

    phase = _parse_phase(status.get("current_phase")) or Phase.IDLE

    plans, marker_index = _parse_plans(plans_section)
    if "current" in plan_values:
        index = _parse_int(plan_values["current"], default=-1)
    elif marker_index is not None:
        index = marker_index
    else:
        index = next((i for i, p in enumerate(plans) if not p.completed), len(plans))
    if index < 0:
        index = next((i for i, p in enumerate(plans) if not p.completed), len(plans))
    index = min(index, len(plans))

    context = WorkflowContext(
        research_file=_header_value(header, "Research") or "",
        worktree_path=_parse_optional_str(_header_value(header, "Worktree")),
        branch=_parse_optional_str(_header_value(header, "Branch")),
        plans=plans,
        current_plan_index=index,
        pr_number=_parse_optional_int(pr.get("number")),
        pr_url=_parse_optional_str(pr.get("url")),
        ci_attempts=max(0, _parse_int(pr.get("ci_attempts"))),
        comment_attempts=max(0, _parse_int(comments.get("attempts"))),
        error=_parse_text(status.get("error")),
        failed_phase=_parse_phase(status.get("failed_phase")),
        started_at=status.get("started_at", ""),
        last_update=status.get("last_update", ""),
        signals=_parse_signals(sections.get("signals", [])),
    )

    return ProgressRecord(
        context=context,
        phase=phase,
        iteration=max(0, _parse_int(status.get("iteration"))),
        ci_status=_parse_optional_str(pr.get("ci_status")),
        generated_at=_header_value(header, "Generated"),
    )


class ProgressStore:
    """
    Durable checkpoint for one workspace.

    Handles writing the progress document with atomic replaces and reading
    it back tolerantly on resume.
    """

    def __init__(
        self,
        config: RunnerConfig,
        logger: Optional[RunnerLogger] = None,
    ) -> None:
        """
        Initialize the progress store.

        Args:
            config: RunnerConfig with paths configured.
            logger: Optional logger for recording operations.
        """
        self._config = config
        self._logger = logger
        self._path = config.progress_path

    @property
    def path(self) -> Path:
        return self._path

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "progress_store"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    def exists(self) -> bool:
        return self._path.is_file()

    def write(self, context: WorkflowContext, phase: Phase, iteration: int) -> None:
        """
        Overwrite the progress file with the full checkpoint.

        Raises:
            ProgressStoreError: If the file cannot be written.
        """
        content = render_progress(context, phase, iteration)
        try:
            safe_write(self._path, content)
        except FileSystemError as e:
            self._log("progress_write_failed", {"error": str(e)}, level="error")
            raise ProgressStoreError(f"Failed to persist progress: {e}")

        self._log("progress_written", {
            "phase": phase.value,
            "iteration": iteration,
        }, level="debug")

    def read(self) -> Optional[ProgressRecord]:
        """
        Read the checkpoint back.

        Returns:
            ProgressRecord, or None if the file is missing or unreadable.
        """
        if not self.exists():
            return None

        try:
            content = read_file(self._path)
        except FileSystemError as e:
            self._log("progress_read_failed", {"error": str(e)}, level="warn")
            return None

        record = parse_progress(content)
        if record is None:
            self._log("progress_unparseable", {"path": str(self._path)}, level="warn")
        return record


class ProgressLock:
    """
    Advisory single-writer lock for a workspace.

    The lock file holds the owner's pid and an ISO timestamp. A lock whose
    pid is no longer alive is stale and gets reclaimed.
    """

    def __init__(
        self,
        path: Path,
        logger: Optional[RunnerLogger] = None,
    ) -> None:
        self.path = Path(path)
        self._logger = logger
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self._logger:
            log_data = {"component": "progress_lock"}
            if data:
                log_data.update(data)
            self._logger.log(event_type, log_data, level=level)

    @staticmethod
    def _pid_alive(pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists but owned by another user
            return True
        return True

    def _read_owner(self) -> tuple[Optional[int], Optional[str]]:
        try:
            lines = self.path.read_text().splitlines()
        except OSError:
            return None, None
        pid = _parse_optional_int(lines[0].strip()) if lines else None
        locked_at = lines[1].strip() if len(lines) > 1 else None
        return pid, locked_at

    def _age_seconds(self) -> float:
        try:
            return time.time() - self.path.stat().st_mtime
        except OSError:
            return float("inf")

    def _try_create(self) -> bool:
        """Publish a fully written lock file, or return False if one exists."""
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n{datetime.now(timezone.utc).isoformat()}\n")
            # link() fails if the target exists, so readers never see an empty lock
            os.link(temp_path, self.path)
        except FileExistsError:
            return False
        finally:
            os.unlink(temp_path)
        return True

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            ProgressLockError: If a live process already holds it.
            ProgressStoreError: If the lock file cannot be created.
        """
        if self._held:
            return

        try:
            ensure_dir(self.path.parent)
            if not self._try_create():
                pid, locked_at = self._read_owner()
                if pid is None and self._age_seconds() < UNREADABLE_LOCK_GRACE_SECONDS:
                    raise ProgressLockError(
                        f"{self.path} has no owner yet; another orchestrator may be starting"
                    )
                if pid is not None and self._pid_alive(pid):
                    raise ProgressLockError(
                        f"Another orchestrator (pid {pid}, since {locked_at}) "
                        f"holds {self.path}"
                    )
                self._log("stale_lock_reclaimed", {"pid": pid, "locked_at": locked_at}, level="warn")
                self.path.unlink(missing_ok=True)
                if not self._try_create():
                    raise ProgressLockError(f"Lost race for {self.path}")
        except (OSError, FileSystemError) as e:
            raise ProgressStoreError(f"Failed to create lock {self.path}: {e}")

        self._held = True
        self._log("lock_acquired", {"path": str(self.path)}, level="debug")

    def release(self) -> None:
        """Drop the lock if this instance holds it."""
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            self._log("lock_release_failed", {"error": str(e)}, level="warn")

    def __enter__(self) -> ProgressLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()
