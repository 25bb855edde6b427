"""
CI status polling for Workflow Runner.

This module provides:
- CIRunDetails / CIJob models for a GitHub Actions run
- GitHubCliClient, which reads run status through the gh CLI
- poll_ci_status, a bounded polling sub-loop with its own long timeout

Worker phase commands that must wait on CI call this through the
``workflow-runner ci-wait <run-id>`` command.
"""

from __future__ import annotations

import json
import subprocess
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

if TYPE_CHECKING:
    from workflow_runner.config import CIConfig
    from workflow_runner.logger import RunnerLogger


RUN_VIEW_FIELDS = (
    "databaseId,displayTitle,status,conclusion,headSha,headBranch,"
    "event,createdAt,updatedAt,url,jobs"
)

FAILURE_CONCLUSIONS = frozenset({"failure", "timed_out", "cancelled"})


class CIStatusError(Exception):
    """Raised when CI status cannot be fetched or decoded."""
    pass


@dataclass
class CIJob:
    """One job within a CI run."""
    name: str
    status: str
    conclusion: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CIJob:
        return cls(
            name=data.get("name", ""),
            status=(data.get("status") or "").lower(),
            conclusion=(data.get("conclusion") or "").lower() or None,
        )


@dataclass
class CIRunDetails:
    """Status of one CI run, as reported by ``gh run view``."""
    id: int
    status: str                          # queued / in_progress / completed
    conclusion: Optional[str] = None     # success / failure / cancelled / ...
    name: str = ""
    head_branch: str = ""
    head_sha: str = ""
    url: str = ""
    jobs: list[CIJob] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CIRunDetails:
        """Create from the gh JSON payload."""
        return cls(
            id=int(data.get("databaseId") or 0),
            status=(data.get("status") or "").lower(),
            conclusion=(data.get("conclusion") or "").lower() or None,
            name=data.get("displayTitle", ""),
            head_branch=data.get("headBranch", ""),
            head_sha=data.get("headSha", ""),
            url=data.get("url", ""),
            jobs=[CIJob.from_dict(j) for j in data.get("jobs") or []],
        )


class CIStatusClient(Protocol):
    def get_ci_status(self, run_id: int) -> CIRunDetails:
        ...


class GitHubCliClient:
    """Reads CI run status through the GitHub CLI."""

    def __init__(
        self,
        config: CIConfig,
        cwd: Optional[str] = None,
        logger: Optional[RunnerLogger] = None,
    ) -> None:
        self.config = config
        self.cwd = cwd
        self.logger = logger

    def _log(self, event_type: str, data: Optional[dict] = None, level: str = "info") -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "ci_poller"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def get_ci_status(self, run_id: int) -> CIRunDetails:
        """
        Fetch one run's status.

        Raises:
            CIStatusError: If gh is missing, fails, times out or returns bad JSON.
        """
        cmd = [self.config.binary, "run", "view", str(run_id), "--json", RUN_VIEW_FIELDS]
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                cwd=self.cwd,
                timeout=self.config.request_timeout_seconds,
            )
        except FileNotFoundError:
            raise CIStatusError(f"{self.config.binary} CLI not found. Please install it first.")
        except subprocess.TimeoutExpired:
            self._log("ci_status_timeout", {"run_id": run_id}, level="warn")
            raise CIStatusError(
                f"gh run view {run_id} timed out after "
                f"{self.config.request_timeout_seconds} seconds"
            )

        if proc.returncode != 0:
            raise CIStatusError(
                f"gh run view {run_id} failed ({proc.returncode}): {proc.stderr.strip()[:300]}"
            )

        try:
            data = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise CIStatusError(f"Failed to parse gh output as JSON: {e}")

        return CIRunDetails.from_dict(data)


def is_ci_complete(status: str) -> bool:
    return status == "completed"


def is_ci_success(details: CIRunDetails) -> bool:
    return details.status == "completed" and details.conclusion == "success"


def is_ci_failure(details: CIRunDetails) -> bool:
    return details.status == "completed" and details.conclusion in FAILURE_CONCLUSIONS


def get_ci_status_message(details: CIRunDetails) -> str:
    """Human-readable one-liner for a run."""
    if details.status == "queued":
        return "CI is queued, waiting to start..."

    if details.status == "in_progress":
        running = [j.name for j in details.jobs if j.status == "in_progress"]
        if running:
            return f"Running: {', '.join(running)}"
        return "CI is running..."

    if details.status == "completed":
        if details.conclusion == "success":
            return "CI passed successfully"
        if details.conclusion == "failure":
            failed = [j.name for j in details.jobs if j.conclusion == "failure"]
            if failed:
                return f"CI failed: {', '.join(failed)}"
            return "CI failed"
        return f"CI completed with: {details.conclusion}"

    return f"CI status: {details.status}"


@dataclass
class PollResult:
    """
    Outcome of a polling sub-loop.

    status is "completed" (with conclusion "success" or "failure"),
    "timeout" or "error".
    """
    status: str
    conclusion: Optional[str] = None
    details: Optional[CIRunDetails] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed" and self.conclusion == "success"


def poll_ci_status(
    client: CIStatusClient,
    run_id: int,
    interval_seconds: float = 30,
    timeout_seconds: float = 1800,
    on_poll: Optional[Callable[[CIRunDetails], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    Poll a CI run until it completes or the timeout elapses.

    Args:
        client: Status source.
        run_id: CI run identifier.
        interval_seconds: Delay between polls.
        timeout_seconds: Overall bound on the sub-loop.
        on_poll: Called with every fetched status.
        sleep: Sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Returns:
        PollResult. Fetch errors end the loop with status "error".
    """
    started = clock()
    last: Optional[CIRunDetails] = None

    while True:
        try:
            details = client.get_ci_status(run_id)
        except CIStatusError as e:
            return PollResult(status="error", details=last, error=str(e))

        last = details
        if on_poll:
            on_poll(details)

        if is_ci_complete(details.status):
            return PollResult(
                status="completed",
                conclusion="success" if is_ci_success(details) else "failure",
                details=details,
            )

        if clock() - started >= timeout_seconds:
            return PollResult(status="timeout", details=last)

        sleep(interval_seconds)
