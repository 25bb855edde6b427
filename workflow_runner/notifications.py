"""
Append-only notification log for workflow milestones.

Writes one line per milestone to ~/.workflow-notifications.log:

    [2025-01-01T12:00:00Z] STARTED auth-flow SETUP "Starting workflow from docs/auth.md"

The file is shared by every workflow on the machine and is never truncated.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol


class NotificationStatus:
    """Status tokens written to the notification log."""
    STARTED = "STARTED"
    RESUMED = "RESUMED"
    PHASE = "PHASE"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


class NotificationSink(Protocol):
    """Destination for workflow milestone notifications."""

    def notify(self, status: str, workflow_id: str, stage: str, message: str) -> None:
        ...


class FileNotificationLog:
    """
    Append-only human-readable notification log.

    Never truncates - only appends.
    """

    def __init__(self, path: Path) -> None:
        """
        Initialize the notification log.

        Args:
            path: Log file path. Parent directories are created on first write.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def notify(self, status: str, workflow_id: str, stage: str, message: str) -> None:
        """
        Append one notification line.

        Args:
            status: Status token, e.g. "STARTED" or "ERROR".
            workflow_id: Workflow identifier.
            stage: Phase or stage name in upper case.
            message: Free-form message. Quotes and newlines are flattened.
        """
        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        flat = " ".join(message.split()).replace('"', "'")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a") as f:
            f.write(f'[{timestamp}] {status} {workflow_id} {stage} "{flat}"\n')

    def read_entries(self, workflow_id: Optional[str] = None) -> list[str]:
        """
        Read back notification lines, optionally for one workflow.

        Args:
            workflow_id: Only return lines for this workflow.

        Returns:
            Lines without trailing newlines, oldest first.
        """
        if not self._path.exists():
            return []
        lines = self._path.read_text().splitlines()
        if workflow_id is None:
            return lines
        return [line for line in lines if f" {workflow_id} " in line]
