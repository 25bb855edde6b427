"""
Structured JSONL logging for Workflow Runner.

This module provides:
- JSONL event logging for every orchestrator iteration
- Log files organized by workflow and date
- Run-scoped context so a resume can be told apart from the first run
- Log readback with filters for post-mortem diagnosis
"""

from __future__ import annotations

import json
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from workflow_runner.config import RunnerConfig, get_config_or_default


class LogLevel:
    """Log level constants."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


def workflow_id_for(research_file: str) -> str:
    """
    Derive a stable workflow identifier from a research file reference.

    ``docs/research/Auth Flow.md`` becomes ``auth-flow``.
    """
    stem = Path(research_file).stem if research_file else ""
    slug = re.sub(r"[^a-z0-9]+", "-", stem.lower()).strip("-")
    return slug or "workflow"


class RunnerLogger:
    """
    JSONL event logger for Workflow Runner.

    Writes structured log entries to .workflow/logs/<workflow>-YYYY-MM-DD.jsonl

    Each log entry is a JSON object with:
    - timestamp: ISO format timestamp
    - level: Log level (debug, info, warn, error)
    - event_type: Type of event being logged
    - workflow_id: Workflow identifier
    - data: Additional event data (dict)
    - run_id: Present inside a run_context block
    """

    def __init__(self, workflow_id: str, config: Optional[RunnerConfig] = None) -> None:
        """
        Initialize logger for a workflow.

        Args:
            workflow_id: The workflow identifier for organizing logs.
            config: Optional config to use. Defaults to the current directory.
        """
        self.workflow_id = workflow_id
        self._config = config
        self._run_id: Optional[str] = None

    @property
    def config(self) -> RunnerConfig:
        """Get configuration (lazy load)."""
        if self._config is None:
            self._config = get_config_or_default()
        return self._config

    @property
    def run_id(self) -> Optional[str]:
        return self._run_id

    def _log_path_for(self, date: str) -> Path:
        return self.config.logs_path / f"{self.workflow_id}-{date}.jsonl"

    def _write_entry(self, entry: dict[str, Any]) -> None:
        """Append a log entry to today's JSONL file."""
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        log_path = self._log_path_for(today)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        with open(log_path, "a") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def log(
        self,
        event_type: str,
        data: Optional[dict[str, Any]] = None,
        level: str = LogLevel.INFO,
    ) -> None:
        """
        Log an event.

        Args:
            event_type: Type of event (e.g., "iteration_start", "stuck_detected").
            data: Additional data to include in the log entry.
            level: Log level (debug, info, warn, error).
        """
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "event_type": event_type,
            "workflow_id": self.workflow_id,
            "data": data or {},
        }

        if self._run_id:
            entry["run_id"] = self._run_id

        self._write_entry(entry)

    def debug(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a debug event."""
        self.log(event_type, data, LogLevel.DEBUG)

    def info(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an info event."""
        self.log(event_type, data, LogLevel.INFO)

    def warn(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log a warning event."""
        self.log(event_type, data, LogLevel.WARN)

    def error(self, event_type: str, data: Optional[dict[str, Any]] = None) -> None:
        """Log an error event."""
        self.log(event_type, data, LogLevel.ERROR)

    @contextmanager
    def run_context(self, mode: str, run_id: Optional[str] = None) -> Iterator[RunnerLogger]:
        """
        Tag every entry logged inside the block with a run identifier.

        Args:
            mode: "run" or "resume".
            run_id: Explicit identifier. Generated when omitted.

        Yields:
            Self for chaining.
        """
        previous = self._run_id
        self._run_id = run_id or f"{mode}-{uuid.uuid4().hex[:8]}"
        self.debug("run_context_enter", {"mode": mode})
        try:
            yield self
        finally:
            self.debug("run_context_exit", {"mode": mode})
            self._run_id = previous

    def read_logs(
        self,
        date: Optional[str] = None,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        run_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """
        Read log entries with optional filtering.

        Args:
            date: Date string (YYYY-MM-DD) to read. If None, reads today's logs.
            level: Filter by log level.
            event_type: Filter by event type.
            run_id: Filter by run identifier.
            limit: Maximum number of entries to return.

        Returns:
            List of log entries matching the filters.
        """
        if date is None:
            date = datetime.now(timezone.utc).strftime("%Y-%m-%d")

        log_path = self._log_path_for(date)
        if not log_path.exists():
            return []

        entries = []
        with open(log_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue

                if level and entry.get("level") != level:
                    continue
                if event_type and entry.get("event_type") != event_type:
                    continue
                if run_id and entry.get("run_id") != run_id:
                    continue

                entries.append(entry)

                if limit and len(entries) >= limit:
                    break

        return entries

    def get_log_files(self) -> list[Path]:
        """
        Get all log files for this workflow.

        Returns:
            List of log file paths, sorted by date (newest first).
        """
        logs_dir = self.config.logs_path
        if not logs_dir.exists():
            return []

        files = list(logs_dir.glob(f"{self.workflow_id}-*.jsonl"))
        files.sort(reverse=True)
        return files


# Module-level logger cache
_logger_cache: dict[str, RunnerLogger] = {}


def get_logger(workflow_id: str, config: Optional[RunnerConfig] = None) -> RunnerLogger:
    """
    Get or create a logger for a workflow.

    Args:
        workflow_id: The workflow identifier.
        config: Optional config to use.

    Returns:
        RunnerLogger instance for the workflow.
    """
    if workflow_id not in _logger_cache:
        _logger_cache[workflow_id] = RunnerLogger(workflow_id, config)
    return _logger_cache[workflow_id]


def clear_logger_cache() -> None:
    """Clear the logger cache. Useful for testing."""
    global _logger_cache
    _logger_cache = {}
