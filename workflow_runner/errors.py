"""
Error classification for the Workflow Runner worker.

This module provides:
- WorkerErrorType enum for categorizing worker invocation failures
- ErrorClassifier for detecting error types from CLI output
- Custom exception classes with error type information
"""

from __future__ import annotations

import re
from enum import Enum, auto


class WorkerErrorType(Enum):
    """
    Classification of worker invocation errors.

    The label ends up in the synthesized failure reason so an operator can tell
    a crash from an expired login without reading the logs.
    """

    # Process lifecycle
    TIMEOUT = auto()            # Invocation exceeded the per-phase timeout
    CLI_NOT_FOUND = auto()      # Worker binary not installed
    CLI_CRASH = auto()          # Non-zero exit without a known cause
    CANCELLED = auto()          # Terminated by an operator cancellation

    # Authentication - requires user action
    AUTH_REQUIRED = auto()

    # Capacity
    RATE_LIMIT = auto()
    SERVER_OVERLOADED = auto()

    # Unknown
    UNKNOWN = auto()


class WorkerError(Exception):
    """
    Base exception for worker invocation errors.

    Includes error type classification for routing decisions.
    """

    def __init__(
        self,
        message: str,
        error_type: WorkerErrorType = WorkerErrorType.UNKNOWN,
        stderr: str = "",
        returncode: int = -1,
    ) -> None:
        super().__init__(message)
        self.error_type = error_type
        self.stderr = stderr
        self.returncode = returncode

    @property
    def requires_user_action(self) -> bool:
        """Check if this error requires user intervention."""
        return self.error_type in (
            WorkerErrorType.AUTH_REQUIRED,
            WorkerErrorType.CLI_NOT_FOUND,
        )

    def describe(self) -> str:
        """One-line reason suitable for a FAIL event."""
        return f"Worker {self.error_type.name.lower()}: {self}"


class WorkerTimeoutError(WorkerError):
    """Raised when a worker invocation exceeds its timeout."""

    def __init__(self, timeout_seconds: int, stderr: str = "") -> None:
        super().__init__(
            f"Worker timed out after {timeout_seconds} seconds",
            error_type=WorkerErrorType.TIMEOUT,
            stderr=stderr,
        )
        self.timeout_seconds = timeout_seconds


class WorkerNotFoundError(WorkerError):
    """Raised when the worker binary is not found."""

    def __init__(self, binary: str) -> None:
        super().__init__(
            f"{binary} CLI not found. Please install it first.",
            error_type=WorkerErrorType.CLI_NOT_FOUND,
        )
        self.binary = binary


class ErrorClassifier:
    """
    Classifies worker failures from CLI output.

    Uses pattern matching on stderr/stdout to determine error type.
    """

    AUTH_PATTERNS = [
        r"unauthorized",
        r"not\s+logged\s+in",
        r"login\s+required",
        r"authentication\s+required",
        r"please\s+log\s+in",
        r"\b401\b",
    ]

    RATE_LIMIT_PATTERNS = [
        r"rate.?limit",
        r"usage\s+limit\s+reached",
        r"too\s+many\s+requests",
        r"\b429\b",
    ]

    OVERLOAD_PATTERNS = [
        r"\b529\b",
        r"overloaded",
        r"\b503\b",
        r"service\s+unavailable",
    ]

    @classmethod
    def classify(
        cls,
        stderr: str,
        stdout: str = "",
        returncode: int = -1,
    ) -> WorkerErrorType:
        """
        Classify a worker failure based on output.

        Args:
            stderr: Standard error output from the worker
            stdout: Standard output from the worker
            returncode: Process return code

        Returns:
            WorkerErrorType classification
        """
        combined = f"{stderr} {stdout}".lower()

        # Auth first: the only class that needs an operator
        if cls._matches_any(combined, cls.AUTH_PATTERNS):
            return WorkerErrorType.AUTH_REQUIRED

        if cls._matches_any(combined, cls.RATE_LIMIT_PATTERNS):
            return WorkerErrorType.RATE_LIMIT

        if cls._matches_any(combined, cls.OVERLOAD_PATTERNS):
            return WorkerErrorType.SERVER_OVERLOADED

        if returncode != 0:
            return WorkerErrorType.CLI_CRASH

        return WorkerErrorType.UNKNOWN

    @classmethod
    def _matches_any(cls, text: str, patterns: list[str]) -> bool:
        """Check if text matches any of the given patterns."""
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return True
        return False

    @classmethod
    def create_error(
        cls,
        stderr: str,
        stdout: str = "",
        returncode: int = -1,
    ) -> WorkerError:
        """
        Build a WorkerError for a failed invocation.

        Args:
            stderr: Raw stderr output
            stdout: Raw stdout output
            returncode: Process return code

        Returns:
            WorkerError labelled with the classified type
        """
        error_type = cls.classify(stderr, stdout, returncode)
        detail = (stderr or stdout).strip().splitlines()
        summary = detail[-1][:200] if detail else "no output"
        return WorkerError(
            f"exit code {returncode}: {summary}",
            error_type=error_type,
            stderr=stderr,
            returncode=returncode,
        )
