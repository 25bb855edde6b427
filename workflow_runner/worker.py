"""
Worker invocation for Workflow Runner.

This module provides:
- The Executor protocol the orchestrator depends on
- ClaudeCliExecutor, which runs one Claude Code CLI process per phase
- Timeout handling that terminates (then kills) the child, never abandons it
"""

from __future__ import annotations

import os
import subprocess
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Protocol

from workflow_runner.errors import (
    WorkerError,
    WorkerErrorType,
    WorkerNotFoundError,
    WorkerTimeoutError,
)

if TYPE_CHECKING:
    from workflow_runner.config import WorkerConfig
    from workflow_runner.logger import RunnerLogger


@dataclass
class WorkerResult:
    """Raw output of one worker invocation."""
    text: str
    exit_code: int = 0
    stderr: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class Executor(Protocol):
    """Capability the orchestrator needs from a worker."""

    def invoke(
        self,
        prompt: str,
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> WorkerResult:
        """
        Run the worker once with a fresh context.

        Raises:
            WorkerError: If the worker cannot be started or times out.
        """
        ...

    def terminate(self) -> None:
        """Stop any in-flight invocation."""
        ...


class ClaudeCliExecutor:
    """
    Executor backed by the Claude Code CLI in print mode.

    Every invocation is a separate process, so no conversation state leaks
    from one phase to the next.
    """

    def __init__(
        self,
        config: WorkerConfig,
        logger: Optional[RunnerLogger] = None,
    ) -> None:
        """
        Initialize the executor.

        Args:
            config: Worker section of the runner configuration.
            logger: Optional logger for recording operations.
        """
        self.config = config
        self.logger = logger
        self._proc: Optional[subprocess.Popen] = None
        self._lock = threading.RLock()
        self._terminated = False

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "worker"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def build_command(self, prompt: str) -> list[str]:
        """
        Build the CLI command.

        Args:
            prompt: The slash command and arguments to send.

        Returns:
            List of command arguments.
        """
        cmd = [
            self.config.binary,
            "-p", prompt,
            "--output-format", "text",
        ]
        if self.config.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        cmd.extend(self.config.extra_args)
        return cmd

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        # Keep the CLI non-interactive
        env["CI"] = "true"
        return env

    def _stop(self, proc: subprocess.Popen) -> tuple[str, str]:
        """Terminate, wait out the grace period, then kill."""
        proc.terminate()
        try:
            return proc.communicate(timeout=self.config.terminate_grace_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            return proc.communicate()

    def invoke(
        self,
        prompt: str,
        cwd: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> WorkerResult:
        """
        Execute one phase command.

        Args:
            prompt: Phase command, e.g. "/workflows:phase-setup research.md".
            cwd: Working directory for the worker.
            timeout: Timeout in seconds (overrides config).

        Returns:
            WorkerResult. A non-zero exit is returned, not raised, so that a
            signal in the output can still be honored.

        Raises:
            WorkerNotFoundError: If the CLI binary is missing.
            WorkerTimeoutError: If the invocation exceeds the timeout.
            WorkerError: If the process cannot be started.
        """
        cmd = self.build_command(prompt)
        timeout_seconds = timeout or self.config.timeout_seconds

        self._log("worker_invocation_start", {
            "prompt": prompt,
            "cwd": cwd,
            "timeout": timeout_seconds,
        })

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
                env=self._build_env(),
            )
        except FileNotFoundError:
            self._log("worker_not_found", {"binary": self.config.binary}, level="error")
            raise WorkerNotFoundError(self.config.binary)
        except OSError as e:
            raise WorkerError(
                f"Failed to start {self.config.binary}: {e}",
                error_type=WorkerErrorType.CLI_CRASH,
            )

        with self._lock:
            self._proc = proc
            self._terminated = False

        try:
            stdout, stderr = proc.communicate(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            _, stderr = self._stop(proc)
            self._log("worker_invocation_timeout", {
                "timeout_seconds": timeout_seconds,
            }, level="error")
            raise WorkerTimeoutError(timeout_seconds, stderr=stderr or "")
        finally:
            with self._lock:
                self._proc = None

        if self._terminated:
            self._log("worker_invocation_terminated", {"returncode": proc.returncode}, level="warn")
            raise WorkerError(
                "Worker terminated by cancellation",
                error_type=WorkerErrorType.CANCELLED,
                stderr=stderr or "",
                returncode=proc.returncode,
            )

        self._log("worker_invocation_complete", {
            "returncode": proc.returncode,
            "output_length": len(stdout or ""),
        })

        return WorkerResult(
            text=stdout or "",
            exit_code=proc.returncode,
            stderr=stderr or "",
        )

    def terminate(self) -> None:
        """
        Stop the in-flight process, if any.

        Safe to call from a signal handler: it only signals the child; the
        blocked invoke() call reaps it.
        """
        with self._lock:
            proc = self._proc
            if proc is None or proc.poll() is not None:
                return
            self._terminated = True
        proc.terminate()
