"""
Run loop for Workflow Runner.

This module orchestrates one workflow end to end:
1. Read the (phase, context) snapshot from the state machine
2. Stop on a terminal phase
3. Map the phase to a worker command (no command: skip the invocation)
4. Invoke the worker with a fresh process and a bounded timeout
5. Parse its output into at most one event
6. Route worker failures into the state machine instead of crashing
7. Apply the event, persist the checkpoint, repeat

Termination is guaranteed by the per-phase retry ceilings in the state
machine, the stuck detector on the CI loop, and a hard iteration ceiling.
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterator, Optional

from workflow_runner.errors import ErrorClassifier, WorkerError
from workflow_runner.logger import workflow_id_for
from workflow_runner.models import Event, EventType, Phase, WorkflowResult
from workflow_runner.notifications import NotificationStatus
from workflow_runner.phase_mapper import format_command, map_phase_to_command
from workflow_runner.progress_store import ProgressLock, ProgressStore
from workflow_runner.signal_parser import parse_signals
from workflow_runner.state_machine import (
    Rejected,
    StateMachine,
    TransitionLimits,
)
from workflow_runner.stuck_detector import (
    CategoryAwareState,
    StuckReason,
    detect_stuck_with_category,
)
from workflow_runner.worker import ClaudeCliExecutor

if TYPE_CHECKING:
    from workflow_runner.config import RunnerConfig
    from workflow_runner.logger import RunnerLogger
    from workflow_runner.notifications import NotificationSink
    from workflow_runner.worker import Executor


# Tail of worker output used as the error text when CI_FAILED has no reason
STUCK_OUTPUT_TAIL = 2000

ProgressCallback = Callable[[str, dict], None]


class NoWorkflowInProgressError(Exception):
    """Raised when resume finds no usable progress record."""
    pass


class WorkflowCancelledError(Exception):
    """Raised after an orderly shutdown; the checkpoint is already on disk."""

    def __init__(self, result: WorkflowResult) -> None:
        super().__init__(
            f"Workflow cancelled in phase '{result.final_phase.value}' "
            f"after {result.iterations} iterations"
        )
        self.result = result


class Orchestrator:
    """
    Drives the worker through the phase state machine until a terminal phase.

    Exactly one worker invocation is in flight at a time. The progress file
    is rewritten after every iteration, so a crash at any point can be
    resumed from the last checkpoint.
    """

    def __init__(
        self,
        config: RunnerConfig,
        executor: Optional[Executor] = None,
        logger: Optional[RunnerLogger] = None,
        store: Optional[ProgressStore] = None,
        notifier: Optional[NotificationSink] = None,
        progress_callback: Optional[ProgressCallback] = None,
        install_signal_handlers: bool = True,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            config: RunnerConfig with paths, limits and worker settings.
            executor: Worker executor (Claude CLI if not provided).
            logger: Optional logger for recording operations.
            store: Progress store (created from config if not provided).
            notifier: Optional milestone notification sink.
            progress_callback: Optional callback function(event: str, data: dict) for progress.
            install_signal_handlers: Turn SIGINT/SIGTERM into orderly cancellation.
        """
        self.config = config
        self.logger = logger
        self._executor = executor or ClaudeCliExecutor(config.worker, logger)
        self._store = store or ProgressStore(config, logger)
        self._lock = ProgressLock(config.lock_path, logger)
        self._notifier = notifier
        self._progress_callback = progress_callback
        self._install_handlers = install_signal_handlers
        self._limits = TransitionLimits(
            max_ci_attempts=config.limits.max_ci_attempts,
            max_comment_attempts=config.limits.max_comment_attempts,
        )

        self._machine: Optional[StateMachine] = None
        self._iteration = 0
        self._stuck_state = CategoryAwareState()
        self._cancel_requested = False
        self._workflow_id = "workflow"

    @property
    def store(self) -> ProgressStore:
        """Get the progress store."""
        return self._store

    @property
    def iteration(self) -> int:
        """Cumulative iteration counter (persisted across resumes)."""
        return self._iteration

    @property
    def workflow_id(self) -> str:
        return self._workflow_id

    def _log(
        self, event_type: str, data: Optional[dict] = None, level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "orchestrator"}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    def _emit_progress(self, event: str, data: Optional[dict] = None) -> None:
        """Emit progress event to callback if configured."""
        if self._progress_callback:
            self._progress_callback(event, data or {})

    def _notify(self, status: str, stage: Phase, message: str) -> None:
        if self._notifier:
            self._notifier.notify(status, self._workflow_id, stage.value.upper(), message)

    # =========================================================================
    # Public API
    # =========================================================================

    def run(self, research_file: str) -> WorkflowResult:
        """
        Start a fresh workflow.

        Args:
            research_file: Research artifact the workflow is built from.

        Returns:
            WorkflowResult once a terminal phase is reached.

        Raises:
            WorkflowCancelledError: On SIGINT/SIGTERM or request_cancel().
            ProgressStoreError: If the checkpoint cannot be written.
            ProgressLockError: If another orchestrator holds the workspace.
        """
        self._workflow_id = workflow_id_for(research_file)
        self._iteration = 0
        self._stuck_state = CategoryAwareState()
        self._machine = StateMachine(limits=self._limits, logger=self.logger)

        with self._session("run"):
            if self._store.exists():
                self._log("progress_overwritten", {"path": str(self._store.path)}, level="warn")

            self._machine.start(research_file)
            self._persist()

            self._log("workflow_start", {"research_file": research_file})
            self._notify(NotificationStatus.STARTED, Phase.SETUP,
                         f"Starting workflow from {research_file}")
            self._emit_progress("workflow_start", {
                "research_file": research_file,
                "workflow_id": self._workflow_id,
            })
            return self._loop()

    def resume(self) -> WorkflowResult:
        """
        Continue the workflow recorded in the progress file.

        Returns:
            WorkflowResult once a terminal phase is reached. A record that is
            already terminal is returned without invoking the worker.

        Raises:
            NoWorkflowInProgressError: If there is no usable progress record.
            WorkflowCancelledError: On SIGINT/SIGTERM or request_cancel().
            ProgressStoreError: If the checkpoint cannot be written.
            ProgressLockError: If another orchestrator holds the workspace.
        """
        with self._session("resume"):
            record = self._store.read()
            if record is None:
                raise NoWorkflowInProgressError(
                    f"No workflow in progress: {self._store.path} is missing or unreadable"
                )

            context = record.context
            self._workflow_id = workflow_id_for(context.research_file)
            self._iteration = record.iteration
            self._stuck_state = CategoryAwareState()
            self._machine = StateMachine.restore(
                record.phase, context, limits=self._limits, logger=self.logger
            )

            self._log("workflow_resume", {
                "phase": record.phase.value,
                "iteration": record.iteration,
                "research_file": context.research_file,
            })
            self._emit_progress("workflow_resume", {
                "phase": record.phase.value,
                "iteration": record.iteration,
                "workflow_id": self._workflow_id,
            })

            if record.phase == Phase.IDLE:
                if not context.research_file:
                    raise NoWorkflowInProgressError(
                        "No workflow in progress: the progress record has no research file"
                    )
                self._machine.start(context.research_file)
                self._persist()

            if not record.phase.is_terminal:
                self._notify(NotificationStatus.RESUMED, self._machine.phase,
                             f"Resuming at iteration {self._iteration}")

            return self._loop()

    def request_cancel(self) -> None:
        """
        Ask the run loop to stop.

        Terminates the in-flight worker; the loop persists the checkpoint
        and raises WorkflowCancelledError.
        """
        self._cancel_requested = True
        self._executor.terminate()

    # =========================================================================
    # Session scope: lock, signal handlers, log run context
    # =========================================================================

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.request_cancel()

    def _install_signal_handlers(self) -> dict[int, Any]:
        if not self._install_handlers:
            return {}
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    @contextmanager
    def _session(self, mode: str) -> Iterator[None]:
        self._cancel_requested = False
        self._lock.acquire()
        previous = self._install_signal_handlers()
        scope = self.logger.run_context(mode) if self.logger else nullcontext()
        try:
            with scope:
                yield
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            self._lock.release()

    # =========================================================================
    # Run loop
    # =========================================================================

    def _loop(self) -> WorkflowResult:
        assert self._machine is not None
        max_iterations = self.config.limits.max_iterations
        executed = 0

        while True:
            phase = self._machine.phase
            if phase.is_terminal:
                return self._finish()

            if self._cancel_requested:
                self._cancel()

            if executed >= max_iterations:
                reason = f"Exceeded maximum iterations ({max_iterations})"
                self._log("iteration_limit_reached", {
                    "max_iterations": max_iterations,
                    "phase": phase.value,
                }, level="error")
                self._emit_progress("iteration_limit", {"max_iterations": max_iterations})
                self._apply(Event.fail(reason))
                self._persist()
                continue

            self._run_iteration(phase)
            executed += 1
            self._iteration += 1
            self._persist()
            self._emit_progress("iteration_complete", {
                "iteration": self._iteration,
                "phase": self._machine.phase.value,
            })

    def _run_iteration(self, phase: Phase) -> None:
        """One worker invocation and at most one state transition."""
        context = self._machine.context
        number = self._iteration + 1

        self._log("iteration_start", {"iteration": number, "phase": phase.value})

        command = map_phase_to_command(phase, context, self.config.worker.command_prefix)
        if command is None:
            self._log("phase_no_task", {"phase": phase.value}, level="debug")
            return

        prompt = format_command(command)
        self._emit_progress("iteration_start", {
            "iteration": number,
            "phase": phase.value,
            "command": prompt,
        })

        try:
            result = self._executor.invoke(
                prompt,
                cwd=self._worker_cwd(),
                timeout=self.config.worker.timeout_seconds,
            )
        except WorkerError as e:
            if self._cancel_requested:
                self._cancel()
            self._log("worker_invocation_error", {
                "error": str(e),
                "error_type": e.error_type.name,
                "phase": phase.value,
            }, level="error")
            self._emit_progress("worker_error", {"error": e.describe(), "phase": phase.value})
            self._apply(self._route_failure(phase, e.describe()), output="")
            return

        if self._cancel_requested:
            self._cancel()

        event = parse_signals(result.text)

        if event is None:
            if not result.succeeded:
                # A recognized signal outranks the exit code; none was found
                error = ErrorClassifier.create_error(result.stderr, result.text, result.exit_code)
                self._log("worker_invocation_error", {
                    "error": str(error),
                    "error_type": error.error_type.name,
                    "phase": phase.value,
                }, level="error")
                self._emit_progress("worker_error", {"error": error.describe(), "phase": phase.value})
                self._apply(self._route_failure(phase, error.describe()), output=result.text)
                return

            self._log("no_signal", {
                "phase": phase.value,
                "output_tail": result.text[-500:],
            }, level="warn")
            self._emit_progress("no_signal", {"phase": phase.value})
            return

        self._log("signal_received", {"signal": event.name, "data": event.data})
        self._apply(event, output=result.text)

    def _worker_cwd(self) -> str:
        worktree = self._machine.context.worktree_path
        if worktree and Path(worktree).is_dir():
            return worktree
        return self.config.repo_root

    def _route_failure(self, phase: Phase, reason: str) -> Event:
        """Turn a worker failure into the event its phase can absorb."""
        if phase == Phase.CI_VERIFY:
            return Event(EventType.CI_FAILED, {"reason": reason})
        if phase == Phase.COMMENT_VERIFY:
            return Event(EventType.COMMENTS_PENDING, {"reason": reason})
        if phase in (Phase.CI_FIX, Phase.COMMENT_FIX):
            return Event.fix_failed(reason)
        return Event.fail(reason)

    def _check_stuck(self, phase: Phase, event: Event, output: str) -> Event:
        """Replace a repeating CI failure with FAIL."""
        # Only verdicts the CI_VERIFY phase accepts count
        if phase != Phase.CI_VERIFY:
            return event
        if event.type == EventType.CI_PASSED:
            self._stuck_state = CategoryAwareState()
            return event
        if event.type != EventType.CI_FAILED:
            return event

        error_text = event.reason or output[-STUCK_OUTPUT_TAIL:]
        detection = detect_stuck_with_category(
            self._stuck_state,
            error_text,
            exact_threshold=self.config.stuck.exact_threshold,
            category_threshold=self.config.stuck.category_threshold,
        )
        self._stuck_state = detection.next_state
        if not detection.is_stuck:
            return event

        lines = error_text.strip().splitlines()
        summary = lines[0][:200] if lines else "no error text"
        if detection.reason == StuckReason.EXACT_MATCH:
            count = detection.next_state.exact_count
            reason = f"stuck on identical error ({count} consecutive CI failures): {summary}"
        else:
            count = detection.next_state.category_count
            reason = (
                f"stuck on recurring {detection.category.value} errors "
                f"({count} consecutive CI failures): {summary}"
            )

        self._log("stuck_detected", {
            "reason": detection.reason.value,
            "category": detection.category.value,
            "count": count,
        }, level="error")
        self._emit_progress("stuck_detected", {"reason": reason})
        return Event.fail(reason)

    def _apply(self, event: Event, output: str = "") -> None:
        old_phase = self._machine.phase
        event = self._check_stuck(old_phase, event, output)
        outcome = self._machine.send(event)

        if isinstance(outcome, Rejected):
            self._emit_progress("signal_rejected", {
                "signal": event.name,
                "phase": old_phase.value,
                "reason": outcome.reason,
            })
            return

        self._emit_progress("transition", {
            "signal": event.name,
            "from_phase": old_phase.value,
            "to_phase": outcome.phase.value,
        })
        if outcome.phase != old_phase and not outcome.phase.is_terminal:
            self._notify(NotificationStatus.PHASE, outcome.phase,
                         f"{old_phase.value} -> {outcome.phase.value} on {event.name}")

    def _persist(self) -> None:
        phase, context = self._machine.snapshot()
        self._store.write(context, phase, self._iteration)

    def _result(self) -> WorkflowResult:
        phase, context = self._machine.snapshot()
        return WorkflowResult(
            success=phase == Phase.COMPLETED,
            context=context,
            final_phase=phase,
            iterations=self._iteration,
        )

    def _finish(self) -> WorkflowResult:
        result = self._result()
        if result.success:
            self._log("workflow_complete", {
                "iterations": result.iterations,
                "pr_url": result.context.pr_url,
            })
            self._notify(NotificationStatus.SUCCESS, Phase.COMPLETED,
                         f"Workflow completed after {result.iterations} iterations")
            self._emit_progress("workflow_complete", {"iterations": result.iterations})
        else:
            failed_phase = result.context.failed_phase or Phase.FAILED
            self._log("workflow_failed", {
                "error": result.error,
                "failed_phase": failed_phase.value,
                "iterations": result.iterations,
            }, level="error")
            self._notify(NotificationStatus.ERROR, failed_phase,
                         result.error or "Workflow failed")
            self._emit_progress("workflow_failed", {
                "error": result.error,
                "failed_phase": failed_phase.value,
            })
        return result

    def _cancel(self) -> None:
        """Persist as-is (no phase change) and stop."""
        self._persist()
        result = self._result()
        self._log("workflow_cancelled", {
            "phase": result.final_phase.value,
            "iteration": result.iterations,
        }, level="warn")
        self._notify(NotificationStatus.CANCELLED, result.final_phase,
                     f"Cancelled at iteration {result.iterations}, resumable")
        self._emit_progress("workflow_cancelled", {"phase": result.final_phase.value})
        raise WorkflowCancelledError(result)
