"""Tests for the Claude CLI executor.

subprocess.Popen is mocked throughout; no real worker is started.
"""
import subprocess

import pytest
from unittest.mock import MagicMock, patch

from workflow_runner.config import WorkerConfig
from workflow_runner.errors import (
    WorkerError,
    WorkerErrorType,
    WorkerNotFoundError,
    WorkerTimeoutError,
)
from workflow_runner.worker import ClaudeCliExecutor, WorkerResult


def _proc(stdout="", stderr="", returncode=0):
    proc = MagicMock()
    proc.communicate.return_value = (stdout, stderr)
    proc.returncode = returncode
    proc.poll.return_value = None
    return proc


class TestBuildCommand:
    """Tests for command construction."""

    def test_basic_command(self):
        executor = ClaudeCliExecutor(WorkerConfig())
        assert executor.build_command("/workflows:phase-submit") == [
            "claude", "-p", "/workflows:phase-submit", "--output-format", "text",
        ]

    def test_skip_permissions_and_extra_args(self):
        config = WorkerConfig(binary="/opt/claude", skip_permissions=True, extra_args=["--model", "opus"])
        cmd = ClaudeCliExecutor(config).build_command("x")

        assert cmd[0] == "/opt/claude"
        assert cmd[-3:] == ["--dangerously-skip-permissions", "--model", "opus"]


class TestInvoke:
    """Tests for invoke()."""

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_success(self, mock_popen):
        mock_popen.return_value = _proc(stdout="<phase>CI_PASSED</phase>")
        executor = ClaudeCliExecutor(WorkerConfig())

        result = executor.invoke("/workflows:phase-verify-ci 7", cwd="/repo", timeout=30)

        assert result == WorkerResult(text="<phase>CI_PASSED</phase>", exit_code=0, stderr="")
        assert result.succeeded is True
        _, kwargs = mock_popen.call_args
        assert kwargs["cwd"] == "/repo"
        assert kwargs["env"]["CI"] == "true"
        mock_popen.return_value.communicate.assert_called_once_with(timeout=30)

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_default_timeout_from_config(self, mock_popen):
        mock_popen.return_value = _proc()
        ClaudeCliExecutor(WorkerConfig(timeout_seconds=123)).invoke("x")
        mock_popen.return_value.communicate.assert_called_once_with(timeout=123)

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_nonzero_exit_is_returned(self, mock_popen):
        mock_popen.return_value = _proc(stdout="partial", stderr="boom", returncode=2)
        result = ClaudeCliExecutor(WorkerConfig()).invoke("x")

        assert result.exit_code == 2
        assert result.succeeded is False
        assert result.stderr == "boom"

    @patch("workflow_runner.worker.subprocess.Popen", side_effect=FileNotFoundError())
    def test_binary_not_found(self, mock_popen):
        with pytest.raises(WorkerNotFoundError) as exc_info:
            ClaudeCliExecutor(WorkerConfig(binary="nope")).invoke("x")

        assert exc_info.value.error_type == WorkerErrorType.CLI_NOT_FOUND
        assert exc_info.value.requires_user_action is True

    @patch("workflow_runner.worker.subprocess.Popen", side_effect=PermissionError("denied"))
    def test_spawn_failure(self, mock_popen):
        with pytest.raises(WorkerError) as exc_info:
            ClaudeCliExecutor(WorkerConfig()).invoke("x")
        assert exc_info.value.error_type == WorkerErrorType.CLI_CRASH

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_timeout_terminates_child(self, mock_popen):
        proc = _proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired(cmd="claude", timeout=5),
            ("", "late stderr"),
        ]
        mock_popen.return_value = proc

        with pytest.raises(WorkerTimeoutError) as exc_info:
            ClaudeCliExecutor(WorkerConfig()).invoke("x", timeout=5)

        assert exc_info.value.timeout_seconds == 5
        assert exc_info.value.stderr == "late stderr"
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_timeout_kills_after_grace(self, mock_popen):
        proc = _proc()
        proc.communicate.side_effect = [
            subprocess.TimeoutExpired(cmd="claude", timeout=5),
            subprocess.TimeoutExpired(cmd="claude", timeout=10),
            ("", ""),
        ]
        mock_popen.return_value = proc

        with pytest.raises(WorkerTimeoutError):
            ClaudeCliExecutor(WorkerConfig()).invoke("x", timeout=5)

        proc.kill.assert_called_once()


class TestTerminate:
    """Tests for terminate()."""

    def test_terminate_without_process_is_noop(self):
        ClaudeCliExecutor(WorkerConfig()).terminate()

    @patch("workflow_runner.worker.subprocess.Popen")
    def test_terminate_during_invoke_raises_cancelled(self, mock_popen):
        executor = ClaudeCliExecutor(WorkerConfig())
        proc = _proc()

        def communicate(timeout=None):
            executor.terminate()
            proc.returncode = -15
            return ("", "")

        proc.communicate.side_effect = communicate
        mock_popen.return_value = proc

        with pytest.raises(WorkerError) as exc_info:
            executor.invoke("x")

        assert exc_info.value.error_type == WorkerErrorType.CANCELLED
        proc.terminate.assert_called_once()
