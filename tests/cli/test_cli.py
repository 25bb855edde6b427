"""Tests for the workflow-runner CLI.

The worker is replaced by a scripted executor patched into the orchestrator
module; gh is replaced by patching GitHubCliClient.get_ci_status.
"""
import pytest
from unittest.mock import patch

from workflow_runner import __version__
from workflow_runner.ci_poller import CIRunDetails, CIStatusError
from workflow_runner.cli import app
from workflow_runner.models import Phase, WorkflowContext, WorkflowResult
from workflow_runner.orchestrator import WorkflowCancelledError
from workflow_runner.progress_store import ProgressStore
from workflow_runner.config import RunnerConfig


@pytest.fixture
def project(project_dir):
    """Project directory with notifications disabled."""
    (project_dir / "workflow.yaml").write_text("notifications:\n  enabled: false\n")
    return project_dir


def _invoke(cli_runner, project, *args):
    return cli_runner.invoke(app, ["--project", str(project), *args])


class TestAppCallback:
    """Tests for the top-level options."""

    def test_version(self, cli_runner):
        result = cli_runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_project_dir(self, cli_runner, tmp_path):
        result = cli_runner.invoke(app, ["--project", str(tmp_path / "nope"), "status"])

        assert result.exit_code == 1
        assert "Project directory not found" in result.output

    def test_no_command_shows_help(self, cli_runner):
        result = cli_runner.invoke(app, [])

        assert result.exit_code == 0
        assert "run" in result.output
        assert "resume" in result.output

    def test_invalid_config(self, cli_runner, project_dir):
        (project_dir / "workflow.yaml").write_text("limits:\n  max_iterations: 0\n")
        result = _invoke(cli_runner, project_dir, "status")

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestRunCommand:
    """Tests for `workflow-runner run`."""

    def test_research_file_not_found(self, cli_runner, project):
        result = _invoke(cli_runner, project, "run", "missing.md")

        assert result.exit_code == 1
        assert "Research file not found" in result.output

    def test_completed_run(self, cli_runner, project, make_executor, ci_verify_outputs):
        executor = make_executor(ci_verify_outputs + ["<phase>CI_PASSED</phase>", "<phase>COMMENTS_RESOLVED</phase>"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            result = _invoke(cli_runner, project, "run", str(project / "research.md"))

        assert result.exit_code == 0, result.output
        assert "Workflow Complete" in result.output
        assert "<promise>COMPLETE</promise>" in result.output
        assert "pr_number: 7" in result.output

    def test_research_file_relative_to_project(self, cli_runner, project, make_executor):
        executor = make_executor(["<promise>FAILED</promise><error>no access</error>"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            result = _invoke(cli_runner, project, "run", "research.md")

        assert result.exit_code == 1
        assert executor.prompts == ["/workflows:phase-setup research.md"]

    def test_failed_run(self, cli_runner, project, make_executor):
        executor = make_executor(["<promise>FAILED</promise>\n<error>repo is archived</error>"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            result = _invoke(cli_runner, project, "run", str(project / "research.md"))

        assert result.exit_code == 1
        assert "Workflow Failed" in result.output
        assert "<promise>FAILED</promise>" in result.output
        assert "<error>repo is archived</error>" in result.output

    def test_max_iterations_option(self, cli_runner, project, make_executor):
        executor = make_executor(["no signal here"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            result = _invoke(cli_runner, project, "run", str(project / "research.md"), "-n", "1")

        assert result.exit_code == 1
        assert "Exceeded maximum iterations (1)" in result.output

    def test_timeout_option(self, cli_runner, project, make_executor):
        executor = make_executor(["<promise>FAILED</promise><error>x</error>"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            _invoke(cli_runner, project, "run", str(project / "research.md"), "--timeout", "42")

        assert executor.timeouts == [42]

    def test_cancelled_run(self, cli_runner, project):
        cancelled = WorkflowResult(
            success=False,
            context=WorkflowContext(research_file="research.md"),
            final_phase=Phase.CI_VERIFY,
            iterations=5,
        )
        with patch("workflow_runner.orchestrator.Orchestrator.run",
                   side_effect=WorkflowCancelledError(cancelled)):
            result = _invoke(cli_runner, project, "run", str(project / "research.md"))

        assert result.exit_code == 130
        assert "workflow-runner resume" in result.output

    def test_locked_workspace(self, cli_runner, project):
        lock_path = RunnerConfig(repo_root=str(project)).lock_path
        lock_path.parent.mkdir(parents=True)
        lock_path.write_text("1\n2025-01-01T00:00:00+00:00\n")

        with patch("workflow_runner.progress_store.ProgressLock._pid_alive", return_value=True):
            result = _invoke(cli_runner, project, "run", str(project / "research.md"))

        assert result.exit_code == 1
        assert "Another orchestrator" in result.output


class TestResumeCommand:
    """Tests for `workflow-runner resume`."""

    def test_nothing_to_resume(self, cli_runner, project):
        result = _invoke(cli_runner, project, "resume")

        assert result.exit_code == 1
        assert "No workflow in progress" in result.output

    def test_resume_to_completion(self, cli_runner, project, make_executor):
        config = RunnerConfig(repo_root=str(project))
        context = WorkflowContext(research_file="research.md", pr_number=7, ci_attempts=1,
                                  started_at="2025-01-01T00:00:00Z")
        ProgressStore(config).write(context, Phase.COMMENT_VERIFY, 6)

        executor = make_executor(["<phase>COMMENTS_RESOLVED</phase>"])
        with patch("workflow_runner.orchestrator.ClaudeCliExecutor", return_value=executor):
            result = _invoke(cli_runner, project, "resume")

        assert result.exit_code == 0, result.output
        assert executor.prompts == ["/workflows:phase-resolve-comments 7"]
        assert "iterations: 7" in result.output


class TestStatusCommand:
    """Tests for `workflow-runner status`."""

    def test_no_progress(self, cli_runner, project):
        result = _invoke(cli_runner, project, "status")

        assert result.exit_code == 1
        assert "No workflow in progress" in result.output

    def test_shows_progress(self, cli_runner, project):
        config = RunnerConfig(repo_root=str(project))
        context = WorkflowContext(research_file="research.md", pr_number=7, ci_attempts=2,
                                  started_at="2025-01-01T00:00:00Z")
        ProgressStore(config).write(context, Phase.CI_VERIFY, 4)

        result = _invoke(cli_runner, project, "status")

        assert result.exit_code == 0
        assert "Workflow Status" in result.output
        assert "Verifying CI" in result.output
        assert "Iteration: 4" in result.output


class TestCIWaitCommand:
    """Tests for `workflow-runner ci-wait`."""

    def _patch_status(self, **kwargs):
        return patch("workflow_runner.ci_poller.GitHubCliClient.get_ci_status", **kwargs)

    def test_success(self, cli_runner, project):
        with self._patch_status(return_value=CIRunDetails(id=9, status="completed", conclusion="success")):
            result = _invoke(cli_runner, project, "ci-wait", "9")

        assert result.exit_code == 0
        assert "passed" in result.output

    def test_failure(self, cli_runner, project):
        with self._patch_status(return_value=CIRunDetails(id=9, status="completed", conclusion="failure")):
            result = _invoke(cli_runner, project, "ci-wait", "9")

        assert result.exit_code == 1
        assert "CI failed" in result.output

    def test_fetch_error(self, cli_runner, project):
        with self._patch_status(side_effect=CIStatusError("gh CLI not found. Please install it first.")):
            result = _invoke(cli_runner, project, "ci-wait", "9")

        assert result.exit_code == 1
        assert "gh CLI not found" in result.output

    def test_timeout(self, cli_runner, project):
        with self._patch_status(return_value=CIRunDetails(id=9, status="in_progress")):
            result = _invoke(cli_runner, project, "ci-wait", "9", "--interval", "1", "--timeout", "1")

        assert result.exit_code == 2
        assert "did not finish in time" in result.output
