"""Shared fixtures for Workflow Runner tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Union

import pytest
from typer.testing import CliRunner

from workflow_runner.config import NotificationsConfig, RunnerConfig, clear_config_cache
from workflow_runner.logger import clear_logger_cache
from workflow_runner.worker import WorkerResult


ScriptStep = Union[str, WorkerResult, BaseException, Callable[[], Any]]


class ScriptedExecutor:
    """
    Executor double that replays canned worker outputs in order.

    Each step is output text, a WorkerResult, an exception to raise, or a
    callable whose return value (if any) is used as the step.
    """

    def __init__(self, steps: list[ScriptStep] | None = None) -> None:
        self.steps = list(steps or [])
        self.prompts: list[str] = []
        self.cwds: list[str | None] = []
        self.timeouts: list[int | None] = []
        self.terminate_calls = 0

    def invoke(self, prompt: str, cwd: str | None = None, timeout: int | None = None) -> WorkerResult:
        self.prompts.append(prompt)
        self.cwds.append(cwd)
        self.timeouts.append(timeout)
        if not self.steps:
            raise AssertionError(f"Unexpected worker invocation: {prompt}")

        step = self.steps.pop(0)
        if callable(step) and not isinstance(step, BaseException):
            step = step()
            if step is None:
                step = ""

        if isinstance(step, BaseException):
            raise step
        if isinstance(step, WorkerResult):
            return step
        return WorkerResult(text=step)

    def terminate(self) -> None:
        self.terminate_calls += 1


# Worker outputs that carry a single-plan workflow up to CI_VERIFY
SETUP_OUTPUT = (
    "Created worktree.\n"
    "<phase>SETUP_COMPLETE</phase>\n"
    "worktree_path: /nonexistent/worktrees/auth\n"
    "branch: feat/auth\n"
)
PLANNING_OUTPUT = (
    "<phase>PLANNING_COMPLETE</phase>\n"
    "plans_count: 1\n"
    "plan_files: plans/auth-1.md\n"
    "plan_issues: #42\n"
)
IMPLEMENTATION_OUTPUT = "All plans done.\n<phase>IMPLEMENTATION_COMPLETE</phase>\n"
PR_OUTPUT = (
    "<phase>PR_CREATED</phase>\n"
    "pr_url: https://github.com/acme/app/pull/7\n"
    "pr_number: 7\n"
)


def outputs_to_ci_verify() -> list[str]:
    return [SETUP_OUTPUT, PLANNING_OUTPUT, IMPLEMENTATION_OUTPUT, PR_OUTPUT]


def ci_failed(reason: str) -> str:
    return f"<phase>CI_FAILED</phase>\nci_failure_reason: {reason}\n"


@pytest.fixture(autouse=True)
def _clear_caches():
    """Loggers and configs are cached per process; isolate every test."""
    clear_logger_cache()
    clear_config_cache()
    yield
    clear_logger_cache()
    clear_config_cache()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Project root with a research document in it."""
    repo_root = tmp_path / "repo"
    repo_root.mkdir()
    (repo_root / "research.md").write_text("# Auth flow research\n")
    return repo_root


@pytest.fixture
def runner_config(project_dir: Path, tmp_path: Path) -> RunnerConfig:
    """RunnerConfig rooted at the test project, notifications kept in tmp."""
    return RunnerConfig(
        repo_root=str(project_dir),
        notifications=NotificationsConfig(path=str(tmp_path / "notifications.log")),
    )


@pytest.fixture
def research_file(project_dir: Path) -> str:
    return str(project_dir / "research.md")


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def make_executor() -> type[ScriptedExecutor]:
    """Factory for scripted worker doubles."""
    return ScriptedExecutor


@pytest.fixture
def ci_verify_outputs() -> list[str]:
    """Worker outputs for setup, planning, implementation and PR creation."""
    return outputs_to_ci_verify()
