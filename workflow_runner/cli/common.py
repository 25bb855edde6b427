"""Common utilities and global state for the CLI.

Contains project directory management, config loading, and the factories
that wire an Orchestrator together. This module should NOT import from the
command modules to avoid circular imports.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console

if TYPE_CHECKING:
    from workflow_runner.config import RunnerConfig
    from workflow_runner.logger import RunnerLogger
    from workflow_runner.notifications import FileNotificationLog

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def load_runner_config() -> "RunnerConfig":
    """
    Load workflow.yaml from the project directory, or defaults without one.

    Prints the problem and exits with code 1 on an invalid config file.
    """
    from workflow_runner.config import ConfigError, get_config_or_default

    try:
        return get_config_or_default(get_project_dir() or Path.cwd())
    except ConfigError as e:
        get_console().print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def resolve_research_file(config: "RunnerConfig", research_file: str) -> Optional[Path]:
    """Find the research file as given or relative to the repo root."""
    candidate = Path(research_file)
    if candidate.is_file():
        return candidate
    candidate = Path(config.repo_root) / research_file
    if candidate.is_file():
        return candidate
    return None


def build_logger(config: "RunnerConfig", workflow_id: str) -> "RunnerLogger":
    from workflow_runner.logger import get_logger

    return get_logger(workflow_id, config)


def build_notifier(config: "RunnerConfig") -> Optional["FileNotificationLog"]:
    """Notification log from config, or None when disabled."""
    from workflow_runner.notifications import FileNotificationLog

    if not config.notifications.enabled:
        return None
    return FileNotificationLog(config.notifications.resolved_path)
