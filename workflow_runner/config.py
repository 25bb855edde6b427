"""
Configuration loading and validation for Workflow Runner.

This module handles:
- Loading workflow.yaml from the project directory
- Environment variable resolution (${VAR} syntax)
- Validation of limits and timeouts
- Default values for every field (the file itself is optional)
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


CONFIG_FILENAME = "workflow.yaml"


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


@dataclass
class WorkerConfig:
    """Worker (Claude Code CLI) invocation configuration."""
    binary: str = "claude"                     # Path to claude binary
    timeout_seconds: int = 900                 # Per-phase invocation timeout (15 min)
    skip_permissions: bool = False             # Pass --dangerously-skip-permissions
    extra_args: list[str] = field(default_factory=list)
    command_prefix: str = "/workflows:"        # Prefix for phase commands
    terminate_grace_seconds: int = 10          # SIGTERM -> SIGKILL grace period


@dataclass
class LimitsConfig:
    """Loop termination limits."""
    max_iterations: int = 50                   # Hard ceiling per run/resume
    max_ci_attempts: int = 5                   # CI verify/fix cycles
    max_comment_attempts: int = 10             # Comment verify/fix cycles


@dataclass
class StuckConfig:
    """Stuck-loop detection thresholds."""
    exact_threshold: int = 3                   # Identical error repetitions
    category_threshold: int = 5                # Same-category repetitions


@dataclass
class CIConfig:
    """CI status polling configuration."""
    binary: str = "gh"                         # Path to GitHub CLI
    poll_interval_seconds: int = 30
    timeout_seconds: int = 1800                # Overall polling timeout (30 min)
    request_timeout_seconds: int = 60          # Per status request


@dataclass
class NotificationsConfig:
    """Append-only notification log configuration."""
    enabled: bool = True
    path: str = "~/.workflow-notifications.log"

    @property
    def resolved_path(self) -> Path:
        return Path(os.path.expanduser(self.path))


@dataclass
class RunnerConfig:
    """
    Main configuration for Workflow Runner.

    This is the top-level config loaded from workflow.yaml.
    """
    # Paths
    repo_root: str = "."
    state_dir: str = ".workflow"
    progress_file: str = ".workflow-progress.txt"

    # Nested configurations
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    stuck: StuckConfig = field(default_factory=StuckConfig)
    ci: CIConfig = field(default_factory=CIConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def state_path(self) -> Path:
        """Absolute path to the .workflow directory."""
        return Path(self.repo_root) / self.state_dir

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.state_path / "logs"

    @property
    def progress_path(self) -> Path:
        """Absolute path to the progress file."""
        return Path(self.repo_root) / self.progress_file

    @property
    def lock_path(self) -> Path:
        """Absolute path to the orchestrator lock file."""
        return self.state_path / "runner.lock"


# Module-level cache for the loaded configuration
_config_cache: Optional[RunnerConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _require_positive(name: str, value: Any) -> int:
    """Validate that a limit or timeout is a positive integer."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
    return value


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Section '{name}' must be a mapping")
    return section


def _parse_worker_config(data: dict[str, Any]) -> WorkerConfig:
    """Parse worker configuration from dict."""
    extra_args = data.get("extra_args", [])
    if not isinstance(extra_args, list):
        raise ConfigError("worker.extra_args must be a list")
    return WorkerConfig(
        binary=data.get("binary", "claude"),
        timeout_seconds=_require_positive(
            "worker.timeout_seconds", data.get("timeout_seconds", 900)
        ),
        skip_permissions=bool(data.get("skip_permissions", False)),
        extra_args=[str(arg) for arg in extra_args],
        command_prefix=data.get("command_prefix", "/workflows:"),
        terminate_grace_seconds=_require_positive(
            "worker.terminate_grace_seconds", data.get("terminate_grace_seconds", 10)
        ),
    )


def _parse_limits_config(data: dict[str, Any]) -> LimitsConfig:
    """Parse loop limits from dict."""
    return LimitsConfig(
        max_iterations=_require_positive(
            "limits.max_iterations", data.get("max_iterations", 50)
        ),
        max_ci_attempts=_require_positive(
            "limits.max_ci_attempts", data.get("max_ci_attempts", 5)
        ),
        max_comment_attempts=_require_positive(
            "limits.max_comment_attempts", data.get("max_comment_attempts", 10)
        ),
    )


def _parse_stuck_config(data: dict[str, Any]) -> StuckConfig:
    """Parse stuck detection thresholds from dict."""
    return StuckConfig(
        exact_threshold=_require_positive(
            "stuck.exact_threshold", data.get("exact_threshold", 3)
        ),
        category_threshold=_require_positive(
            "stuck.category_threshold", data.get("category_threshold", 5)
        ),
    )


def _parse_ci_config(data: dict[str, Any]) -> CIConfig:
    """Parse CI polling configuration from dict."""
    return CIConfig(
        binary=data.get("binary", "gh"),
        poll_interval_seconds=_require_positive(
            "ci.poll_interval_seconds", data.get("poll_interval_seconds", 30)
        ),
        timeout_seconds=_require_positive(
            "ci.timeout_seconds", data.get("timeout_seconds", 1800)
        ),
        request_timeout_seconds=_require_positive(
            "ci.request_timeout_seconds", data.get("request_timeout_seconds", 60)
        ),
    )


def _parse_notifications_config(data: dict[str, Any]) -> NotificationsConfig:
    """Parse notification log configuration from dict."""
    return NotificationsConfig(
        enabled=bool(data.get("enabled", True)),
        path=data.get("path", "~/.workflow-notifications.log"),
    )


def load_config(config_path: Optional[str | Path] = None) -> RunnerConfig:
    """
    Load configuration from workflow.yaml.

    A relative repo_root is resolved against the directory holding the
    config file; without one, that directory is the repo root.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for workflow.yaml in current directory.

    Returns:
        RunnerConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    path = Path(config_path) if config_path is not None else Path(CONFIG_FILENAME)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    # An empty file means "all defaults"
    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    data = _resolve_env_vars(raw_data)

    base_dir = path.absolute().parent
    repo_root = Path(data.get("repo_root") or base_dir)
    if not repo_root.is_absolute():
        repo_root = base_dir / repo_root

    return RunnerConfig(
        repo_root=str(repo_root),
        state_dir=data.get("state_dir", ".workflow"),
        progress_file=data.get("progress_file", ".workflow-progress.txt"),
        worker=_parse_worker_config(_section(data, "worker")),
        limits=_parse_limits_config(_section(data, "limits")),
        stuck=_parse_stuck_config(_section(data, "stuck")),
        ci=_parse_ci_config(_section(data, "ci")),
        notifications=_parse_notifications_config(_section(data, "notifications")),
    )


def get_config(config_path: Optional[str | Path] = None, force_reload: bool = False) -> RunnerConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        RunnerConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def get_config_or_default(project_dir: Optional[str | Path] = None) -> RunnerConfig:
    """
    Load workflow.yaml from a project directory, or fall back to defaults.

    Args:
        project_dir: Project root. Defaults to the current directory.

    Returns:
        RunnerConfig rooted at the project directory.

    Raises:
        ConfigError: If a config file exists but is invalid.
    """
    root = Path(project_dir) if project_dir is not None else Path(".")
    candidate = root / CONFIG_FILENAME
    if candidate.exists():
        return load_config(candidate)
    return RunnerConfig(repo_root=str(root))


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
