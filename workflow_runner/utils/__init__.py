"""Utility modules for Workflow Runner."""

from workflow_runner.utils.fs import (
    FileSystemError,
    ensure_dir,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "ensure_dir",
    "read_file",
    "safe_write",
]
