"""CLI package for workflow-runner.

Modules:
    app.py      - Main Typer app, version/--project callback, command registration
    workflow.py - Workflow commands (run, resume, status)
    ci.py       - CI helper commands (ci-wait)
    display.py  - Rich formatting (format_phase, final report, status view)
    common.py   - Shared helpers (get_console, get_project_dir, load_runner_config)

Usage:
    from workflow_runner.cli import app, cli_main  # Main exports
    from workflow_runner.cli.display import format_phase, build_final_report
    from workflow_runner.cli.common import get_console, get_project_dir
"""
from workflow_runner.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
