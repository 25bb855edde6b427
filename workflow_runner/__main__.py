"""
Entry point for running workflow_runner as a module.

Allows running as: python -m workflow_runner
"""

from workflow_runner.cli import cli_main

if __name__ == "__main__":
    cli_main()
