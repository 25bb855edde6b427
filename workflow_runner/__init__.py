"""
Workflow Runner - resumable phase orchestrator for delivery pipelines.

Drives an external worker CLI through research -> plan -> implement -> submit
-> CI -> review comments, one fresh worker invocation per phase, and keeps a
human-readable checkpoint so an interrupted run can be resumed.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
