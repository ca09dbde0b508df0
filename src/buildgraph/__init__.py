"""Task-graph orchestrator for building and testing a main artifact plus addons.

Provides TaskSpec/TaskGraph primitives, a memoized async executor and a Typer CLI.
"""

from .core import TaskGraph, TaskOutcome, TaskSpec, alias, task  # re-export for convenience

__all__ = ["TaskGraph", "TaskOutcome", "TaskSpec", "alias", "task"]
