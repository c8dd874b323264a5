"""Canopy Engine — tasks, interpreter, runner, hooks, config, logging, errors."""

from canopy.engine.hooks import HookManager  # noqa: F401
from canopy.engine.runner import TaskRunner  # noqa: F401
from canopy.engine.task import Actor, Delegation, Task, TaskStatus  # noqa: F401

__all__ = [
    "Actor",
    "Delegation",
    "HookManager",
    "Task",
    "TaskRunner",
    "TaskStatus",
]
