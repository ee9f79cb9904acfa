"""Helmsman - an approval-gated console coding agent."""

__version__ = "0.1.0"

from helmsman.config import Config
from helmsman.controller import TaskController
from helmsman.task import Task, TaskStatus

__all__ = ["Config", "Task", "TaskController", "TaskStatus", "__version__"]
