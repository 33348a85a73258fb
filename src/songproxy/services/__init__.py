"""Application services (task tracking, keep-alive)."""

from .keep_alive import KeepAlivePinger
from .task_tracker import TaskTracker, backoff_delay

__all__ = ["KeepAlivePinger", "TaskTracker", "backoff_delay"]
