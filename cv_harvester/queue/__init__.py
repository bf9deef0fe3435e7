"""Task queues and their manager."""

from .base import TaskFilter, TaskQueue
from .manager import FailureDecision, JobOutcomeHooks, QueueManager
from .memory import InMemoryQueue

__all__ = [
    "FailureDecision",
    "InMemoryQueue",
    "JobOutcomeHooks",
    "QueueManager",
    "TaskFilter",
    "TaskQueue",
]
