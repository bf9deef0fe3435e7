"""Broker-agnostic task queue contract."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Iterable

from ..models import QueueTask, TaskState

TaskFilter = Callable[[QueueTask], bool]


class TaskQueue(ABC):
    """Uniform queue contract so brokers stay swappable.

    Ordering: within a source, waiting tasks leave by ``(priority, sequence)``.
    A task keeps its sequence across retries.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    # Core broker operations -------------------------------------------
    @abstractmethod
    def enqueue(self, task: QueueTask, now: datetime) -> QueueTask:
        """Add a task; it is ``delayed`` when ``available_at`` lies in the future."""

    @abstractmethod
    def dequeue(
        self, source_id: str, now: datetime, accept: TaskFilter | None = None
    ) -> QueueTask | None:
        """Activate the next waiting task of ``source_id`` that ``accept`` allows."""

    @abstractmethod
    def ack(self, task_id: str, now: datetime, result: dict[str, Any] | None = None) -> QueueTask:
        """Mark an active task completed."""

    @abstractmethod
    def nack(
        self, task_id: str, reason: str, now: datetime, retry_at: datetime | None = None
    ) -> QueueTask:
        """Fail an active task: delayed until ``retry_at`` or dead-lettered."""

    @abstractmethod
    def requeue(self, task_id: str, now: datetime, consume_attempt: bool = False) -> QueueTask:
        """Return an active task to waiting, keeping its place in line."""

    @abstractmethod
    def stats(self, now: datetime | None = None) -> dict[str, int]:
        """Task counts per state."""

    # Management primitives ----------------------------------------------
    @abstractmethod
    def get(self, task_id: str) -> QueueTask | None: ...

    @abstractmethod
    def list(self, state: TaskState | None = None, offset: int = 0, limit: int = 50) -> list[QueueTask]: ...

    @abstractmethod
    def all_tasks(self) -> Iterable[QueueTask]: ...

    @abstractmethod
    def remove(self, task_id: str) -> QueueTask | None: ...

    @abstractmethod
    def retry(self, task_id: str, now: datetime, extra_attempts: int = 0) -> QueueTask:
        """Move a dead-lettered task back to waiting."""

    @abstractmethod
    def clean(self, state: TaskState, older_than: datetime) -> list[str]:
        """Delete tasks in ``state`` whose state timestamp precedes ``older_than``."""

    @abstractmethod
    def delay(self, task_id: str, until: datetime) -> QueueTask: ...

    @abstractmethod
    def promote(self, task_id: str, now: datetime) -> QueueTask: ...

    @abstractmethod
    def pause(self) -> None: ...

    @abstractmethod
    def resume(self) -> None: ...

    @abstractmethod
    def is_paused(self) -> bool: ...

    @abstractmethod
    def empty(self) -> int:
        """Drop every waiting and delayed task; returns how many were dropped."""

    @abstractmethod
    def tasks_for_job(self, job_id: str) -> list[QueueTask]: ...

    @abstractmethod
    def active_count(self, source_id: str | None = None) -> int: ...

    @abstractmethod
    def ready_sources(self, now: datetime) -> list[str]:
        """Sources with at least one waiting task after promoting due delayed tasks."""


__all__ = ["TaskFilter", "TaskQueue"]
