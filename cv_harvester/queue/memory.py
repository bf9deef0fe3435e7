"""Thread-safe in-memory queue backend."""

from __future__ import annotations

import heapq
import itertools
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Iterable, List, Tuple

from ..errors import InvalidRequestError, NotFoundError
from ..models import QueueTask, TaskState
from .base import TaskFilter, TaskQueue

ReadyEntry = Tuple[int, int, str]
DelayedEntry = Tuple[datetime, int, str]


def _state_timestamp(task: QueueTask) -> datetime | None:
    if task.state in (TaskState.COMPLETED, TaskState.FAILED):
        return task.finished_at
    if task.state is TaskState.ACTIVE:
        return task.started_at
    return task.enqueued_at


class InMemoryQueue(TaskQueue):
    """Per-source heaps keyed ``(priority, sequence)`` plus one delayed heap.

    Heap entries are dropped lazily: an entry whose task is no longer in the
    matching state is skipped when popped.
    """

    def __init__(self, name: str) -> None:
        super().__init__(name)
        self._lock = RLock()
        self._tasks: Dict[str, QueueTask] = {}
        self._ready: Dict[str, List[ReadyEntry]] = {}
        self._delayed: List[DelayedEntry] = []
        self._sequence = itertools.count(1)
        self._paused = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _require(self, task_id: str) -> QueueTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _push_ready(self, task: QueueTask) -> None:
        task.state = TaskState.WAITING
        task.available_at = None
        heapq.heappush(self._ready.setdefault(task.source_id, []), (task.priority, task.sequence, task.id))

    def _push_delayed(self, task: QueueTask, until: datetime) -> None:
        task.state = TaskState.DELAYED
        task.available_at = until
        heapq.heappush(self._delayed, (until, task.sequence, task.id))

    def _promote_due(self, now: datetime) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            until, _, task_id = heapq.heappop(self._delayed)
            task = self._tasks.get(task_id)
            if task is None or task.state is not TaskState.DELAYED or task.available_at != until:
                continue
            self._push_ready(task)

    # ------------------------------------------------------------------
    # Core broker operations
    # ------------------------------------------------------------------
    def enqueue(self, task: QueueTask, now: datetime) -> QueueTask:
        with self._lock:
            if task.id in self._tasks:
                raise InvalidRequestError(f"Task already enqueued: {task.id}")
            if not task.sequence:
                task.sequence = next(self._sequence)
            task.queue_name = self.name
            task.enqueued_at = task.enqueued_at or now
            self._tasks[task.id] = task
            if task.available_at is not None and task.available_at > now:
                self._push_delayed(task, task.available_at)
            else:
                self._push_ready(task)
            return task

    def dequeue(
        self, source_id: str, now: datetime, accept: TaskFilter | None = None
    ) -> QueueTask | None:
        with self._lock:
            if self._paused:
                return None
            self._promote_due(now)
            heap = self._ready.get(source_id)
            skipped: List[ReadyEntry] = []
            chosen: QueueTask | None = None
            while heap:
                entry = heapq.heappop(heap)
                task = self._tasks.get(entry[2])
                if task is None or task.state is not TaskState.WAITING:
                    continue
                if accept is not None and not accept(task):
                    if self._tasks.get(entry[2]) is task and task.state is TaskState.WAITING:
                        skipped.append(entry)
                    continue
                chosen = task
                break
            for entry in skipped:
                heapq.heappush(heap, entry)
            if chosen is None:
                return None
            chosen.state = TaskState.ACTIVE
            chosen.attempt += 1
            chosen.started_at = now
            chosen.finished_at = None
            return chosen

    def ack(self, task_id: str, now: datetime, result: dict[str, Any] | None = None) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state is not TaskState.ACTIVE:
                raise InvalidRequestError(f"Task {task_id} is not active")
            task.state = TaskState.COMPLETED
            task.finished_at = now
            task.result = result
            task.failed_reason = None
            return task

    def nack(
        self, task_id: str, reason: str, now: datetime, retry_at: datetime | None = None
    ) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state is not TaskState.ACTIVE:
                raise InvalidRequestError(f"Task {task_id} is not active")
            task.failed_reason = reason
            task.finished_at = now
            if retry_at is None:
                task.state = TaskState.FAILED
            elif retry_at <= now:
                self._push_ready(task)
            else:
                self._push_delayed(task, retry_at)
            return task

    def requeue(self, task_id: str, now: datetime, consume_attempt: bool = False) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state is not TaskState.ACTIVE:
                raise InvalidRequestError(f"Task {task_id} is not active")
            if not consume_attempt:
                task.attempt = max(task.attempt - 1, 0)
            task.started_at = None
            self._push_ready(task)
            return task

    def stats(self, now: datetime | None = None) -> dict[str, int]:
        with self._lock:
            if now is not None:
                self._promote_due(now)
            counts = {state.value: 0 for state in TaskState}
            for task in self._tasks.values():
                counts[task.state.value] += 1
            counts["paused"] = counts["waiting"] if self._paused else 0
            counts["total"] = len(self._tasks)
            return counts

    # ------------------------------------------------------------------
    # Management primitives
    # ------------------------------------------------------------------
    def get(self, task_id: str) -> QueueTask | None:
        with self._lock:
            return self._tasks.get(task_id)

    def list(self, state: TaskState | None = None, offset: int = 0, limit: int = 50) -> List[QueueTask]:
        with self._lock:
            tasks = [t for t in self._tasks.values() if state is None or t.state is state]
        tasks.sort(key=lambda t: (t.priority, t.sequence))
        return tasks[offset : offset + limit]

    def all_tasks(self) -> Iterable[QueueTask]:
        with self._lock:
            return list(self._tasks.values())

    def remove(self, task_id: str) -> QueueTask | None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                return None
            if task.state is TaskState.ACTIVE:
                raise InvalidRequestError(f"Task {task_id} is active and cannot be removed")
            return self._tasks.pop(task_id)

    def retry(self, task_id: str, now: datetime, extra_attempts: int = 0) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state is not TaskState.FAILED:
                raise InvalidRequestError(f"Only failed tasks can be retried (task is {task.state.value})")
            task.max_attempts = max(task.max_attempts, task.attempt + extra_attempts)
            task.failed_reason = None
            task.finished_at = None
            self._push_ready(task)
            return task

    def clean(self, state: TaskState, older_than: datetime) -> List[str]:
        with self._lock:
            doomed = [
                task.id
                for task in self._tasks.values()
                if task.state is state
                and (stamp := _state_timestamp(task)) is not None
                and stamp < older_than
            ]
            for task_id in doomed:
                del self._tasks[task_id]
            return doomed

    def delay(self, task_id: str, until: datetime) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state not in (TaskState.WAITING, TaskState.DELAYED):
                raise InvalidRequestError(f"Task {task_id} cannot be delayed from {task.state.value}")
            self._push_delayed(task, until)
            return task

    def promote(self, task_id: str, now: datetime) -> QueueTask:
        with self._lock:
            task = self._require(task_id)
            if task.state is not TaskState.DELAYED:
                raise InvalidRequestError(f"Task {task_id} is not delayed")
            self._push_ready(task)
            return task

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def is_paused(self) -> bool:
        with self._lock:
            return self._paused

    def empty(self) -> int:
        with self._lock:
            doomed = [
                task.id
                for task in self._tasks.values()
                if task.state in (TaskState.WAITING, TaskState.DELAYED)
            ]
            for task_id in doomed:
                del self._tasks[task_id]
            self._ready.clear()
            self._delayed.clear()
            return len(doomed)

    def tasks_for_job(self, job_id: str) -> List[QueueTask]:
        with self._lock:
            return [task for task in self._tasks.values() if task.job_id == job_id]

    def active_count(self, source_id: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for task in self._tasks.values()
                if task.state is TaskState.ACTIVE and (source_id is None or task.source_id == source_id)
            )

    def ready_sources(self, now: datetime) -> List[str]:
        with self._lock:
            self._promote_due(now)
            return sorted(
                {task.source_id for task in self._tasks.values() if task.state is TaskState.WAITING}
            )


__all__ = ["InMemoryQueue"]
