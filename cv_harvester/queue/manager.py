"""Queue manager: named queues, admin operations, retry policy and metrics."""

from __future__ import annotations

import random
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Protocol

from ..audit import SYSTEM_ACTOR, AuditEvent, AuditSink, LoggingAuditSink
from ..clock import Clock, SystemClock
from ..config import GlobalConfig
from ..errors import InvalidRequestError, NotFoundError
from ..logging_conf import component_logger
from ..models import QueueTask, TaskState
from .base import TaskQueue
from .memory import InMemoryQueue

HEALTH_RANK = {"healthy": 0, "degraded": 1, "critical": 2}


class JobOutcomeHooks(Protocol):
    """Callbacks the job registry exposes for task outcomes."""

    def record_task_success(self, job_id: str, attempt: int, stats: dict[str, int]) -> Any: ...

    def record_task_failure(
        self,
        job_id: str,
        reason: str,
        attempt: int,
        dead_lettered: bool,
        error_type: str | None = None,
    ) -> Any: ...

    def reopen_for_retry(self, job_id: str, tasks: int) -> Any: ...


@dataclass(slots=True)
class FailureDecision:
    task: QueueTask
    dead_lettered: bool
    retry_at: datetime | None = None
    delay_seconds: float = 0.0


class QueueManager:
    """Own the named queues and everything administrators do with them."""

    def __init__(
        self,
        global_config: GlobalConfig,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        queues: dict[str, TaskQueue] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.global_config = global_config
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.logger = component_logger("queue")
        self._rng = rng or random.Random()
        self._queues: dict[str, TaskQueue] = dict(queues or {})
        for name in global_config.queue_names:
            self._queues.setdefault(name, InMemoryQueue(name))
        self._jobs: JobOutcomeHooks | None = None

    def attach_jobs(self, hooks: JobOutcomeHooks) -> None:
        self._jobs = hooks

    # ------------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------------
    @property
    def queue_names(self) -> list[str]:
        return list(self._queues)

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    def queue(self, name: str) -> TaskQueue:
        try:
            return self._queues[name]
        except KeyError:
            raise NotFoundError("queue", name) from None

    def _task(self, queue_name: str, task_id: str) -> QueueTask:
        task = self.queue(queue_name).get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        return task

    def _emit(
        self,
        actor: str,
        action: str,
        entity_id: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        **details: Any,
    ) -> None:
        self.audit.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="queue",
                entity_id=entity_id,
                before=before,
                after=after,
                details=details,
                at=self.clock.now(),
            )
        )

    @staticmethod
    def _task_state(task: QueueTask) -> dict[str, Any]:
        return {
            "state": task.state.value,
            "attempt": task.attempt,
            "max_attempts": task.max_attempts,
            "available_at": task.available_at.isoformat() if task.available_at else None,
        }

    def _queue_state(self, name: str) -> dict[str, Any]:
        queue = self.queue(name)
        return {"paused": queue.is_paused(), "counts": queue.stats(self.clock.now())}

    @staticmethod
    def _parse_state(state: str | TaskState) -> TaskState:
        try:
            return TaskState(state)
        except ValueError:
            allowed = ", ".join(s.value for s in TaskState)
            raise InvalidRequestError(f"Unknown task state {state!r}; expected one of {allowed}") from None

    # ------------------------------------------------------------------
    # Producer / worker side
    # ------------------------------------------------------------------
    def enqueue(self, task: QueueTask) -> QueueTask:
        return self.queue(task.queue_name).enqueue(task, self.clock.now())

    def enqueue_many(self, tasks: Iterable[QueueTask]) -> list[QueueTask]:
        return [self.enqueue(task) for task in tasks]

    def active_count(self, source_id: str) -> int:
        return sum(queue.active_count(source_id) for queue in self._queues.values())

    def tasks_for_job(self, job_id: str) -> list[QueueTask]:
        tasks: list[QueueTask] = []
        for queue in self._queues.values():
            tasks.extend(queue.tasks_for_job(job_id))
        return tasks

    def remove_job_tasks(
        self,
        job_id: str,
        states: Iterable[TaskState] = (TaskState.WAITING, TaskState.DELAYED),
    ) -> int:
        wanted = set(states)
        removed = 0
        for queue in self._queues.values():
            for task in queue.tasks_for_job(job_id):
                if task.state in wanted and queue.remove(task.id) is not None:
                    removed += 1
        return removed

    def requeue_failed_for_job(self, job_id: str) -> int:
        """Give every dead-lettered task of a job one more attempt."""

        now = self.clock.now()
        count = 0
        for queue in self._queues.values():
            for task in queue.tasks_for_job(job_id):
                if task.state is TaskState.FAILED:
                    queue.retry(task.id, now, extra_attempts=1)
                    count += 1
        return count

    def backoff_delay(self, attempt: int) -> float:
        policy = self.global_config.retry
        delay = min(policy.max_delay_seconds, policy.base_delay_seconds * policy.factor ** max(attempt - 1, 0))
        jitter = self._rng.uniform(0, delay * policy.jitter_ratio) if delay else 0.0
        return delay + jitter

    def handle_task_success(self, task: QueueTask, stats: dict[str, int]) -> QueueTask:
        acked = self.queue(task.queue_name).ack(task.id, self.clock.now(), result=dict(stats))
        self.logger.info(
            "task_completed", queue=task.queue_name, task_id=task.id, job_id=task.job_id, attempt=task.attempt
        )
        if self._jobs is not None:
            self._jobs.record_task_success(task.job_id, task.attempt, stats)
        return acked

    def handle_task_failure(
        self,
        task: QueueTask,
        reason: str,
        retryable: bool = True,
        error_type: str | None = None,
    ) -> FailureDecision:
        """Back off and retry, or dead-letter once the attempts are spent."""

        now = self.clock.now()
        queue = self.queue(task.queue_name)
        if retryable and task.attempt < task.max_attempts:
            delay = self.backoff_delay(task.attempt)
            retry_at = now + timedelta(seconds=delay)
            queue.nack(task.id, reason, now, retry_at=retry_at)
            decision = FailureDecision(task, False, retry_at, delay)
            self.logger.warning(
                "task_retry_scheduled",
                queue=task.queue_name,
                task_id=task.id,
                job_id=task.job_id,
                attempt=task.attempt,
                delay_seconds=round(delay, 3),
                reason=reason,
            )
        else:
            queue.nack(task.id, reason, now, retry_at=None)
            decision = FailureDecision(task, True)
            self.logger.error(
                "task_dead_lettered",
                queue=task.queue_name,
                task_id=task.id,
                job_id=task.job_id,
                attempt=task.attempt,
                reason=reason,
            )
        if self._jobs is not None:
            self._jobs.record_task_failure(
                task.job_id, reason, task.attempt, decision.dead_lettered, error_type
            )
        return decision

    def requeue_task(self, task: QueueTask, consume_attempt: bool = False) -> QueueTask:
        return self.queue(task.queue_name).requeue(task.id, self.clock.now(), consume_attempt)

    def discard_task(self, task: QueueTask, reason: str) -> QueueTask:
        """Close an active task whose job already finished; job counters stay untouched."""

        acked = self.queue(task.queue_name).ack(task.id, self.clock.now(), result={"discarded": reason})
        self.logger.info("task_discarded", queue=task.queue_name, task_id=task.id, job_id=task.job_id, reason=reason)
        return acked

    # ------------------------------------------------------------------
    # Admin views
    # ------------------------------------------------------------------
    def get_queue_status(self, name: str) -> dict[str, Any]:
        queue = self.queue(name)
        return {"name": name, "counts": queue.stats(self.clock.now()), "is_paused": queue.is_paused()}

    def get_all_queue_statuses(self) -> dict[str, dict[str, Any]]:
        return {name: self.get_queue_status(name) for name in self._queues}

    def get_queue_jobs(
        self, name: str, state: str | TaskState = TaskState.WAITING, offset: int = 0, limit: int = 50
    ) -> dict[str, Any]:
        if offset < 0 or limit < 1:
            raise InvalidRequestError("offset must be >= 0 and limit >= 1")
        queue = self.queue(name)
        parsed = self._parse_state(state)
        total = sum(1 for task in queue.all_tasks() if task.state is parsed)
        return {
            "tasks": [task.to_dict() for task in queue.list(parsed, offset, limit)],
            "pagination": {"offset": offset, "limit": limit, "total": total},
        }

    def get_job_details(self, name: str, task_id: str) -> dict[str, Any]:
        task = self._task(name, task_id)
        details = task.to_dict()
        details["processing_ms"] = task.processing_ms
        return details

    # ------------------------------------------------------------------
    # Admin mutations
    # ------------------------------------------------------------------
    def retry_job(self, name: str, task_id: str, actor: str = SYSTEM_ACTOR) -> QueueTask:
        before = self._task_state(self._task(name, task_id))
        task = self.queue(name).retry(task_id, self.clock.now(), extra_attempts=1)
        if self._jobs is not None:
            self._jobs.reopen_for_retry(task.job_id, 1)
        self._emit(actor, "queue.task.retry", task_id, before, self._task_state(task), queue=name)
        return task

    def retry_all_failed(self, name: str, actor: str = SYSTEM_ACTOR) -> int:
        queue = self.queue(name)
        before = self._queue_state(name)
        now = self.clock.now()
        per_job: Counter[str] = Counter()
        for task in list(queue.all_tasks()):
            if task.state is TaskState.FAILED:
                queue.retry(task.id, now, extra_attempts=1)
                per_job[task.job_id] += 1
        if self._jobs is not None:
            for job_id, count in per_job.items():
                self._jobs.reopen_for_retry(job_id, count)
        total = sum(per_job.values())
        self._emit(actor, "queue.retry_all_failed", name, before, self._queue_state(name), retried=total)
        return total

    def remove_job(self, name: str, task_id: str, actor: str = SYSTEM_ACTOR) -> QueueTask:
        removed = self.queue(name).remove(task_id)
        if removed is None:
            raise NotFoundError("task", task_id)
        self._emit(
            actor, "queue.task.remove", task_id, self._task_state(removed), None, queue=name, job_id=removed.job_id
        )
        return removed

    def clean_queue(
        self,
        name: str,
        status: str = "completed",
        grace_period_ms: int = 86_400_000,
        actor: str = SYSTEM_ACTOR,
    ) -> dict[str, Any]:
        """Delete tasks in ``status`` that reached it more than the grace period ago."""

        if grace_period_ms < 0:
            raise InvalidRequestError("grace_period_ms must be >= 0")
        queue = self.queue(name)
        if status == "all":
            states = [TaskState.COMPLETED, TaskState.FAILED, TaskState.WAITING, TaskState.DELAYED]
        else:
            states = [self._parse_state(status)]
        before = self._queue_state(name)
        older_than = self.clock.now() - timedelta(milliseconds=grace_period_ms)
        cleaned: list[str] = []
        for state in states:
            cleaned.extend(queue.clean(state, older_than))
        self.logger.info("queue_cleaned", queue=name, status=status, cleaned=len(cleaned))
        self._emit(
            actor,
            "queue.clean",
            name,
            before,
            self._queue_state(name),
            status=status,
            grace_period_ms=grace_period_ms,
            cleaned_count=len(cleaned),
        )
        return {"queue": name, "status": status, "cleaned": len(cleaned), "task_ids": cleaned}

    def pause_queue(self, name: str, actor: str = SYSTEM_ACTOR) -> None:
        before = self._queue_state(name)
        self.queue(name).pause()
        self.logger.info("queue_paused", queue=name)
        self._emit(actor, "queue.pause", name, before, self._queue_state(name))

    def resume_queue(self, name: str, actor: str = SYSTEM_ACTOR) -> None:
        before = self._queue_state(name)
        self.queue(name).resume()
        self.logger.info("queue_resumed", queue=name)
        self._emit(actor, "queue.resume", name, before, self._queue_state(name))

    def empty_queue(self, name: str, actor: str = SYSTEM_ACTOR) -> int:
        before = self._queue_state(name)
        dropped = self.queue(name).empty()
        self.logger.warning("queue_emptied", queue=name, dropped=dropped)
        self._emit(actor, "queue.empty", name, before, self._queue_state(name), dropped=dropped)
        return dropped

    def move_to_delayed(
        self, name: str, task_id: str, delay_ms: int, actor: str = SYSTEM_ACTOR
    ) -> QueueTask:
        if delay_ms <= 0:
            raise InvalidRequestError("delay_ms must be positive")
        before = self._task_state(self._task(name, task_id))
        until = self.clock.now() + timedelta(milliseconds=delay_ms)
        task = self.queue(name).delay(task_id, until)
        self._emit(actor, "queue.task.delay", task_id, before, self._task_state(task), queue=name, delay_ms=delay_ms)
        return task

    def promote_job(self, name: str, task_id: str, actor: str = SYSTEM_ACTOR) -> QueueTask:
        before = self._task_state(self._task(name, task_id))
        task = self.queue(name).promote(task_id, self.clock.now())
        self._emit(actor, "queue.task.promote", task_id, before, self._task_state(task), queue=name)
        return task

    # ------------------------------------------------------------------
    # Metrics and health
    # ------------------------------------------------------------------
    def get_queue_metrics(
        self,
        name: str,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        queue = self.queue(name)
        date_to = date_to or self.clock.now()
        date_from = date_from or date_to - timedelta(days=1)
        if date_from > date_to:
            raise InvalidRequestError("date_from must precede date_to")
        finished = [
            task
            for task in queue.all_tasks()
            if task.state in (TaskState.COMPLETED, TaskState.FAILED)
            and task.finished_at is not None
            and date_from <= task.finished_at <= date_to
        ]
        completed = [task for task in finished if task.state is TaskState.COMPLETED]
        failed = len(finished) - len(completed)
        durations = [task.processing_ms for task in completed if task.processing_ms is not None]
        hourly: dict[str, dict[str, int]] = {}
        for task in finished:
            bucket = task.finished_at.strftime("%Y-%m-%dT%H:00")
            slot = hourly.setdefault(bucket, {"completed": 0, "failed": 0})
            slot["completed" if task.state is TaskState.COMPLETED else "failed"] += 1
        span_hours = max((date_to - date_from).total_seconds() / 3600, 1e-9)
        total = len(finished)
        return {
            "queue": name,
            "total_processed": total,
            "completed": len(completed),
            "failed": failed,
            "success_rate": round(len(completed) / total * 100, 2) if total else 0.0,
            "failure_rate": round(failed / total * 100, 2) if total else 0.0,
            "throughput_per_hour": round(total / span_hours, 2),
            "avg_processing_ms": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "hourly": [{"hour": hour, **counts} for hour, counts in sorted(hourly.items())],
        }

    def get_failed_job_reasons(self, name: str, limit: int = 10) -> list[dict[str, Any]]:
        reasons: dict[str, dict[str, Any]] = {}
        for task in self.queue(name).all_tasks():
            if task.state is not TaskState.FAILED:
                continue
            message = task.failed_reason or "Unknown error"
            entry = reasons.setdefault(message[:100], {"message": message, "count": 0, "tasks": []})
            entry["count"] += 1
            entry["tasks"].append(task.id)
        ranked = sorted(reasons.values(), key=lambda item: (-item["count"], item["message"]))
        return ranked[:limit]

    def _classify(self, counts: dict[str, int]) -> tuple[str, float]:
        thresholds = self.global_config.queue_health
        total = counts.get("total", 0)
        failed = counts.get("failed", 0)
        backlog = counts.get("waiting", 0) + counts.get("delayed", 0)
        ratio = failed / total if total else 0.0
        if ratio > thresholds.critical_failure_ratio or backlog > thresholds.critical_backlog:
            return "critical", ratio
        if (
            ratio > thresholds.degraded_failure_ratio
            or failed > thresholds.degraded_failed_count
            or backlog > thresholds.degraded_backlog
        ):
            return "degraded", ratio
        return "healthy", ratio

    def get_queue_health(self) -> dict[str, Any]:
        overall = "healthy"
        queues: dict[str, Any] = {}
        for name in self._queues:
            counts = self.queue(name).stats(self.clock.now())
            status, ratio = self._classify(counts)
            if HEALTH_RANK[status] > HEALTH_RANK[overall]:
                overall = status
            queues[name] = {
                "status": status,
                "counts": counts,
                "failed_ratio": round(ratio * 100, 2),
                "backlog": counts.get("waiting", 0) + counts.get("delayed", 0),
            }
        return {"overall": overall, "queues": queues}


__all__ = ["FailureDecision", "JobOutcomeHooks", "QueueManager"]
