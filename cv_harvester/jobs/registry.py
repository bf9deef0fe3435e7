"""Job registry: lifecycle transitions, task planning and outcome bookkeeping."""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime
from typing import Any, Callable

from pydantic import ValidationError

from ..audit import SYSTEM_ACTOR, AuditEvent, AuditSink, LoggingAuditSink
from ..clock import Clock, SystemClock
from ..config import GlobalConfig
from ..errors import (
    ConcurrencyError,
    HarvesterError,
    InvalidRequestError,
    InvalidTransitionError,
    NotFoundError,
)
from ..infra.repositories import JobRepository, LogRepository
from ..logging_conf import component_logger
from ..models import (
    PRIORITY_WEIGHTS,
    JobSpec,
    JobStatus,
    QueueTask,
    ScrapeLogEntry,
    ScrapingJob,
    TaskState,
)
from ..queue.manager import QueueManager
from ..scheduler.triggers import next_fire_time
from ..sources import SourceRegistry
from .state import ACTIVE_STATUSES, ensure_transition, is_terminal

# Fields an administrator may change through update_job.
EDITABLE_FIELDS = frozenset(
    {"name", "description", "type", "priority", "schedule", "config", "max_retries", "tags", "queue_name"}
)
# Fields that shape task planning; frozen once tasks exist.
PLANNING_FIELDS = frozenset({"config", "queue_name", "max_retries"})
BULK_OPERATIONS = ("start", "pause", "resume", "cancel", "retry", "delete")

Mutation = Callable[[ScrapingJob], "ScrapingJob | None"]


def _snapshot(job: ScrapingJob) -> dict[str, Any]:
    return {
        "status": job.status.value,
        "attempt": job.attempt,
        "progress": job.progress.model_dump(),
        "status_reason": job.status_reason,
    }


class JobRegistry:
    """Own ``ScrapingJob`` state; every write goes through an optimistic CAS loop."""

    def __init__(
        self,
        jobs: JobRepository,
        logs: LogRepository,
        sources: SourceRegistry,
        queues: QueueManager,
        global_config: GlobalConfig,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        max_cas_attempts: int = 20,
    ) -> None:
        self.jobs = jobs
        self.logs = logs
        self.sources = sources
        self.queues = queues
        self.global_config = global_config
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.max_cas_attempts = max_cas_attempts
        self.logger = component_logger("jobs")
        queues.attach_jobs(self)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _mutate(self, job_id: str, mutation: Mutation) -> ScrapingJob:
        """Apply ``mutation`` to a fresh copy and save it with a version check.

        Returning ``None`` from the mutation means "nothing to do"; the stored
        job is returned untouched.
        """

        for _ in range(self.max_cas_attempts):
            current = self.jobs.require(job_id)
            candidate = mutation(current.model_copy(deep=True))
            if candidate is None:
                return current
            candidate.updated_at = self.clock.now()
            try:
                return self.jobs.save(candidate)
            except ConcurrencyError:
                self.logger.debug("job_cas_conflict", job_id=job_id)
                continue
        raise ConcurrencyError(f"Gave up updating job {job_id} after {self.max_cas_attempts} attempts")

    def _transition(self, job: ScrapingJob, target: JobStatus, reason: str | None = None) -> ScrapingJob:
        ensure_transition(job.id, job.status, target)
        now = self.clock.now()
        job.previous_status = job.status
        job.status = target
        job.status_reason = reason
        if target is JobStatus.RUNNING and job.started_at is None:
            job.started_at = now
        elif target is JobStatus.PAUSED:
            job.paused_at = now
        elif target is JobStatus.COMPLETED:
            job.completed_at = now
        elif target is JobStatus.CANCELLED:
            job.cancelled_at = now
        elif target is JobStatus.FAILED:
            job.completed_at = now
        return job

    def _emit(
        self,
        actor: str,
        action: str,
        job_id: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        **details: Any,
    ) -> None:
        self.audit.emit(
            AuditEvent(
                actor=actor,
                action=action,
                entity_type="job",
                entity_id=job_id,
                before=before,
                after=after,
                details=details,
                at=self.clock.now(),
            )
        )

    def _log(self, job: ScrapingJob, message: str, level: str = "info", **extra: Any) -> None:
        self.logs.append(
            ScrapeLogEntry(
                job_id=job.id,
                source_id=job.source_id,
                level=level,
                kind=extra.pop("kind", "request"),
                message=message,
                error_type=extra.pop("error_type", None),
                created_at=self.clock.now(),
            )
        )

    def _plan_tasks(self, job: ScrapingJob) -> list[QueueTask]:
        return [
            QueueTask(
                queue_name=job.queue_name,
                job_id=job.id,
                source_id=job.source_id,
                payload={"page": page, "page_size": job.config.page_size, "filters": dict(job.config.filters)},
                priority=PRIORITY_WEIGHTS[job.priority],
                max_attempts=job.max_retries,
            )
            for page in range(1, job.config.pages + 1)
        ]

    def _settle(self, job: ScrapingJob) -> ScrapingJob:
        """Derive the aggregate status once no task is outstanding."""

        if job.status not in ACTIVE_STATUSES or job.progress.tasks_total == 0:
            return job
        if job.progress.tasks_outstanding > 0:
            return job
        if job.status is JobStatus.QUEUED:
            self._transition(job, JobStatus.RUNNING)
        if job.progress.tasks_completed > 0:
            failed = job.progress.tasks_failed
            self._transition(job, JobStatus.COMPLETED, reason=f"partial: {failed} failed" if failed else None)
        else:
            self._transition(job, JobStatus.FAILED, reason=job.last_error_reason)
        return job

    def _validate_spec(self, spec: JobSpec | dict[str, Any]) -> JobSpec:
        try:
            return spec if isinstance(spec, JobSpec) else JobSpec.model_validate(spec)
        except ValidationError as exc:
            raise InvalidRequestError(str(exc)) from exc

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def create_job(
        self, spec: JobSpec | dict[str, Any], actor: str = SYSTEM_ACTOR, start: bool = False
    ) -> ScrapingJob:
        job = self._insert(spec, actor, "job.create")
        if start:
            return self.start_job(job.id, actor=actor)
        return job

    def _insert(
        self,
        spec: JobSpec | dict[str, Any],
        actor: str,
        action: str,
        parent_job_id: str | None = None,
    ) -> ScrapingJob:
        spec = self._validate_spec(spec)
        try:
            self.sources.get_source(spec.source_id)
        except NotFoundError:
            raise InvalidRequestError(f"Unknown source: {spec.source_id}") from None
        queue_name = spec.queue_name or self.global_config.default_queue
        if not self.queues.has_queue(queue_name):
            raise InvalidRequestError(f"Unknown queue: {queue_name}")
        now = self.clock.now()
        job = ScrapingJob(
            **spec.model_dump(exclude={"queue_name"}),
            queue_name=queue_name,
            created_by=actor,
            created_at=now,
            updated_at=now,
            parent_job_id=parent_job_id,
        )
        if job.schedule.recurring or job.schedule.start_at or job.schedule.trigger.value:
            try:
                job.schedule.next_run_at = next_fire_time(job.schedule, now)
            except ValueError as exc:
                raise InvalidRequestError(f"Invalid schedule: {exc}") from exc
        self.jobs.insert(job)
        self.logger.info("job_created", job_id=job.id, source_id=job.source_id, queue=queue_name)
        self._emit(actor, action, job.id, None, _snapshot(job), name=job.name, parent_job_id=parent_job_id)
        return job

    def get_job(self, job_id: str) -> ScrapingJob:
        return self.jobs.require(job_id)

    def list_jobs(
        self, filters: dict[str, Any] | None = None, page: int = 1, limit: int = 20
    ) -> dict[str, Any]:
        filters = filters or {}
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")
        statuses = filters.get("status")
        if isinstance(statuses, (str, JobStatus)):
            statuses = [statuses]
        try:
            parsed = [JobStatus(status) for status in statuses] if statuses else None
        except ValueError as exc:
            raise InvalidRequestError(str(exc)) from exc
        jobs = self.jobs.list(
            statuses=parsed,
            source_id=filters.get("source_id"),
            created_from=filters.get("created_from"),
            created_to=filters.get("created_to"),
        )
        job_type = filters.get("type")
        priority = filters.get("priority")
        tags = set(filters.get("tags") or ())
        search = (filters.get("search") or "").lower()
        selected = [
            job
            for job in jobs
            if (not job_type or job.type.value == job_type)
            and (not priority or job.priority.value == priority)
            and (not tags or tags.intersection(job.tags))
            and (not search or search in job.name.lower() or search in job.description.lower())
        ]
        total = len(selected)
        start = (page - 1) * limit
        return {
            "jobs": selected[start : start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    def update_job(self, job_id: str, changes: dict[str, Any], actor: str = SYSTEM_ACTOR) -> ScrapingJob:
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise InvalidRequestError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")
        before: dict[str, Any] = {}

        def mutation(job: ScrapingJob) -> ScrapingJob:
            if job.status in (JobStatus.RUNNING, JobStatus.COMPLETED):
                raise InvalidRequestError(f"Job {job.id} cannot be updated while {job.status.value}")
            if job.progress.tasks_total and PLANNING_FIELDS.intersection(changes):
                raise InvalidRequestError("Planning fields are frozen once tasks were created")
            if "queue_name" in changes and not self.queues.has_queue(changes["queue_name"]):
                raise InvalidRequestError(f"Unknown queue: {changes['queue_name']}")
            before.clear()
            before.update(job.model_dump(mode="json", include=set(changes)))
            payload = job.model_dump()
            payload.update(changes)
            try:
                updated = ScrapingJob.model_validate(payload)
            except ValidationError as exc:
                raise InvalidRequestError(str(exc)) from exc
            if "schedule" in changes:
                updated.schedule.next_run_at = next_fire_time(updated.schedule, self.clock.now())
            return updated

        job = self._mutate(job_id, mutation)
        self._emit(actor, "job.update", job_id, before, job.model_dump(mode="json", include=set(changes)))
        return job

    def delete_job(self, job_id: str, actor: str = SYSTEM_ACTOR) -> None:
        job = self.jobs.require(job_id)
        if job.status is JobStatus.RUNNING:
            raise InvalidRequestError(f"Job {job_id} is running; pause or cancel it first")
        if any(task.state is TaskState.ACTIVE for task in self.queues.tasks_for_job(job_id)):
            raise InvalidRequestError(f"Job {job_id} still has tasks in flight")
        self.queues.remove_job_tasks(
            job_id, (TaskState.WAITING, TaskState.DELAYED, TaskState.FAILED, TaskState.COMPLETED)
        )
        self.jobs.delete(job_id)
        self.logs.delete_for_job(job_id)
        self.logger.info("job_deleted", job_id=job_id)
        self._emit(actor, "job.delete", job_id, _snapshot(job), None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start_job(self, job_id: str, actor: str = SYSTEM_ACTOR) -> ScrapingJob:
        before: dict[str, Any] = {}
        planned: list[QueueTask] = []

        def mutation(job: ScrapingJob) -> ScrapingJob:
            if job.status not in (JobStatus.PENDING, JobStatus.PAUSED):
                raise InvalidTransitionError(job.id, job.status.value, JobStatus.QUEUED.value)
            before.update(_snapshot(job))
            planned.clear()
            if job.progress.tasks_total == 0:
                planned.extend(self._plan_tasks(job))
                job.progress.tasks_total = len(planned)
            job.schedule.last_run_at = self.clock.now()
            return self._transition(job, JobStatus.QUEUED)

        job = self._mutate(job_id, mutation)
        self.queues.enqueue_many(planned)
        self._log(job, f"Job queued with {len(planned)} new task(s)")
        self.logger.info("job_started", job_id=job_id, tasks=len(planned))
        self._emit(actor, "job.start", job_id, before, _snapshot(job))
        return self._settle_and_save(job_id)

    def pause_job(self, job_id: str, actor: str = SYSTEM_ACTOR, reason: str | None = None) -> ScrapingJob:
        before: dict[str, Any] = {}

        def mutation(job: ScrapingJob) -> ScrapingJob:
            before.update(_snapshot(job))
            return self._transition(job, JobStatus.PAUSED, reason=reason)

        job = self._mutate(job_id, mutation)
        self.logger.info("job_paused", job_id=job_id, reason=reason)
        self._emit(actor, "job.pause", job_id, before, _snapshot(job), reason=reason)
        return job

    def resume_job(self, job_id: str, actor: str = SYSTEM_ACTOR) -> ScrapingJob:
        before: dict[str, Any] = {}

        def mutation(job: ScrapingJob) -> ScrapingJob:
            if job.status is not JobStatus.PAUSED:
                raise InvalidTransitionError(job.id, job.status.value, JobStatus.QUEUED.value)
            before.update(_snapshot(job))
            return self._transition(job, JobStatus.QUEUED)

        job = self._mutate(job_id, mutation)
        self.logger.info("job_resumed", job_id=job_id)
        self._emit(actor, "job.resume", job_id, before, _snapshot(job))
        return self._settle_and_save(job_id)

    def cancel_job(self, job_id: str, actor: str = SYSTEM_ACTOR, reason: str | None = None) -> ScrapingJob:
        before: dict[str, Any] = {}

        def mutation(job: ScrapingJob) -> ScrapingJob:
            before.update(_snapshot(job))
            return self._transition(job, JobStatus.CANCELLED, reason=reason)

        job = self._mutate(job_id, mutation)
        removed = self.queues.remove_job_tasks(job_id)
        self._log(job, f"Job cancelled; {removed} waiting task(s) dropped", level="warning")
        self.logger.info("job_cancelled", job_id=job_id, removed_tasks=removed)
        self._emit(actor, "job.cancel", job_id, before, _snapshot(job), removed_tasks=removed)
        return job

    def retry_job(self, job_id: str, actor: str = SYSTEM_ACTOR) -> ScrapingJob:
        """Re-queue a failed job's dead-lettered tasks, consuming one more attempt."""

        before: dict[str, Any] = {}

        def mutation(job: ScrapingJob) -> ScrapingJob:
            if job.status is not JobStatus.FAILED:
                raise InvalidTransitionError(job.id, job.status.value, JobStatus.QUEUED.value)
            if job.attempt > job.max_retries:
                raise InvalidTransitionError(
                    job.id,
                    job.status.value,
                    JobStatus.QUEUED.value,
                    f"Job {job.id} exhausted its retries ({job.attempt}/{job.max_retries})",
                )
            before.update(_snapshot(job))
            self._transition(job, JobStatus.QUEUED)
            job.attempt += 1
            job.progress.tasks_failed = 0
            return job

        job = self._mutate(job_id, mutation)
        requeued = self.queues.requeue_failed_for_job(job_id)
        self._log(job, f"Job retried; {requeued} task(s) re-enqueued")
        self.logger.info("job_retried", job_id=job_id, attempt=job.attempt, requeued=requeued)
        self._emit(actor, "job.retry", job_id, before, _snapshot(job), requeued=requeued)
        return job

    def bulk_operation(
        self, operation: str, job_ids: list[str], actor: str = SYSTEM_ACTOR
    ) -> list[dict[str, Any]]:
        """Apply ``operation`` to each id independently and report per-id results."""

        if operation not in BULK_OPERATIONS:
            raise InvalidRequestError(f"Unsupported bulk operation: {operation}")
        handler = getattr(self, f"{operation}_job")
        results: list[dict[str, Any]] = []
        for job_id in job_ids:
            try:
                outcome = handler(job_id, actor=actor)
            except HarvesterError as exc:
                results.append({"job_id": job_id, "success": False, "error": str(exc)})
                continue
            status = outcome.status.value if isinstance(outcome, ScrapingJob) else None
            results.append({"job_id": job_id, "success": True, "status": status})
        self.logger.info(
            "bulk_operation",
            operation=operation,
            total=len(results),
            succeeded=sum(1 for item in results if item["success"]),
        )
        return results

    def clone_job(
        self, job_id: str, actor: str = SYSTEM_ACTOR, overrides: dict[str, Any] | None = None
    ) -> ScrapingJob:
        original = self.jobs.require(job_id)
        spec = original.model_dump(include=set(JobSpec.model_fields))
        spec["name"] = f"{original.name} (Copy)"
        spec["schedule"]["next_run_at"] = None
        spec["schedule"]["last_run_at"] = None
        spec.update(overrides or {})
        return self._insert(spec, actor, "job.clone", parent_job_id=original.id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_job_logs(
        self, job_id: str, level: str | None = None, page: int = 1, limit: int = 50
    ) -> list[ScrapeLogEntry]:
        self.jobs.require(job_id)
        return self.logs.for_job(job_id, level=level, offset=(page - 1) * limit, limit=limit)

    def get_statistics(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        jobs = self.jobs.list(created_from=date_from, created_to=date_to)
        by_status = Counter(job.status.value for job in jobs)
        by_type = Counter(job.type.value for job in jobs)
        by_source = Counter(job.source_id for job in jobs)
        durations = [job.duration_seconds for job in jobs if job.duration_seconds is not None]
        finished = by_status[JobStatus.COMPLETED.value] + by_status[JobStatus.FAILED.value]
        return {
            "total": len(jobs),
            "by_status": dict(by_status),
            "by_type": dict(by_type),
            "by_source": dict(by_source),
            "success_rate": round(by_status[JobStatus.COMPLETED.value] / finished * 100, 2) if finished else 0.0,
            "avg_duration_seconds": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "records": {
                "found": sum(job.progress.found for job in jobs),
                "validated": sum(job.progress.validated for job in jobs),
                "duplicate": sum(job.progress.duplicate for job in jobs),
                "failed": sum(job.progress.failed for job in jobs),
            },
        }

    def get_active_jobs(self) -> list[ScrapingJob]:
        return self.jobs.list(statuses=ACTIVE_STATUSES)

    def get_scheduled_jobs(self) -> list[ScrapingJob]:
        scheduled = [
            job
            for job in self.jobs.list(statuses=[JobStatus.PENDING])
            if job.schedule.next_run_at is not None
        ]
        return sorted(scheduled, key=lambda job: job.schedule.next_run_at)

    # ------------------------------------------------------------------
    # Dispatcher / worker hooks
    # ------------------------------------------------------------------
    def auto_pause_source_jobs(self, source_id: str, reason: str) -> list[str]:
        paused: list[str] = []
        for job in self.jobs.list(statuses=ACTIVE_STATUSES, source_id=source_id):
            try:
                self.pause_job(job.id, actor=SYSTEM_ACTOR, reason=reason)
            except InvalidTransitionError:
                continue
            paused.append(job.id)
        if paused:
            self.logger.warning("source_jobs_auto_paused", source_id=source_id, reason=reason, jobs=paused)
        return paused

    def mark_running(self, job_id: str) -> ScrapingJob:
        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            if job.status is not JobStatus.QUEUED:
                return None
            return self._transition(job, JobStatus.RUNNING)

        return self._mutate(job_id, mutation)

    def record_task_success(self, job_id: str, attempt: int, stats: dict[str, int]) -> ScrapingJob | None:
        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            if is_terminal(job.status):
                return None
            job.progress.tasks_completed += 1
            for counter in ("found", "validated", "duplicate", "failed"):
                setattr(job.progress, counter, getattr(job.progress, counter) + int(stats.get(counter, 0)))
            job.attempt = max(job.attempt, attempt)
            return self._settle(job)

        try:
            return self._mutate(job_id, mutation)
        except NotFoundError:
            return None

    def record_task_failure(
        self,
        job_id: str,
        reason: str,
        attempt: int,
        dead_lettered: bool,
        error_type: str | None = None,
    ) -> ScrapingJob | None:
        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            if is_terminal(job.status):
                return None
            key = error_type or "error"
            job.errors[key] = job.errors.get(key, 0) + 1
            job.last_error_reason = reason
            job.attempt = max(job.attempt, attempt)
            if dead_lettered:
                job.progress.tasks_failed += 1
            return self._settle(job)

        try:
            return self._mutate(job_id, mutation)
        except NotFoundError:
            return None

    def reopen_for_retry(self, job_id: str, tasks: int) -> ScrapingJob | None:
        """A dead-lettered task was retried from the queue; re-open its job."""

        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            if is_terminal(job.status):
                return None
            job.progress.tasks_failed = max(job.progress.tasks_failed - tasks, 0)
            if job.status is JobStatus.FAILED:
                self._transition(job, JobStatus.QUEUED)
            return job

        try:
            return self._mutate(job_id, mutation)
        except NotFoundError:
            return None

    def schedule_next_run(self, job_id: str, next_run_at: datetime | None) -> ScrapingJob:
        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            if job.schedule.next_run_at == next_run_at:
                return None
            job.schedule.next_run_at = next_run_at
            return job

        return self._mutate(job_id, mutation)

    def recover_orphaned_tasks(self) -> list[str]:
        """Re-plan unfinished jobs whose tasks are no longer in any queue.

        The in-memory broker does not survive a restart; every page of such a
        job is planned again and duplicates are caught on ingest.
        """

        recovered: list[str] = []
        candidates = self.jobs.list(statuses=[*ACTIVE_STATUSES, JobStatus.PAUSED])
        for candidate in candidates:
            if candidate.progress.tasks_outstanding == 0 or self.queues.tasks_for_job(candidate.id):
                continue
            planned: list[QueueTask] = []

            def mutation(job: ScrapingJob) -> ScrapingJob:
                planned.clear()
                planned.extend(self._plan_tasks(job))
                job.progress.tasks_total = len(planned)
                job.progress.tasks_completed = 0
                job.progress.tasks_failed = 0
                return job

            job = self._mutate(candidate.id, mutation)
            self.queues.enqueue_many(planned)
            self._log(job, f"Recovered {len(planned)} task(s) after restart", level="warning")
            recovered.append(job.id)
        if recovered:
            self.logger.warning("job_tasks_recovered", jobs=recovered)
        return recovered

    def finalize(self, job_id: str) -> ScrapingJob:
        """Settle the aggregate status if every task has finished."""

        return self._settle_and_save(job_id)

    def _settle_and_save(self, job_id: str) -> ScrapingJob:
        def mutation(job: ScrapingJob) -> ScrapingJob | None:
            before = job.status
            settled = self._settle(job)
            return settled if settled.status is not before else None

        return self._mutate(job_id, mutation)


__all__ = ["BULK_OPERATIONS", "EDITABLE_FIELDS", "JobRegistry"]
