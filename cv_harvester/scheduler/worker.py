"""Execute one dispatched task: fetch, persist, validate, report."""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from ..clock import Clock, SystemClock
from ..config import GlobalConfig, ProxyConfig, SourceConfig
from ..engine.fetcher import FetchError, FetcherRegistry, FetchRequest, FetchResult
from ..infra.repositories import LogRepository, RecordRepository
from ..jobs.registry import JobRegistry
from ..jobs.state import is_terminal
from ..logging_conf import component_logger, source_logger
from ..models import CVRecord, LogLevel, QueueTask, ScrapeLogEntry, TaskState
from ..queue.manager import QueueManager
from ..sources import SourceRegistry
from ..validation.engine import ValidationEngine

# Provider payload keys mapped onto record fields.
FIELD_ALIASES = {
    "name": "full_name",
    "fullName": "full_name",
    "full_name": "full_name",
    "email": "email",
    "emailAddress": "email",
    "phone": "phone",
    "phoneNumber": "phone",
    "headline": "headline",
    "summary": "summary",
    "about": "summary",
    "currentTitle": "current_title",
    "current_title": "current_title",
    "title": "current_title",
    "currentCompany": "current_company",
    "current_company": "current_company",
    "company": "current_company",
    "location": "location",
    "experience": "experience",
    "education": "education",
    "skills": "skills",
}


@dataclass(slots=True)
class Assignment:
    task: QueueTask
    source: SourceConfig
    proxy: ProxyConfig | None = None


@dataclass(slots=True)
class TaskOutcome:
    task_id: str
    job_id: str
    source_id: str
    proxy_id: str | None
    success: bool
    proxy_failure: bool = False
    records: int = 0
    duration_ms: float = 0.0
    error: str | None = None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def record_from_raw(raw: dict[str, Any], task: QueueTask, now: datetime) -> CVRecord:
    """Map a provider payload onto a new ``CVRecord``; unknown keys stay in ``raw``."""

    fields: dict[str, Any] = {}
    for key, value in raw.items():
        target = FIELD_ALIASES.get(key)
        if target is None or value in (None, "") or target in fields:
            continue
        if target == "skills":
            value = [str(item) for item in _as_list(value)]
        elif target in ("experience", "education"):
            value = [item for item in _as_list(value) if isinstance(item, dict)]
        else:
            value = str(value)
        fields[target] = value
    record = CVRecord(
        **fields,
        raw=dict(raw),
        source_id=task.source_id,
        job_id=task.job_id,
        created_at=now,
        updated_at=now,
        processing_history=[{"action": "scraped", "task_id": task.id, "at": now.isoformat()}],
    )
    record.content_hash = record.compute_hash()
    return record


class Worker:
    """Runs on the queue's executor; reports back through the dispatcher inbox."""

    def __init__(
        self,
        registry: JobRegistry,
        queues: QueueManager,
        sources: SourceRegistry,
        records: RecordRepository,
        logs: LogRepository,
        validation: ValidationEngine,
        fetchers: FetcherRegistry,
        global_config: GlobalConfig,
        clock: Clock | None = None,
    ) -> None:
        self.registry = registry
        self.queues = queues
        self.sources = sources
        self.records = records
        self.logs = logs
        self.validation = validation
        self.fetchers = fetchers
        self.global_config = global_config
        self.clock = clock or SystemClock()
        self.logger = component_logger("worker")
        self._notify: Callable[[TaskOutcome], None] | None = None
        self._fetch_pool = ThreadPoolExecutor(
            max_workers=global_config.worker_threads, thread_name_prefix="harvester-fetch"
        )

    def bind(self, notify: Callable[[TaskOutcome], None]) -> None:
        self._notify = notify

    def shutdown(self) -> None:
        self._fetch_pool.shutdown(wait=False)

    # ------------------------------------------------------------------
    def _report(self, outcome: TaskOutcome) -> None:
        if self._notify is not None:
            self._notify(outcome)

    def _job_finished(self, job_id: str) -> bool:
        job = self.registry.jobs.get(job_id)
        return job is None or is_terminal(job.status)

    def _log(self, task: QueueTask, level: LogLevel, kind: str, message: str, **extra: Any) -> None:
        self.logs.append(
            ScrapeLogEntry(
                job_id=task.job_id,
                source_id=task.source_id,
                task_id=task.id,
                level=level,
                kind=kind,
                message=message,
                created_at=self.clock.now(),
                **extra,
            )
        )

    def _fetch(self, source: SourceConfig, task: QueueTask, proxy: ProxyConfig | None) -> FetchResult:
        timeout = self.global_config.fetch_timeout_seconds
        request = FetchRequest(
            task_id=task.id,
            job_id=task.job_id,
            page=int(task.payload.get("page", 1)),
            page_size=int(task.payload.get("page_size", 50)),
            filters=dict(task.payload.get("filters") or {}),
            timeout=timeout,
        )
        fetcher = self.fetchers.get(source.type)
        future = self._fetch_pool.submit(fetcher.fetch, source, request, proxy)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise FetchError(f"Fetch timed out after {timeout:g}s", error_type="timeout") from None
        except FetchError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.exception("fetcher_crashed", task_id=task.id, source_id=source.id)
            raise FetchError(str(exc) or exc.__class__.__name__, error_type="fetcher_error") from exc

    def _discard(self, task: QueueTask, proxy: ProxyConfig | None, reason: str) -> TaskOutcome:
        self.queues.discard_task(task, reason)
        return TaskOutcome(task.id, task.job_id, task.source_id, proxy.id if proxy else None, True)

    # ------------------------------------------------------------------
    def execute(self, assignment: Assignment) -> TaskOutcome:
        task, source, proxy = assignment.task, assignment.source, assignment.proxy
        log = source_logger(source.id).bind(task_id=task.id, job_id=task.job_id)
        if self._job_finished(task.job_id):
            outcome = self._discard(task, proxy, "job_finished_before_fetch")
            self._report(outcome)
            return outcome

        self._log(task, LogLevel.INFO, "request", f"Fetching page {task.payload.get('page', 1)}")
        start = time.perf_counter()
        try:
            result = self._fetch(source, task, proxy)
        except FetchError as exc:
            duration_ms = (time.perf_counter() - start) * 1000
            outcome = self._handle_failure(task, source, proxy, exc, duration_ms)
            log.warning("task_fetch_failed", error=str(exc), error_type=exc.error_type)
            self._report(outcome)
            return outcome
        duration_ms = result.duration_ms or (time.perf_counter() - start) * 1000

        outcome = TaskOutcome(
            task.id, task.job_id, source.id, proxy.id if proxy else None, False, duration_ms=duration_ms
        )
        try:
            outcome = self._process(task, source, proxy, result, duration_ms)
        except Exception as exc:
            outcome.error = str(exc) or exc.__class__.__name__
            log.exception("task_processing_failed", error=outcome.error)
            self._fail_processing(task, source, outcome)
        finally:
            self._report(outcome)
        return outcome

    def _process(
        self,
        task: QueueTask,
        source: SourceConfig,
        proxy: ProxyConfig | None,
        result: FetchResult,
        duration_ms: float,
    ) -> TaskOutcome:
        if self._job_finished(task.job_id):
            return self._discard(task, proxy, "job_finished_during_fetch")

        now = self.clock.now()
        records = [record_from_raw(raw, task, now) for raw in result.records]
        self.records.insert_many(records)
        stats = self.validation.ingest(records)
        self._log(
            task,
            LogLevel.INFO,
            "success",
            f"Fetched {len(records)} record(s)",
            duration_ms=round(duration_ms, 2),
            records=len(records),
        )
        self._log(
            task,
            LogLevel.INFO,
            "extraction",
            "Validated {validated}, duplicate {duplicate}, invalid {failed}".format(**stats),
            records=stats["validated"],
        )
        self.queues.handle_task_success(task, stats)
        self.sources.record_fetch_outcome(source.id, True, duration_ms, len(records))
        source_logger(source.id).info(
            "task_succeeded",
            task_id=task.id,
            job_id=task.job_id,
            records=len(records),
            duration_ms=round(duration_ms, 2),
        )
        return TaskOutcome(
            task.id,
            task.job_id,
            source.id,
            proxy.id if proxy else None,
            True,
            records=len(records),
            duration_ms=duration_ms,
        )

    def _fail_processing(self, task: QueueTask, source: SourceConfig, outcome: TaskOutcome) -> None:
        """Dead-letter a task whose payload could not be stored or validated."""

        reason = outcome.error or "processing failed"
        current = self.queues.queue(task.queue_name).get(task.id)
        if current is not None and current.state is TaskState.ACTIVE:
            self.queues.handle_task_failure(task, reason, retryable=False, error_type="processing_error")
        self._log(task, LogLevel.ERROR, "error", reason, error_type="processing_error")
        self.sources.record_fetch_outcome(source.id, False, outcome.duration_ms, error=reason)

    def _handle_failure(
        self,
        task: QueueTask,
        source: SourceConfig,
        proxy: ProxyConfig | None,
        exc: FetchError,
        duration_ms: float,
    ) -> TaskOutcome:
        proxy_failure = exc.proxy_failure and proxy is not None
        if proxy_failure:
            # The endpoint failed, not the task: the attempt is not consumed.
            self.queues.requeue_task(task, consume_attempt=False)
        else:
            self.queues.handle_task_failure(task, str(exc), exc.retryable, exc.error_type)
        self._log(
            task,
            LogLevel.ERROR,
            "error",
            str(exc),
            error_type=exc.error_type,
            duration_ms=round(duration_ms, 2),
        )
        self.sources.record_fetch_outcome(source.id, False, duration_ms, error=str(exc))
        return TaskOutcome(
            task.id,
            task.job_id,
            source.id,
            proxy.id if proxy else None,
            False,
            proxy_failure=proxy_failure,
            duration_ms=duration_ms,
            error=str(exc),
        )


__all__ = ["Assignment", "FIELD_ALIASES", "TaskOutcome", "Worker", "record_from_raw"]
