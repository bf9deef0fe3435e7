"""Facade wiring configuration, storage, registries, queues and engines together."""

from __future__ import annotations

import time
from concurrent.futures import Executor
from pathlib import Path
from typing import Callable

import httpx

from .analytics import AnalyticsAggregator
from .audit import AuditSink, LoggingAuditSink
from .clock import Clock, SystemClock
from .config import ConfigLocator, ConfigRepository, GlobalConfig
from .engine.fetcher import FetcherRegistry
from .engine.thread_pool import ThreadPoolManager
from .export.service import ExportService
from .infra.repositories import ExportRepository, JobRepository, LogRepository, RecordRepository
from .infra.storage import SQLiteManager
from .jobs.registry import JobRegistry
from .jobs.state import DISPATCHABLE_STATUSES
from .logging_conf import component_logger
from .models import ScrapingJob
from .queue.manager import QueueManager
from .scheduler.dispatcher import Dispatcher
from .scheduler.recurring import RecurringScheduler
from .scheduler.worker import Worker
from .sources import SourceRegistry
from .validation.engine import ValidationEngine

ExecutorFactory = Callable[[str, int], Executor]


class Harvester:
    """Everything one process needs, built from a single config repository."""

    def __init__(
        self,
        config_repository: ConfigRepository,
        clock: Clock | None = None,
        audit: AuditSink | None = None,
        fetchers: FetcherRegistry | None = None,
        executor_factory: ExecutorFactory | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.config_repository = config_repository
        self.global_config: GlobalConfig = config_repository.load_global_config()
        self.clock = clock or SystemClock()
        self.audit = audit or LoggingAuditSink()
        self.logger = component_logger("harvester")

        self.storage = SQLiteManager()
        database = config_repository.resolve_path(self.global_config.database_path)
        self.job_repository = JobRepository(self.storage, database)
        self.record_repository = RecordRepository(self.storage, database)
        self.log_repository = LogRepository(self.storage, database)
        self.export_repository = ExportRepository(self.storage, database)

        self.thread_pool = ThreadPoolManager(self.global_config.worker_threads, factory=executor_factory)
        self.sources = SourceRegistry(
            config_repository,
            self.job_repository,
            self.global_config,
            clock=self.clock,
            audit=self.audit,
            transport=transport,
        )
        self.queues = QueueManager(self.global_config, clock=self.clock, audit=self.audit)
        self.jobs = JobRegistry(
            self.job_repository,
            self.log_repository,
            self.sources,
            self.queues,
            self.global_config,
            clock=self.clock,
            audit=self.audit,
        )
        self.validation = ValidationEngine(
            self.record_repository, self.global_config, clock=self.clock, audit=self.audit
        )
        self.worker = Worker(
            self.jobs,
            self.queues,
            self.sources,
            self.record_repository,
            self.log_repository,
            self.validation,
            fetchers or FetcherRegistry.default(),
            self.global_config,
            clock=self.clock,
        )
        self.dispatcher = Dispatcher(
            self.queues,
            self.jobs,
            self.sources,
            self.worker,
            self.thread_pool,
            self.global_config,
            clock=self.clock,
        )
        self.recurring = RecurringScheduler(
            self.jobs, clock=self.clock, tick_seconds=self.global_config.schedule_tick_seconds
        )
        self.analytics = AnalyticsAggregator(
            self.job_repository,
            self.record_repository,
            self.log_repository,
            self.sources,
            self.queues,
            self.global_config,
            clock=self.clock,
        )
        self.exports = ExportService(
            self.export_repository,
            self.record_repository,
            config_repository.resolve_path(self.global_config.exports_dir),
            self.global_config,
            clock=self.clock,
            audit=self.audit,
            executor=self.thread_pool.get("export", self.global_config.export.workers),
        )

    @classmethod
    def from_home(cls, home: Path | str | None = None, **kwargs) -> "Harvester":
        """Build the default stack rooted at ``home`` (or ``$CV_HARVESTER_HOME``)."""

        locator = ConfigLocator(project_root=Path(home) if home is not None else None)
        return cls(ConfigRepository(locator), **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> list[str]:
        """Re-plan lost tasks, then start the dispatcher and recurring scheduler."""

        recovered = self.jobs.recover_orphaned_tasks()
        self.dispatcher.start()
        self.recurring.start()
        self.logger.info("harvester_started", recovered_jobs=len(recovered))
        return recovered

    def run_job(
        self,
        job_id: str,
        timeout: float = 300.0,
        on_cycle: Callable[[ScrapingJob], None] | None = None,
    ) -> ScrapingJob:
        """Drive dispatch cycles in-process until ``job_id`` stops being dispatchable or ``timeout`` passes."""

        interval = self.global_config.dispatch_interval_seconds
        deadline = time.monotonic() + timeout
        while True:
            dispatched = self.dispatcher.run_cycle()
            job = self.jobs.get_job(job_id)
            if on_cycle is not None:
                on_cycle(job)
            if job.status not in DISPATCHABLE_STATUSES or time.monotonic() >= deadline:
                return job
            if not dispatched:
                time.sleep(interval)

    def shutdown(self, wait: bool = False) -> None:
        self.recurring.shutdown()
        self.dispatcher.stop()
        self.worker.shutdown()
        self.thread_pool.shutdown(wait=wait)
        self.logger.info("harvester_stopped")


__all__ = ["ExecutorFactory", "Harvester"]
