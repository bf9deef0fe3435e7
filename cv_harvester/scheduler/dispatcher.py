"""Single-writer dispatch loop.

The dispatcher owns every per-source token bucket, concurrency counter and
proxy rotation. Worker threads and the source registry never touch that state;
they post commands to the inbox, which is drained at the start of each cycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from queue import Empty, SimpleQueue
from threading import Event, Lock, Thread
from typing import Any

from ..clock import Clock, SystemClock
from ..config import GlobalConfig, SourceConfig, SourceHealthStatus
from ..engine.thread_pool import ThreadPoolManager
from ..errors import NotFoundError
from ..jobs.registry import JobRegistry
from ..jobs.state import DISPATCHABLE_STATUSES, is_terminal
from ..logging_conf import component_logger
from ..models import JobStatus, QueueTask
from ..queue.base import TaskQueue
from ..queue.manager import QueueManager
from ..sources import SourceRegistry
from .rate_limit import SourceThrottle
from .worker import Assignment, TaskOutcome, Worker

PROXY_POOL_EXHAUSTED = "proxy_pool_exhausted"


@dataclass(slots=True)
class Command:
    kind: str
    payload: Any


class Dispatcher:
    """Hand waiting tasks to workers within each source's limits."""

    def __init__(
        self,
        queues: QueueManager,
        registry: JobRegistry,
        sources: SourceRegistry,
        worker: Worker,
        thread_pool: ThreadPoolManager,
        global_config: GlobalConfig,
        clock: Clock | None = None,
    ) -> None:
        self.queues = queues
        self.registry = registry
        self.sources = sources
        self.worker = worker
        self.thread_pool = thread_pool
        self.global_config = global_config
        self.clock = clock or SystemClock()
        self.logger = component_logger("dispatcher")
        self._inbox: SimpleQueue[Command] = SimpleQueue()
        self._throttles: dict[str, SourceThrottle] = {}
        self._source_cache: dict[str, SourceConfig] = {}
        self._cycle_lock = Lock()
        self._stop = Event()
        self._thread: Thread | None = None
        self._job_status: dict[str, JobStatus | None] = {}
        self._orphans: list[QueueTask] = []
        worker.bind(self.task_finished)
        sources.subscribe(self.source_changed)

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------
    def task_finished(self, outcome: TaskOutcome) -> None:
        self._inbox.put(Command("task_finished", outcome))

    def source_changed(self, source_id: str) -> None:
        self._inbox.put(Command("source_changed", source_id))

    def _drain_inbox(self) -> None:
        while True:
            try:
                command = self._inbox.get_nowait()
            except Empty:
                return
            if command.kind == "task_finished":
                self._apply_outcome(command.payload)
            elif command.kind == "source_changed":
                self._refresh_source(command.payload)
            else:
                self.logger.warning("unknown_command", kind=command.kind)

    def _apply_outcome(self, outcome: TaskOutcome) -> None:
        throttle = self._throttles.get(outcome.source_id)
        if throttle is None:
            return
        throttle.task_finished(outcome.task_id)
        if outcome.proxy_id is None:
            return
        now = self.clock.now()
        if outcome.proxy_failure:
            proxy, excluded = throttle.proxies.report_failure(outcome.proxy_id, now)
            if excluded and proxy is not None:
                self.logger.warning(
                    "proxy_excluded",
                    source_id=outcome.source_id,
                    proxy_id=proxy.id,
                    host=proxy.host,
                    cooldown_until=proxy.cooldown_until.isoformat() if proxy.cooldown_until else None,
                )
        else:
            throttle.proxies.report_success(outcome.proxy_id, now)
        self.sources.sync_proxies(outcome.source_id, throttle.proxies.snapshot())
        if throttle.proxies.exhausted(now):
            self._mark_exhausted(throttle)

    def _refresh_source(self, source_id: str) -> None:
        try:
            source = self.sources.get_source(source_id)
        except NotFoundError:
            self._throttles.pop(source_id, None)
            self._source_cache.pop(source_id, None)
            return
        self._source_cache[source_id] = source
        throttle = self._throttles.get(source_id)
        if throttle is not None:
            throttle.reconfigure(source, self.clock.now())

    # ------------------------------------------------------------------
    # Per-source state
    # ------------------------------------------------------------------
    def _source(self, source_id: str) -> SourceConfig | None:
        source = self._source_cache.get(source_id)
        if source is None:
            try:
                source = self.sources.get_source(source_id)
            except NotFoundError:
                return None
            self._source_cache[source_id] = source
        return source

    def _throttle(self, source: SourceConfig, now: datetime) -> SourceThrottle:
        throttle = self._throttles.get(source.id)
        if throttle is None:
            throttle = SourceThrottle.for_source(source, now, self.global_config.proxy_failure_threshold)
            self._throttles[source.id] = throttle
        return throttle

    def _mark_exhausted(self, throttle: SourceThrottle) -> None:
        if throttle.degraded:
            return
        throttle.degraded = True
        self.sources.set_health(throttle.source_id, SourceHealthStatus.DEGRADED, PROXY_POOL_EXHAUSTED)
        paused = self.registry.auto_pause_source_jobs(throttle.source_id, PROXY_POOL_EXHAUSTED)
        self.logger.warning("proxy_pool_exhausted", source_id=throttle.source_id, paused_jobs=paused)

    def _mark_recovered(self, throttle: SourceThrottle) -> None:
        throttle.degraded = False
        self.sources.set_health(throttle.source_id, SourceHealthStatus.HEALTHY)
        self.logger.info("proxy_pool_recovered", source_id=throttle.source_id)

    def throttle_snapshot(self) -> dict[str, dict[str, Any]]:
        now = self.clock.now()
        return {
            source_id: {
                "active": throttle.active,
                "max_concurrent": throttle.policy.max_concurrent,
                "tokens": round(throttle.bucket.available(now), 3),
                "degraded": throttle.degraded,
                "proxies_available": len(throttle.proxies.available(now)),
            }
            for source_id, throttle in self._throttles.items()
        }

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def _accept(self, task: QueueTask) -> bool:
        if task.job_id not in self._job_status:
            job = self.registry.jobs.get(task.job_id)
            self._job_status[task.job_id] = job.status if job is not None else None
        status = self._job_status[task.job_id]
        if status is None or is_terminal(status):
            self._orphans.append(task)
            return False
        return status in DISPATCHABLE_STATUSES

    def _drop_orphans(self, queue: TaskQueue) -> None:
        for task in self._orphans:
            if queue.remove(task.id) is not None:
                self.logger.info("orphan_task_dropped", task_id=task.id, job_id=task.job_id)
        self._orphans.clear()

    def _dispatch_source(self, queue: TaskQueue, source_id: str, now: datetime) -> int:
        source = self._source(source_id)
        if source is None or not source.is_active:
            return 0
        throttle = self._throttle(source, now)
        if throttle.proxies.exhausted(now):
            self._mark_exhausted(throttle)
            return 0
        if throttle.degraded:
            self._mark_recovered(throttle)
        dispatched = 0
        while throttle.has_capacity and throttle.bucket.available(now) >= 1:
            task = queue.dequeue(source_id, now, accept=self._accept)
            self._drop_orphans(queue)
            if task is None:
                break
            throttle.bucket.try_acquire(now)
            proxy = None if throttle.proxies.empty else throttle.proxies.get_proxy(now)
            task.proxy_id = proxy.id if proxy is not None else None
            self.registry.mark_running(task.job_id)
            self._job_status[task.job_id] = JobStatus.RUNNING
            throttle.task_started(task.id)
            executor = self.thread_pool.get(queue.name)
            try:
                executor.submit(self.worker.execute, Assignment(task, source, proxy))
            except RuntimeError:
                throttle.task_finished(task.id)
                self.queues.requeue_task(task)
                self.logger.error("task_submit_failed", task_id=task.id, queue=queue.name)
                break
            dispatched += 1
            self.logger.debug(
                "task_dispatched",
                queue=queue.name,
                task_id=task.id,
                job_id=task.job_id,
                source_id=source_id,
                proxy_id=task.proxy_id,
                attempt=task.attempt,
            )
        return dispatched

    def run_cycle(self) -> int:
        """Drain the inbox, then dispatch what each source's limits allow."""

        with self._cycle_lock:
            self._drain_inbox()
            self._job_status.clear()
            now = self.clock.now()
            dispatched = 0
            for name in self.queues.queue_names:
                queue = self.queues.queue(name)
                if queue.is_paused():
                    continue
                for source_id in queue.ready_sources(now):
                    dispatched += self._dispatch_source(queue, source_id, now)
            return dispatched

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def _loop(self) -> None:
        interval = self.global_config.dispatch_interval_seconds
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception:  # noqa: BLE001
                self.logger.exception("dispatch_cycle_failed")
            self._stop.wait(interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="harvester-dispatcher", daemon=True)
        self._thread.start()
        self.logger.info("dispatcher_started", interval=self.global_config.dispatch_interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            self.logger.info("dispatcher_stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


__all__ = ["Command", "Dispatcher", "PROXY_POOL_EXHAUSTED"]
