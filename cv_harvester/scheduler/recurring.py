"""Start scheduled jobs when their trigger fires."""

from __future__ import annotations

from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..audit import SYSTEM_ACTOR
from ..clock import Clock, SystemClock
from ..errors import HarvesterError
from ..jobs.registry import JobRegistry
from ..logging_conf import component_logger
from ..models import JobStatus, ScrapingJob
from .triggers import following_fire_time

TICK_JOB_ID = "harvester::recurring-tick"


class RecurringScheduler:
    """Drive job schedules from an injectable clock.

    Trigger arithmetic is delegated to APScheduler triggers; ``tick`` decides
    what is due against ``clock.now()`` so tests can step time by hand. A
    recurring job that is still running when its next fire time passes is
    cloned once it finishes, never concurrently.
    """

    def __init__(
        self,
        registry: JobRegistry,
        clock: Clock | None = None,
        tick_seconds: float = 30.0,
    ) -> None:
        self.registry = registry
        self.clock = clock or SystemClock()
        self.tick_seconds = tick_seconds
        self.logger = component_logger("recurring")
        self.scheduler: BackgroundScheduler | None = None

    def _advance(self, job: ScrapingJob, now: datetime) -> None:
        upcoming = None
        if job.schedule.recurring and job.schedule.next_run_at is not None:
            upcoming = following_fire_time(job.schedule, now, job.schedule.next_run_at)
        self.registry.schedule_next_run(job.id, upcoming)

    def _start_due(self, now: datetime) -> list[str]:
        started: list[str] = []
        for job in self.registry.get_scheduled_jobs():
            due = job.schedule.next_run_at
            if due is None or due > now:
                break
            if not job.schedule.in_window(now):
                self.registry.schedule_next_run(job.id, None)
                self.logger.info("scheduled_job_window_closed", job_id=job.id)
                continue
            try:
                self.registry.start_job(job.id, actor=SYSTEM_ACTOR)
            except HarvesterError as exc:
                self.logger.warning("scheduled_start_failed", job_id=job.id, error=str(exc))
                continue
            self._advance(job, now)
            started.append(job.id)
        return started

    def _rerun_finished(self, now: datetime) -> list[str]:
        started: list[str] = []
        for job in self.registry.jobs.list(statuses=[JobStatus.COMPLETED, JobStatus.FAILED]):
            due = job.schedule.next_run_at
            if not job.schedule.recurring or due is None or due > now:
                continue
            self.registry.schedule_next_run(job.id, None)
            if not job.schedule.in_window(now):
                continue
            try:
                clone = self.registry.clone_job(job.id, actor=SYSTEM_ACTOR, overrides={"name": job.name})
                self.registry.start_job(clone.id, actor=SYSTEM_ACTOR)
            except HarvesterError as exc:
                self.logger.warning("recurring_rerun_failed", job_id=job.id, error=str(exc))
                continue
            self.registry.schedule_next_run(clone.id, following_fire_time(clone.schedule, now, due))
            started.append(clone.id)
        return started

    def tick(self) -> list[str]:
        """Start everything due at ``clock.now()``; returns the started job ids."""

        now = self.clock.now()
        started = self._start_due(now) + self._rerun_finished(now)
        if started:
            self.logger.info("scheduled_jobs_started", jobs=started)
        return started

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.scheduler is not None:
            return
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self.logger.info("recurring_scheduler_started", tick_seconds=self.tick_seconds)

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            self.logger.info("recurring_scheduler_stopped")

    def list_jobs(self) -> list[dict]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_at": job.schedule.next_run_at,
                "trigger": job.schedule.trigger.model_dump(),
            }
            for job in self.registry.get_scheduled_jobs()
        ]


__all__ = ["RecurringScheduler", "TICK_JOB_ID"]
