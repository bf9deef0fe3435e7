"""Read-only rollups over jobs, sources, records, logs and queues."""

from __future__ import annotations

import hashlib
import json
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable

from .clock import Clock, SystemClock
from .config import GlobalConfig
from .errors import InvalidRequestError
from .infra.repositories import JobRepository, LogRepository, RecordRepository
from .logging_conf import component_logger
from .models import CVRecord, JobStatus, RecordFilter, ScrapingJob
from .queue.manager import QueueManager
from .sources import SourceRegistry

ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.PAUSED)
QUALITY_BOUNDARIES = (0, 20, 40, 60, 80, 101)
REPORT_METRICS = ("jobs", "sources", "cvs", "queues", "performance", "quality", "errors")
TOP_ERRORS = 20


class TTLCache:
    """Small TTL cache with a size bound, aged by an injectable clock."""

    def __init__(self, clock: Clock, ttl: float, maxsize: int = 256) -> None:
        self._clock = clock
        self._ttl = ttl
        self._maxsize = maxsize
        self._cache: dict[str, tuple[Any, datetime]] = {}
        self._lock = Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            if key not in self._cache:
                return None
            value, stored_at = self._cache[key]
            if (self._clock.now() - stored_at).total_seconds() < self._ttl:
                return value
            del self._cache[key]
            return None

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._maxsize:
                oldest = min(self._cache, key=lambda item: self._cache[item][1])
                del self._cache[oldest]
            self._cache[key] = (value, self._clock.now())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> dict[str, Any]:
        return {"size": len(self._cache), "maxsize": self._maxsize, "ttl": self._ttl}


def build_cache_key(name: str, params: dict[str, Any]) -> str:
    blob = json.dumps(params, sort_keys=True, default=str)
    return f"{name}:{hashlib.md5(blob.encode('utf-8')).hexdigest()}"


def _day(moment: datetime | None) -> str | None:
    return moment.strftime("%Y-%m-%d") if moment else None


def _bucket(score: float) -> str:
    for low, high in zip(QUALITY_BOUNDARIES, QUALITY_BOUNDARIES[1:]):
        if low <= score < high:
            return f"{low}-{min(high, 100)}"
    return "other"


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _percentile(values: list[float], fraction: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    index = min(int(round(fraction * (len(ordered) - 1))), len(ordered) - 1)
    return round(ordered[index], 2)


def _job_summary(job: ScrapingJob) -> dict[str, Any]:
    return {
        "id": job.id,
        "name": job.name,
        "status": job.status.value,
        "source_id": job.source_id,
        "progress": job.progress.percentage,
        "found": job.progress.found,
        "validated": job.progress.validated,
        "created_at": job.created_at,
        "completed_at": job.completed_at,
    }


class AnalyticsAggregator:
    """Dashboard and report queries.

    Every public query is cached by name and arguments for
    ``analytics_refresh_seconds``; results may lag the store by at most that
    long. Nothing here writes to a repository.
    """

    def __init__(
        self,
        jobs: JobRepository,
        records: RecordRepository,
        logs: LogRepository,
        sources: SourceRegistry,
        queues: QueueManager,
        global_config: GlobalConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.jobs = jobs
        self.records = records
        self.logs = logs
        self.sources = sources
        self.queues = queues
        self.global_config = global_config or GlobalConfig()
        self.clock = clock or SystemClock()
        self.cache = TTLCache(self.clock, ttl=self.global_config.analytics_refresh_seconds)
        self.logger = component_logger("analytics")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _cached(self, name: str, params: dict[str, Any], compute: Callable[[], Any]) -> Any:
        key = build_cache_key(name, params)
        value = self.cache.get(key)
        if value is not None:
            return value
        value = compute()
        self.cache.set(key, value)
        self.logger.debug("analytics_computed", query=name)
        return value

    def _range(
        self, date_from: datetime | None, date_to: datetime | None, default_days: int
    ) -> tuple[datetime, datetime]:
        date_to = date_to or self.clock.now()
        date_from = date_from or date_to - timedelta(days=default_days)
        if date_from > date_to:
            raise InvalidRequestError("date_from must precede date_to")
        return date_from, date_to

    def _records_between(self, date_from: datetime, date_to: datetime) -> list[CVRecord]:
        spec = RecordFilter(created_from=date_from, created_to=date_to)
        return list(self.records.iter_matching(spec))

    def clear_cache(self) -> None:
        self.cache.clear()

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------
    def get_job_statistics(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        start, end = self._range(date_from, date_to, 30)

        def compute() -> dict[str, Any]:
            jobs = self.jobs.list(created_from=start, created_to=end)
            counts = Counter(job.status for job in jobs)
            finished = [job for job in jobs if job.status in (JobStatus.COMPLETED, JobStatus.FAILED)]
            rates = [
                job.progress.tasks_completed / job.progress.tasks_total * 100
                for job in finished
                if job.progress.tasks_total
            ]
            trends: dict[str, Counter] = defaultdict(Counter)
            for job in jobs:
                trends[_day(job.created_at)][job.status.value] += 1
            return {
                "total": len(jobs),
                "active": sum(counts[status] for status in ACTIVE_STATUSES),
                "completed": counts[JobStatus.COMPLETED],
                "failed": counts[JobStatus.FAILED],
                "pending": counts[JobStatus.PENDING],
                "cancelled": counts[JobStatus.CANCELLED],
                "avg_success_rate": _mean(rates),
                "daily_trends": [
                    {"date": day, "total": sum(by_status.values()), **dict(by_status)}
                    for day, by_status in sorted(trends.items())
                ],
            }

        return self._cached("jobs", {"from": start, "to": end}, compute)

    def get_recent_jobs(self, limit: int = 5) -> list[dict[str, Any]]:
        if limit < 1:
            raise InvalidRequestError("limit must be >= 1")
        return self._cached(
            "recent_jobs", {"limit": limit}, lambda: [_job_summary(job) for job in self.jobs.list()[:limit]]
        )

    def get_hourly_distribution(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> list[dict[str, Any]]:
        """Job starts and records scraped per hour of day."""

        start, end = self._range(date_from, date_to, 7)

        def compute() -> list[dict[str, Any]]:
            hours = [{"hour": hour, "jobs": 0, "records": 0} for hour in range(24)]
            for job in self.jobs.list(created_from=start, created_to=end):
                moment = job.started_at or job.created_at
                if moment is None:
                    continue
                hours[moment.hour]["jobs"] += 1
                hours[moment.hour]["records"] += job.progress.found
            return hours

        return self._cached("hourly", {"from": start, "to": end}, compute)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def get_source_statistics(self) -> dict[str, Any]:
        def compute() -> dict[str, Any]:
            sources = self.sources.repository.list_sources()
            health = Counter(source.health.status.value for source in sources)
            ranked = sorted(sources, key=lambda source: -source.statistics.records_scraped)
            return {
                "total": len(sources),
                "active": sum(1 for source in sources if source.is_active),
                "by_health": dict(health),
                "top_sources": [
                    {
                        "id": source.id,
                        "name": source.name,
                        "records_scraped": source.statistics.records_scraped,
                        "success_rate": source.statistics.success_rate,
                        "health": source.health.status.value,
                    }
                    for source in ranked[:10]
                ],
            }

        return self._cached("sources", {}, compute)

    def get_source_comparison(
        self,
        source_ids: list[str],
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> list[dict[str, Any]]:
        if not source_ids:
            raise InvalidRequestError("at least one source id is required")
        start, end = self._range(date_from, date_to, 30)

        def compute() -> list[dict[str, Any]]:
            wanted = set(source_ids)
            logs = [entry for entry in self.logs.between(start, end) if entry.source_id in wanted]
            rows = []
            for source in self.sources.repository.list_sources():
                if source.id not in wanted:
                    continue
                own = [entry for entry in logs if entry.source_id == source.id]
                kinds = Counter(entry.kind for entry in own)
                fetches = kinds["success"] + kinds["error"]
                durations = [entry.duration_ms for entry in own if entry.duration_ms is not None]
                rows.append(
                    {
                        "id": source.id,
                        "name": source.name,
                        "type": source.type,
                        "records_scraped": source.statistics.records_scraped,
                        "lifetime_success_rate": source.statistics.success_rate,
                        "period_fetches": fetches,
                        "period_records": sum(entry.records for entry in own if entry.kind == "success"),
                        "period_success_rate": round(kinds["success"] / fetches * 100, 2) if fetches else 0.0,
                        "avg_response_ms": _mean(durations),
                        "health": source.health.status.value,
                    }
                )
            return rows

        return self._cached("compare", {"ids": sorted(source_ids), "from": start, "to": end}, compute)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    def get_cv_statistics(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        start, end = self._range(date_from, date_to, 30)

        def compute() -> dict[str, Any]:
            now = self.clock.now()
            today = now.replace(hour=0, minute=0, second=0, microsecond=0)
            by_source: Counter = Counter()
            quality: Counter = Counter()
            trends: Counter = Counter()
            total = created_today = 0
            for record in self.records.iter_matching():
                total += 1
                by_source[record.source_id or "unknown"] += 1
                quality[_bucket(record.quality_score)] += 1
                if record.created_at and record.created_at >= today:
                    created_today += 1
                if record.created_at and start <= record.created_at <= end:
                    trends[_day(record.created_at)] += 1
            return {
                "total": total,
                "today": created_today,
                "by_status": self.records.count_by_status(),
                "by_source": dict(by_source.most_common()),
                "daily_trends": [{"date": day, "count": count} for day, count in sorted(trends.items())],
                "quality_distribution": {
                    _bucket(low): quality.get(_bucket(low), 0) for low in QUALITY_BOUNDARIES[:-1]
                },
            }

        return self._cached("cvs", {"from": start, "to": end}, compute)

    def get_quality_trends(self, days: int = 30) -> list[dict[str, Any]]:
        if days < 1:
            raise InvalidRequestError("days must be >= 1")

        def compute() -> list[dict[str, Any]]:
            end = self.clock.now()
            grouped: dict[str, list[CVRecord]] = defaultdict(list)
            for record in self._records_between(end - timedelta(days=days), end):
                grouped[_day(record.created_at)].append(record)
            return [
                {
                    "date": day,
                    "count": len(records),
                    "avg_quality": _mean([record.quality_score for record in records]),
                    "avg_completeness": _mean([record.completeness for record in records]),
                    "duplicates": sum(1 for record in records if record.duplicate_of),
                }
                for day, records in sorted(grouped.items())
            ]

        return self._cached("quality_trends", {"days": days}, compute)

    # ------------------------------------------------------------------
    # Queues, performance and errors
    # ------------------------------------------------------------------
    def get_queue_overview(self) -> dict[str, Any]:
        def compute() -> dict[str, Any]:
            statuses = self.queues.get_all_queue_statuses()
            totals: Counter = Counter()
            for status in statuses.values():
                totals.update(status["counts"])
            return {"totals": dict(totals), "queues": statuses}

        return self._cached("queues", {}, compute)

    def get_performance_metrics(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        start, end = self._range(date_from, date_to, 7)

        def compute() -> dict[str, Any]:
            logs = self.logs.between(start, end)
            durations = [
                entry.duration_ms
                for entry in logs
                if entry.kind in ("success", "error") and entry.duration_ms is not None
            ]
            per_day: dict[str, Counter] = defaultdict(Counter)
            for entry in logs:
                if entry.kind in ("success", "error"):
                    per_day[_day(entry.created_at)][entry.kind] += 1
                    per_day[_day(entry.created_at)]["records"] += entry.records
            throughput = []
            for job in self.jobs.list(statuses=[JobStatus.COMPLETED], created_from=start, created_to=end):
                seconds = job.duration_seconds
                if seconds:
                    throughput.append(job.progress.found / (seconds / 3600))
            return {
                "response_time": {
                    "avg_ms": _mean(durations),
                    "min_ms": round(min(durations), 2) if durations else 0.0,
                    "max_ms": round(max(durations), 2) if durations else 0.0,
                    "p95_ms": _percentile(durations, 0.95),
                    "samples": len(durations),
                },
                "throughput": {
                    "avg_records_per_hour": _mean(throughput),
                    "jobs_measured": len(throughput),
                },
                "daily": [
                    {
                        "date": day,
                        "requests": counts["success"] + counts["error"],
                        "errors": counts["error"],
                        "records": counts["records"],
                        "error_rate": round(
                            counts["error"] / (counts["success"] + counts["error"]) * 100, 2
                        )
                        if counts["success"] + counts["error"]
                        else 0.0,
                    }
                    for day, counts in sorted(per_day.items())
                ],
            }

        return self._cached("performance", {"from": start, "to": end}, compute)

    def get_error_analysis(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        start, end = self._range(date_from, date_to, 7)

        def compute() -> dict[str, Any]:
            errors = self.logs.between(start, end, kind="error")
            by_type = Counter(entry.error_type or "unknown" for entry in errors)
            trends: dict[str, Counter] = defaultdict(Counter)
            for entry in errors:
                trends[_day(entry.created_at)][entry.error_type or "unknown"] += 1
            recent = sorted(errors, key=lambda entry: entry.created_at or start, reverse=True)
            return {
                "total": len(errors),
                "by_type": [{"error_type": name, "count": count} for name, count in by_type.most_common()],
                "trends": [{"date": day, **dict(counts)} for day, counts in sorted(trends.items())],
                "top_errors": [
                    {
                        "job_id": entry.job_id,
                        "source_id": entry.source_id,
                        "error_type": entry.error_type,
                        "message": entry.message,
                        "created_at": entry.created_at,
                    }
                    for entry in recent[:TOP_ERRORS]
                ],
            }

        return self._cached("errors", {"from": start, "to": end}, compute)

    # ------------------------------------------------------------------
    # Composites
    # ------------------------------------------------------------------
    def get_dashboard_overview(
        self, date_from: datetime | None = None, date_to: datetime | None = None
    ) -> dict[str, Any]:
        start, end = self._range(date_from, date_to, 30)
        jobs = self.get_job_statistics(start, end)
        sources = self.get_source_statistics()
        cvs = self.get_cv_statistics(start, end)
        queues = self.get_queue_overview()
        return {
            "summary": {
                "total_jobs": jobs["total"],
                "active_jobs": jobs["active"],
                "total_sources": sources["total"],
                "active_sources": sources["active"],
                "total_cvs": cvs["total"],
                "cvs_today": cvs["today"],
                "queued_tasks": queues["totals"].get("waiting", 0) + queues["totals"].get("delayed", 0),
            },
            "jobs": jobs,
            "sources": sources,
            "cvs": cvs,
            "queues": queues,
            "recent_jobs": self.get_recent_jobs(),
            "generated_at": self.clock.now(),
        }

    def generate_report(
        self,
        metrics: list[str],
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> dict[str, Any]:
        """Assemble the requested sections into one report."""

        unknown = [metric for metric in metrics if metric not in REPORT_METRICS]
        if not metrics or unknown:
            raise InvalidRequestError(
                f"metrics must be chosen from {', '.join(REPORT_METRICS)}"
                + (f"; unknown: {', '.join(unknown)}" if unknown else "")
            )
        start, end = self._range(date_from, date_to, 30)
        builders: dict[str, Callable[[], Any]] = {
            "jobs": lambda: self.get_job_statistics(start, end),
            "sources": self.get_source_statistics,
            "cvs": lambda: self.get_cv_statistics(start, end),
            "queues": self.get_queue_overview,
            "performance": lambda: self.get_performance_metrics(start, end),
            "quality": lambda: self.get_quality_trends(max((end - start).days, 1)),
            "errors": lambda: self.get_error_analysis(start, end),
        }
        return {
            "date_range": {"from": start, "to": end},
            "generated_at": self.clock.now(),
            "metrics": {metric: builders[metric]() for metric in dict.fromkeys(metrics)},
        }


__all__ = ["AnalyticsAggregator", "REPORT_METRICS", "TTLCache", "build_cache_key"]
