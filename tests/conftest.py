"""Shared fixtures: isolated home directory, manual clock, scripted fetchers and executors."""

from __future__ import annotations

import os
from concurrent.futures import Executor, Future
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Iterable

import pytest

from cv_harvester.audit import MemoryAuditSink
from cv_harvester.clock import ManualClock
from cv_harvester.config import ConfigLocator, ConfigRepository
from cv_harvester.engine.fetcher import FetcherRegistry, FetchRequest, FetchResult
from cv_harvester.models import CVRecord, JobStatus
from cv_harvester.service import Harvester


@pytest.fixture(scope="session", autouse=True)
def _session_home(tmp_path_factory: pytest.TempPathFactory) -> Iterable[Path]:
    # Logging is configured once per process; point it at a throwaway directory.
    home = tmp_path_factory.mktemp("harvester-home")
    previous = os.environ.get("CV_HARVESTER_HOME")
    os.environ["CV_HARVESTER_HOME"] = str(home)
    yield home
    if previous is None:
        os.environ.pop("CV_HARVESTER_HOME", None)
    else:
        os.environ["CV_HARVESTER_HOME"] = previous


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("CV_HARVESTER_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def audit() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def config_repository(home: Path) -> ConfigRepository:
    return ConfigRepository(ConfigLocator(project_root=home))


class InlineExecutor(Executor):
    """Run submitted callables immediately on the calling thread."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        return None


class DeferredExecutor(Executor):
    """Hold submitted callables until the test releases them."""

    def __init__(self) -> None:
        self.pending: list[tuple[Future, Callable[..., Any], tuple, dict]] = []
        self._lock = Lock()

    def submit(self, fn: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        with self._lock:
            self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self) -> int:
        with self._lock:
            batch, self.pending = self.pending, []
        for future, fn, args, kwargs in batch:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:  # noqa: BLE001
                future.set_exception(exc)
        return len(batch)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False) -> None:
        if wait:
            self.run_pending()


def make_profiles(page: int, count: int = 2) -> list[dict[str, Any]]:
    return [
        {
            "name": f"Candidate {page}-{index}",
            "email": f"candidate{page}.{index}@example.com",
            "phone": f"+1 555 010 {page:02d}{index:02d}",
            "title": "Backend Engineer",
            "company": "Acme",
            "location": "Berlin",
            "skills": ["python", "sql"],
        }
        for index in range(count)
    ]


class ScriptedFetcher:
    """Fetcher double; ``handler`` returns raw profiles or an exception to raise."""

    def __init__(self, handler: Callable[..., Any] | None = None) -> None:
        self.handler = handler or (lambda source, request, proxy: make_profiles(request.page))
        self.calls: list[dict[str, Any]] = []
        self._lock = Lock()

    def fetch(self, source, request: FetchRequest, proxy) -> FetchResult:
        with self._lock:
            self.calls.append(
                {"source_id": source.id, "page": request.page, "proxy_id": proxy.id if proxy else None}
            )
        outcome = self.handler(source, request, proxy)
        if isinstance(outcome, Exception):
            raise outcome
        return FetchResult(records=list(outcome), status_code=200, duration_ms=12.5)


@pytest.fixture
def fetcher() -> ScriptedFetcher:
    return ScriptedFetcher()


@pytest.fixture
def executor() -> Executor:
    """Executor behind every pool; modules override it with :class:`DeferredExecutor`."""

    return InlineExecutor()


@pytest.fixture
def harvester_factory(
    home: Path, clock: ManualClock, audit: MemoryAuditSink, fetcher: ScriptedFetcher, executor: Executor
) -> Iterable[Callable[[], Harvester]]:
    """Build harvesters over the same home, e.g. to simulate a process restart."""

    built: list[Harvester] = []

    def factory() -> Harvester:
        harvester = Harvester.from_home(
            home,
            clock=clock,
            audit=audit,
            fetchers=FetcherRegistry({"listing_api": fetcher}),
            executor_factory=lambda name, workers: executor,
        )
        built.append(harvester)
        return harvester

    yield factory
    for harvester in built:
        harvester.shutdown()


@pytest.fixture
def harvester(harvester_factory) -> Harvester:
    return harvester_factory()


@pytest.fixture
def make_source(harvester: Harvester) -> Callable[..., Any]:
    def factory(name: str = "Talent API", **overrides: Any):
        payload = {"name": name, "type": "listing_api", "api_url": "https://api.example.com/cvs"}
        payload.update(overrides)
        return harvester.sources.create_source(payload, actor="tester")

    return factory


@pytest.fixture
def make_job(harvester: Harvester, make_source) -> Callable[..., Any]:
    def factory(source=None, start: bool = False, **overrides: Any):
        source = source or make_source()
        spec = {"name": "Weekly sweep", "source_id": source.id, "config": {"pages": 2, "page_size": 10}}
        spec.update(overrides)
        return harvester.jobs.create_job(spec, actor="tester", start=start)

    return factory


def drive(
    harvester: Harvester,
    clock: ManualClock,
    job_id: str,
    cycles: int = 20,
    step_seconds: float = 30.0,
) -> Any:
    """Run dispatch cycles, stepping the clock, until the job leaves queued/running."""

    job = harvester.jobs.get_job(job_id)
    for _ in range(cycles):
        harvester.dispatcher.run_cycle()
        job = harvester.jobs.get_job(job_id)
        if job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
            return job
        clock.advance(step_seconds)
    return job


def make_record(clock: ManualClock, **fields: Any) -> CVRecord:
    now = clock.now()
    record = CVRecord(created_at=now, updated_at=now, **fields)
    record.content_hash = record.compute_hash()
    return record


@pytest.fixture(name="drive")
def drive_fixture(harvester: Harvester, clock: ManualClock) -> Callable[..., Any]:
    def run(job_id: str, cycles: int = 20, step_seconds: float = 30.0) -> Any:
        return drive(harvester, clock, job_id, cycles, step_seconds)

    return run


@pytest.fixture
def record_factory(clock: ManualClock) -> Callable[..., CVRecord]:
    return lambda **fields: make_record(clock, **fields)


@pytest.fixture
def deferred_executor() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def profiles() -> Callable[..., list[dict[str, Any]]]:
    return make_profiles
