from __future__ import annotations

from cv_harvester.config import SourceHealthStatus
from cv_harvester.engine.fetcher import FetchError
from cv_harvester.models import JobStatus, RecordFilter, TaskState
from cv_harvester.scheduler.dispatcher import PROXY_POOL_EXHAUSTED


def _always(error: FetchError):
    return lambda source, request, proxy: error


def test_successful_job_completes_with_counters(harvester, make_job, drive) -> None:
    job = make_job(start=True, config={"pages": 3, "page_size": 10})

    finished = drive(job.id)

    assert finished.status is JobStatus.COMPLETED
    assert finished.progress.tasks_completed == 3
    assert finished.progress.found == 6
    assert finished.progress.validated == 6
    assert finished.progress.duplicate == 0
    assert finished.status_reason is None
    assert finished.completed_at is not None
    stored = harvester.record_repository.count_matching(RecordFilter(job_id=job.id))
    assert stored == 6
    source = harvester.sources.get_source(job.source_id)
    assert source.statistics.successful_fetches == 3
    assert source.statistics.records_scraped == 6
    assert source.health.status is SourceHealthStatus.HEALTHY
    messages = [entry.message for entry in harvester.jobs.get_job_logs(job.id)]
    assert "Fetched 2 record(s)" in messages


def test_records_are_mapped_from_provider_fields(harvester, make_job, drive) -> None:
    job = make_job(start=True, config={"pages": 1, "page_size": 10})
    drive(job.id)

    records = list(harvester.record_repository.iter_matching(RecordFilter(job_id=job.id)))

    assert sorted(record.full_name for record in records) == ["Candidate 1-0", "Candidate 1-1"]
    record = records[0]
    assert record.current_title == "Backend Engineer"
    assert record.current_company == "Acme"
    assert record.skills == ["python", "sql"]
    assert record.source_id == job.source_id
    assert record.raw["title"] == "Backend Engineer"


def test_repeated_pages_are_flagged_as_duplicates(harvester, make_source, make_job, drive) -> None:
    source = make_source()
    first = make_job(source=source, start=True, config={"pages": 1, "page_size": 10})
    drive(first.id)
    second = make_job(source=source, start=True, name="Again", config={"pages": 1, "page_size": 10})

    finished = drive(second.id)

    assert finished.progress.found == 2
    assert finished.progress.duplicate == 2
    assert finished.progress.validated == 0


def test_rate_limit_spreads_dispatch_over_time(harvester, make_source, make_job, clock) -> None:
    source = make_source(rate_limit={"requests_per_minute": 2, "burst_limit": 2, "max_concurrent": 5})
    make_job(source=source, start=True, config={"pages": 5, "page_size": 10})

    dispatched = [harvester.dispatcher.run_cycle(), harvester.dispatcher.run_cycle()]
    clock.advance(30)
    dispatched.append(harvester.dispatcher.run_cycle())

    assert dispatched == [2, 0, 1]
    snapshot = harvester.dispatcher.throttle_snapshot()[source.id]
    assert snapshot["max_concurrent"] == 5
    assert snapshot["tokens"] == 0.0


def test_failing_source_becomes_unhealthy(harvester, make_job, fetcher, drive) -> None:
    fetcher.handler = _always(FetchError("Provider error 502", error_type="server_error"))
    job = make_job(start=True, max_retries=5, config={"pages": 1, "page_size": 10})

    failed = drive(job.id, step_seconds=60.0)

    assert failed.status is JobStatus.FAILED
    assert failed.status_reason == "Provider error 502"
    source = harvester.sources.get_source(job.source_id)
    assert source.statistics.failed_fetches == 5
    assert source.health.status is SourceHealthStatus.UNHEALTHY
    assert source.health.error_message == "Provider error 502"


def test_exhausted_proxy_pool_pauses_source_jobs(harvester, make_source, make_job, fetcher, clock, profiles) -> None:
    source = make_source(proxies=[{"host": "10.0.0.1", "port": 8080}])
    proxy_id = source.proxies[0].id
    fetcher.handler = _always(FetchError("Proxy rejected request (407)", proxy_failure=True, error_type="proxy_error"))
    job = make_job(source=source, start=True, config={"pages": 1, "page_size": 10})

    harvester.dispatcher.run_cycle()
    harvester.dispatcher.run_cycle()

    paused = harvester.jobs.get_job(job.id)
    assert paused.status is JobStatus.PAUSED
    assert paused.status_reason == PROXY_POOL_EXHAUSTED
    assert {call["proxy_id"] for call in fetcher.calls} == {proxy_id}
    task = harvester.queues.tasks_for_job(job.id)[0]
    assert task.state is TaskState.WAITING
    assert task.attempt == 0
    stored = harvester.sources.get_source(source.id)
    assert stored.health.status is SourceHealthStatus.DEGRADED
    assert stored.health.error_message == PROXY_POOL_EXHAUSTED
    assert stored.proxies[0].cooldown_until is not None

    clock.advance(301)
    assert harvester.dispatcher.run_cycle() == 0
    assert harvester.sources.get_source(source.id).health.status is SourceHealthStatus.HEALTHY
    assert harvester.jobs.get_job(job.id).status is JobStatus.PAUSED

    fetcher.handler = lambda source, request, proxy: profiles(request.page)
    harvester.jobs.resume_job(job.id)
    harvester.dispatcher.run_cycle()
    assert harvester.jobs.get_job(job.id).status is JobStatus.COMPLETED


def test_source_without_proxies_connects_directly(harvester, make_job, fetcher, drive) -> None:
    job = make_job(start=True)
    drive(job.id)
    assert {call["proxy_id"] for call in fetcher.calls} == {None}


def test_cancel_during_fetch_discards_result(harvester, make_job, fetcher, profiles) -> None:
    job = make_job(start=True)

    def cancel_then_return(source, request, proxy):
        harvester.jobs.cancel_job(job.id, actor="tester")
        return profiles(request.page)

    fetcher.handler = cancel_then_return
    harvester.dispatcher.run_cycle()

    cancelled = harvester.jobs.get_job(job.id)
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.progress.found == 0
    assert cancelled.progress.tasks_completed == 0
    assert len(fetcher.calls) == 1
    assert harvester.record_repository.count_matching(RecordFilter(job_id=job.id)) == 0
    [task] = harvester.queues.tasks_for_job(job.id)
    assert task.state is TaskState.COMPLETED
    assert task.result == {"discarded": "job_finished_during_fetch"}


def test_inactive_source_is_skipped(harvester, make_job, fetcher) -> None:
    job = make_job(start=True)
    harvester.sources.toggle_source_status(job.source_id, enabled=False)

    assert harvester.dispatcher.run_cycle() == 0

    harvester.sources.toggle_source_status(job.source_id, enabled=True)
    assert harvester.dispatcher.run_cycle() == 2
    assert len(fetcher.calls) == 2


def test_paused_queue_is_skipped(harvester, make_job) -> None:
    make_job(start=True)
    harvester.queues.pause_queue("cv-scraping")
    assert harvester.dispatcher.run_cycle() == 0
    harvester.queues.resume_queue("cv-scraping")
    assert harvester.dispatcher.run_cycle() == 2


def test_run_job_drives_until_finished(harvester, make_job) -> None:
    job = make_job(start=True)
    seen: list[JobStatus] = []

    finished = harvester.run_job(job.id, timeout=5.0, on_cycle=lambda current: seen.append(current.status))

    assert finished.status is JobStatus.COMPLETED
    assert seen[-1] is JobStatus.COMPLETED


def test_restarted_process_finishes_recovered_job(harvester, harvester_factory, make_job, clock) -> None:
    job = make_job(start=True)
    restarted = harvester_factory()

    assert restarted.jobs.recover_orphaned_tasks() == [job.id]
    for _ in range(5):
        restarted.dispatcher.run_cycle()
        clock.advance(30)

    finished = restarted.jobs.get_job(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.progress.found == 4


def test_unmappable_payload_frees_slot(harvester, make_source, make_job, fetcher, profiles, drive) -> None:
    source = make_source(rate_limit={"requests_per_minute": 60, "burst_limit": 5, "max_concurrent": 1})

    def handler(source, request, proxy):
        if request.page == 1:
            return [profiles(1)[0], 5]
        return profiles(request.page)

    fetcher.handler = handler
    job = make_job(source=source, start=True, config={"pages": 2, "page_size": 10})

    finished = drive(job.id)

    assert finished.status is JobStatus.COMPLETED
    assert finished.status_reason == "partial: 1 failed"
    assert finished.progress.tasks_failed == 1
    assert finished.progress.found == 2
    assert finished.errors == {"processing_error": 1}
    assert sorted(call["page"] for call in fetcher.calls) == [1, 2]
    states = {task.payload["page"]: task.state for task in harvester.queues.tasks_for_job(job.id)}
    assert states == {1: TaskState.FAILED, 2: TaskState.COMPLETED}
    assert harvester.queues.active_count(source.id) == 0
    assert harvester.dispatcher.run_cycle() == 0
    assert harvester.dispatcher.throttle_snapshot()[source.id]["active"] == 0
    errors = [entry for entry in harvester.jobs.get_job_logs(job.id) if entry.error_type == "processing_error"]
    assert len(errors) == 1
    assert harvester.sources.get_source(source.id).statistics.failed_fetches == 1
