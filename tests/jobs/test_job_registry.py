from __future__ import annotations

import pytest

from cv_harvester.engine.fetcher import FetchError
from cv_harvester.errors import InvalidRequestError, InvalidTransitionError, NotFoundError
from cv_harvester.models import JobStatus, TaskState


def test_create_job_starts_pending_and_emits_audit(harvester, make_job, audit) -> None:
    job = make_job()
    assert job.status is JobStatus.PENDING
    assert job.queue_name == "cv-scraping"
    assert job.created_by == "tester"
    assert job.progress.tasks_total == 0
    assert "job.create" in audit.actions()


def test_create_job_rejects_unknown_source(harvester) -> None:
    with pytest.raises(InvalidRequestError):
        harvester.jobs.create_job({"name": "Orphan", "source_id": "missing"})


def test_create_job_rejects_unknown_queue(harvester, make_source) -> None:
    source = make_source()
    with pytest.raises(InvalidRequestError):
        harvester.jobs.create_job({"name": "Lost", "source_id": source.id, "queue_name": "nowhere"})


def test_start_job_plans_one_task_per_page(harvester, make_job) -> None:
    job = make_job(config={"pages": 3, "page_size": 25})
    started = harvester.jobs.start_job(job.id, actor="tester")

    assert started.status is JobStatus.QUEUED
    assert started.progress.tasks_total == 3
    tasks = harvester.queues.tasks_for_job(job.id)
    assert sorted(task.payload["page"] for task in tasks) == [1, 2, 3]
    assert {task.payload["page_size"] for task in tasks} == {25}
    assert all(task.max_attempts == job.max_retries for task in tasks)
    logs = harvester.jobs.get_job_logs(job.id)
    assert any("3 new task" in entry.message for entry in logs)


def test_invalid_transitions_leave_job_untouched(harvester, make_job) -> None:
    job = make_job()
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.pause_job(job.id)
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.resume_job(job.id)
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.retry_job(job.id)

    stored = harvester.jobs.get_job(job.id)
    assert stored.status is JobStatus.PENDING
    assert stored.version == job.version
    assert harvester.queues.tasks_for_job(job.id) == []


def test_starting_a_queued_job_twice_is_rejected(harvester, make_job) -> None:
    job = make_job(start=True)
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.start_job(job.id)
    assert len(harvester.queues.tasks_for_job(job.id)) == 2


def test_pause_then_resume_restores_queued_with_same_counters(harvester, make_job) -> None:
    job = make_job(start=True, config={"pages": 3, "page_size": 10})
    harvester.dispatcher.run_cycle()
    running = harvester.jobs.get_job(job.id)
    assert running.status is JobStatus.RUNNING
    assert running.progress.tasks_completed == 2

    paused = harvester.jobs.pause_job(job.id, actor="tester")
    assert paused.status is JobStatus.PAUSED
    resumed = harvester.jobs.resume_job(job.id, actor="tester")

    assert resumed.status is JobStatus.QUEUED
    assert resumed.progress == running.progress
    assert len(harvester.queues.tasks_for_job(job.id)) == 3


def test_paused_job_tasks_are_not_dispatched(harvester, make_job, fetcher) -> None:
    job = make_job(start=True)
    harvester.jobs.pause_job(job.id)
    assert harvester.dispatcher.run_cycle() == 0
    assert fetcher.calls == []
    assert harvester.jobs.get_job(job.id).status is JobStatus.PAUSED


def test_cancel_drops_waiting_tasks(harvester, make_job, audit) -> None:
    job = make_job(start=True)
    cancelled = harvester.jobs.cancel_job(job.id, actor="tester", reason="no longer needed")

    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.cancelled_at is not None
    assert harvester.queues.tasks_for_job(job.id) == []
    assert audit.actions()[-1] == "job.cancel"
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.resume_job(job.id)


def test_bulk_cancel_reports_each_job(harvester, make_source, make_job, drive) -> None:
    source = make_source()
    finished = make_job(source=source, start=True, name="Finished", config={"pages": 1, "page_size": 10})
    assert drive(finished.id).status is JobStatus.COMPLETED
    running = make_job(source=source, start=True, name="Running", config={"pages": 4, "page_size": 10})
    harvester.dispatcher.run_cycle()
    assert harvester.jobs.get_job(running.id).status is JobStatus.RUNNING

    results = harvester.jobs.bulk_operation("cancel", [running.id, finished.id, "missing"], actor="tester")

    by_id = {item["job_id"]: item for item in results}
    assert by_id[running.id] == {"job_id": running.id, "success": True, "status": "cancelled"}
    assert by_id[finished.id]["success"] is False
    assert "completed" in by_id[finished.id]["error"]
    assert by_id["missing"]["success"] is False
    assert harvester.jobs.get_job(finished.id).status is JobStatus.COMPLETED


def test_bulk_operation_rejects_unknown_operation(harvester) -> None:
    with pytest.raises(InvalidRequestError):
        harvester.jobs.bulk_operation("explode", ["a"])


def test_always_failing_fetch_fails_job_after_max_retries(harvester, make_job, fetcher, drive) -> None:
    fetcher.handler = lambda source, request, proxy: FetchError("Provider error 503", error_type="server_error")
    job = make_job(start=True, max_retries=3, config={"pages": 1, "page_size": 10})

    failed = drive(job.id)

    assert failed.status is JobStatus.FAILED
    assert failed.attempt == 3
    assert failed.last_error_reason == "Provider error 503"
    assert failed.errors == {"server_error": 3}
    assert failed.progress.tasks_failed == 1
    assert len(fetcher.calls) == 3
    counts = harvester.queues.get_queue_status("cv-scraping")["counts"]
    assert counts["failed"] == 1


def test_retry_job_grants_one_more_attempt_until_exhausted(harvester, make_job, fetcher, drive) -> None:
    fetcher.handler = lambda source, request, proxy: FetchError("Provider error 503", error_type="server_error")
    job = make_job(start=True, max_retries=3, config={"pages": 1, "page_size": 10})
    drive(job.id)

    retried = harvester.jobs.retry_job(job.id, actor="tester")
    assert retried.status is JobStatus.QUEUED
    assert retried.attempt == 4
    assert retried.progress.tasks_failed == 0

    again = drive(job.id)
    assert again.status is JobStatus.FAILED
    assert len(fetcher.calls) == 4
    with pytest.raises(InvalidTransitionError):
        harvester.jobs.retry_job(job.id)


def test_job_with_partial_failures_completes(harvester, make_job, fetcher, profiles, drive) -> None:
    def handler(source, request, proxy):
        if request.page == 2:
            return FetchError("Unexpected status 404", retryable=False, error_type="client_error")
        return profiles(request.page)

    fetcher.handler = handler
    job = make_job(start=True)

    finished = drive(job.id)

    assert finished.status is JobStatus.COMPLETED
    assert finished.progress.tasks_completed == 1
    assert finished.progress.tasks_failed == 1
    assert finished.progress.found == 2
    assert finished.errors == {"client_error": 1}
    assert finished.status_reason == "partial: 1 failed"


def test_clone_job_copies_spec_only(harvester, make_job) -> None:
    job = make_job(start=True, tags=["weekly"])
    clone = harvester.jobs.clone_job(job.id, actor="tester")

    assert clone.id != job.id
    assert clone.name == "Weekly sweep (Copy)"
    assert clone.parent_job_id == job.id
    assert clone.status is JobStatus.PENDING
    assert clone.progress.tasks_total == 0
    assert clone.tags == ["weekly"]


def test_update_job_guards_fields(harvester, make_job) -> None:
    job = make_job()
    updated = harvester.jobs.update_job(job.id, {"name": "Renamed", "config": {"pages": 5, "page_size": 10}})
    assert updated.name == "Renamed"
    assert updated.config.pages == 5

    with pytest.raises(InvalidRequestError):
        harvester.jobs.update_job(job.id, {"status": "completed"})

    harvester.jobs.start_job(job.id)
    with pytest.raises(InvalidRequestError):
        harvester.jobs.update_job(job.id, {"max_retries": 5})
    assert harvester.jobs.get_job(job.id).max_retries == 3


def test_delete_job_removes_tasks_and_logs(harvester, make_job) -> None:
    job = make_job(start=True)
    harvester.jobs.delete_job(job.id, actor="tester")

    with pytest.raises(NotFoundError):
        harvester.jobs.get_job(job.id)
    assert harvester.queues.tasks_for_job(job.id) == []
    assert harvester.log_repository.for_job(job.id) == []


def test_delete_running_job_is_rejected(harvester, make_job) -> None:
    job = make_job(start=True, config={"pages": 3, "page_size": 10})
    harvester.dispatcher.run_cycle()
    with pytest.raises(InvalidRequestError):
        harvester.jobs.delete_job(job.id)


def test_list_jobs_filters_and_paginates(harvester, make_source, make_job) -> None:
    source = make_source()
    for index in range(5):
        make_job(source=source, name=f"Sweep {index}", start=index % 2 == 0)

    queued = harvester.jobs.list_jobs({"status": "queued"}, page=1, limit=2)
    assert queued["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}
    assert all(job.status is JobStatus.QUEUED for job in queued["jobs"])

    searched = harvester.jobs.list_jobs({"search": "sweep 4"})
    assert [job.name for job in searched["jobs"]] == ["Sweep 4"]

    with pytest.raises(InvalidRequestError):
        harvester.jobs.list_jobs({"status": "bogus"})


def test_statistics_summarise_outcomes(harvester, make_job, drive) -> None:
    job = make_job(start=True)
    drive(job.id)
    stats = harvester.jobs.get_statistics()

    assert stats["total"] == 1
    assert stats["by_status"] == {"completed": 1}
    assert stats["success_rate"] == 100.0
    assert stats["records"]["found"] == 4
    assert stats["records"]["validated"] == 4


def test_recover_orphaned_tasks_replans_after_restart(harvester, harvester_factory, make_job) -> None:
    job = make_job(start=True)
    restarted = harvester_factory()
    assert restarted.queues.tasks_for_job(job.id) == []

    recovered = restarted.jobs.recover_orphaned_tasks()

    assert recovered == [job.id]
    tasks = restarted.queues.tasks_for_job(job.id)
    assert len(tasks) == 2
    assert {task.state for task in tasks} == {TaskState.WAITING}
