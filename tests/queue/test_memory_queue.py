from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cv_harvester.errors import InvalidRequestError
from cv_harvester.models import QueueTask, TaskState
from cv_harvester.queue.memory import InMemoryQueue

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _task(name: str, priority: int = 3, source_id: str = "talent-api", **extra) -> QueueTask:
    return QueueTask(
        queue_name="cv-scraping",
        job_id="job-1",
        source_id=source_id,
        payload={"page": 1, "name": name},
        priority=priority,
        id=name,
        **extra,
    )


def _drain(queue: InMemoryQueue, source_id: str = "talent-api", now: datetime = NOW) -> list[str]:
    order = []
    while (task := queue.dequeue(source_id, now)) is not None:
        order.append(task.id)
        queue.ack(task.id, now)
    return order


def test_retried_task_keeps_its_place_in_line() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1"), NOW)
    queue.enqueue(_task("t2"), NOW)

    first = queue.dequeue("talent-api", NOW)
    assert first.id == "t1"
    queue.nack("t1", "timeout", NOW, retry_at=NOW)
    queue.enqueue(_task("t3"), NOW)

    assert _drain(queue) == ["t1", "t2", "t3"]


def test_priority_beats_arrival_order() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("low", priority=5), NOW)
    queue.enqueue(_task("normal", priority=3), NOW)
    queue.enqueue(_task("critical", priority=1), NOW)

    assert _drain(queue) == ["critical", "normal", "low"]


def test_sources_are_dequeued_independently() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("a1", source_id="alpha"), NOW)
    queue.enqueue(_task("b1", source_id="beta"), NOW)

    assert queue.ready_sources(NOW) == ["alpha", "beta"]
    assert queue.dequeue("beta", NOW).id == "b1"
    assert queue.dequeue("beta", NOW) is None
    assert queue.active_count("beta") == 1
    assert queue.active_count("alpha") == 0


def test_delayed_task_is_promoted_when_due() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("later", available_at=NOW + timedelta(seconds=30)), NOW)

    assert queue.get("later").state is TaskState.DELAYED
    assert queue.dequeue("talent-api", NOW) is None
    assert queue.ready_sources(NOW) == []

    due = NOW + timedelta(seconds=30)
    task = queue.dequeue("talent-api", due)
    assert task is not None and task.id == "later"
    assert task.attempt == 1


def test_nack_without_retry_dead_letters() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1"), NOW)
    queue.dequeue("talent-api", NOW)

    failed = queue.nack("t1", "boom", NOW)

    assert failed.state is TaskState.FAILED
    assert failed.failed_reason == "boom"
    assert queue.stats()["failed"] == 1


def test_requeue_without_consuming_attempt() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1"), NOW)
    queue.dequeue("talent-api", NOW)

    task = queue.requeue("t1", NOW)

    assert task.state is TaskState.WAITING
    assert task.attempt == 0


def test_retry_only_applies_to_failed_tasks() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1", max_attempts=2), NOW)
    with pytest.raises(InvalidRequestError):
        queue.retry("t1", NOW)

    queue.dequeue("talent-api", NOW)
    queue.nack("t1", "boom", NOW)
    retried = queue.retry("t1", NOW, extra_attempts=1)

    assert retried.state is TaskState.WAITING
    assert retried.max_attempts == 2
    assert retried.failed_reason is None


def test_paused_queue_hands_out_nothing() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1"), NOW)
    queue.pause()

    assert queue.dequeue("talent-api", NOW) is None
    assert queue.stats()["paused"] == 1

    queue.resume()
    assert queue.dequeue("talent-api", NOW).id == "t1"


def test_accept_filter_skips_without_losing_tasks() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("blocked", priority=1), NOW)
    queue.enqueue(_task("allowed", priority=3), NOW)

    task = queue.dequeue("talent-api", NOW, accept=lambda candidate: candidate.id != "blocked")

    assert task.id == "allowed"
    assert queue.dequeue("talent-api", NOW).id == "blocked"


def test_active_task_cannot_be_removed() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("t1"), NOW)
    queue.dequeue("talent-api", NOW)

    with pytest.raises(InvalidRequestError):
        queue.remove("t1")


def test_empty_drops_waiting_and_delayed_only() -> None:
    queue = InMemoryQueue("cv-scraping")
    queue.enqueue(_task("running"), NOW)
    queue.dequeue("talent-api", NOW)
    queue.enqueue(_task("waiting"), NOW)
    queue.enqueue(_task("delayed", available_at=NOW + timedelta(minutes=5)), NOW)

    assert queue.empty() == 2
    assert [task.id for task in queue.all_tasks()] == ["running"]
