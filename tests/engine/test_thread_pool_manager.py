from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from cv_harvester.engine.thread_pool import ThreadPoolManager


class _Recorder:
    def __init__(self) -> None:
        self.built: list[tuple[str, int]] = []
        self.executors: list[ThreadPoolExecutor] = []

    def __call__(self, name: str, workers: int) -> ThreadPoolExecutor:
        self.built.append((name, workers))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)
        self.executors.append(executor)
        return executor


def test_named_pools_are_created_once() -> None:
    recorder = _Recorder()
    manager = ThreadPoolManager(default_workers=4, factory=recorder)

    first = manager.get("export", max_workers=2)
    again = manager.get("export", max_workers=9)
    scraping = manager.get("cv-scraping")

    assert first is again
    assert scraping is not first
    assert manager.get() is recorder.executors[0]
    assert recorder.built == [("harvester", 4), ("harvester-export", 2), ("harvester-cv-scraping", 4)]
    manager.shutdown(wait=True)


def test_pools_run_submitted_work() -> None:
    manager = ThreadPoolManager(default_workers=2)
    try:
        futures = [manager.get("validation").submit(pow, 2, exponent) for exponent in range(5)]
        assert [future.result(timeout=5) for future in futures] == [1, 2, 4, 8, 16]
    finally:
        manager.shutdown(wait=True)


def test_shutdown_forgets_named_pools() -> None:
    recorder = _Recorder()
    manager = ThreadPoolManager(default_workers=1, factory=recorder)
    old = manager.get("export")

    manager.shutdown(wait=True)

    assert manager.get("export") is not old
