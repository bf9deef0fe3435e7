"""Thread pool abstraction giving every named queue its own workers."""

from __future__ import annotations

from concurrent.futures import Executor, ThreadPoolExecutor
from threading import Lock
from typing import Callable, Dict


class ThreadPoolManager:
    """Manage the shared and per-queue thread pools.

    ``factory`` builds executors on demand; tests swap in a deterministic
    executor through it.
    """

    def __init__(
        self,
        default_workers: int = 8,
        factory: Callable[[str, int], Executor] | None = None,
    ) -> None:
        self.default_workers = default_workers
        self._factory = factory or self._thread_executor
        self._default_executor = self._factory("harvester", default_workers)
        self._executors: Dict[str, Executor] = {}
        self._lock = Lock()

    @staticmethod
    def _thread_executor(name: str, workers: int) -> Executor:
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix=name)

    def get(self, queue_name: str | None = None, max_workers: int | None = None) -> Executor:
        if queue_name is None:
            return self._default_executor
        with self._lock:
            if queue_name not in self._executors:
                workers = max_workers or self.default_workers
                self._executors[queue_name] = self._factory(f"harvester-{queue_name}", workers)
            return self._executors[queue_name]

    def shutdown(self, wait: bool = False) -> None:
        self._default_executor.shutdown(wait=wait)
        with self._lock:
            for executor in self._executors.values():
                executor.shutdown(wait=wait)
            self._executors.clear()


__all__ = ["ThreadPoolManager"]
