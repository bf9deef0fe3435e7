"""Proxy rotation with failure-based exclusion."""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from threading import Lock
from typing import Iterable, List, Optional

from ..config.models import ProxyConfig


class ProxyRotation:
    """Rotate through a source's healthy proxies.

    A proxy reaching ``failure_threshold`` consecutive failures is excluded
    until ``cooldown_seconds`` have elapsed; a success resets its counter.
    """

    def __init__(
        self,
        proxies: Iterable[ProxyConfig] | None = None,
        mode: str = "round_robin",
        failure_threshold: int = 3,
        cooldown_seconds: float = 300,
        rng: random.Random | None = None,
    ) -> None:
        self._lock = Lock()
        self._index = 0
        self._proxies: List[ProxyConfig] = [p.model_copy(deep=True) for p in proxies or ()]
        self.mode = mode
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._rng = rng or random.Random()

    @property
    def empty(self) -> bool:
        return not self._proxies

    def _release_cooled(self, now: datetime) -> None:
        for proxy in self._proxies:
            if proxy.cooldown_until is not None and proxy.cooldown_until <= now:
                proxy.cooldown_until = None
                proxy.consecutive_failures = 0

    def available(self, now: datetime) -> list[ProxyConfig]:
        with self._lock:
            self._release_cooled(now)
            return [p for p in self._proxies if p.is_active and p.cooldown_until is None]

    def exhausted(self, now: datetime) -> bool:
        """True when the source has proxies but none may be used right now."""

        return not self.empty and not self.available(now)

    def get_proxy(self, now: datetime) -> Optional[ProxyConfig]:
        candidates = self.available(now)
        if not candidates:
            return None
        with self._lock:
            if self.mode == "random":
                proxy = self._rng.choice(candidates)
            elif self.mode == "least_used":
                proxy = min(candidates, key=lambda p: (p.success_count + p.failure_count, p.id))
            else:
                proxy = candidates[self._index % len(candidates)]
                self._index += 1
            return proxy.model_copy()

    def _find(self, proxy_id: str) -> Optional[ProxyConfig]:
        return next((p for p in self._proxies if p.id == proxy_id), None)

    def report_success(self, proxy_id: str, now: datetime) -> Optional[ProxyConfig]:
        with self._lock:
            proxy = self._find(proxy_id)
            if proxy is None:
                return None
            proxy.consecutive_failures = 0
            proxy.success_count += 1
            proxy.last_tested_at = now
            return proxy.model_copy()

    def report_failure(self, proxy_id: str, now: datetime) -> tuple[Optional[ProxyConfig], bool]:
        """Record a failure; the flag tells whether the proxy was just excluded."""

        with self._lock:
            proxy = self._find(proxy_id)
            if proxy is None:
                return None, False
            proxy.consecutive_failures += 1
            proxy.failure_count += 1
            proxy.last_tested_at = now
            excluded = False
            if proxy.consecutive_failures >= self.failure_threshold and proxy.cooldown_until is None:
                proxy.cooldown_until = now + timedelta(seconds=self.cooldown_seconds)
                excluded = True
            return proxy.model_copy(), excluded

    def refresh(self, proxies: Iterable[ProxyConfig]) -> None:
        """Replace the pool while keeping health counters of surviving proxies."""

        with self._lock:
            previous = {p.id: p for p in self._proxies}
            refreshed: List[ProxyConfig] = []
            for proxy in proxies:
                copy = proxy.model_copy(deep=True)
                known = previous.get(copy.id)
                if known is not None:
                    copy.consecutive_failures = known.consecutive_failures
                    copy.cooldown_until = known.cooldown_until
                    copy.success_count = max(copy.success_count, known.success_count)
                    copy.failure_count = max(copy.failure_count, known.failure_count)
                refreshed.append(copy)
            self._proxies = refreshed

    def snapshot(self) -> list[ProxyConfig]:
        with self._lock:
            return [p.model_copy() for p in self._proxies]


__all__ = ["ProxyRotation"]
