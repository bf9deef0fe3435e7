"""Per-source throttling state owned by the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..config import RateLimitPolicy, SourceConfig
from ..infra.proxy_pool import ProxyRotation


class TokenBucket:
    """Classic token bucket refilled at ``rate_per_minute / 60`` tokens per second.

    Not thread-safe; the dispatcher is its only writer.
    """

    def __init__(self, rate_per_minute: float, capacity: float, now: datetime) -> None:
        if rate_per_minute <= 0 or capacity <= 0:
            raise ValueError("rate_per_minute and capacity must be positive")
        self.rate_per_second = rate_per_minute / 60.0
        self.capacity = float(capacity)
        self.tokens = float(capacity)
        self.updated_at = now

    def _refill(self, now: datetime) -> None:
        elapsed = (now - self.updated_at).total_seconds()
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.rate_per_second)
            self.updated_at = now

    def available(self, now: datetime) -> float:
        self._refill(now)
        return self.tokens

    def try_acquire(self, now: datetime, tokens: float = 1.0) -> bool:
        self._refill(now)
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def seconds_until_available(self, now: datetime, tokens: float = 1.0) -> float:
        self._refill(now)
        missing = tokens - self.tokens
        return max(missing / self.rate_per_second, 0.0)


@dataclass(slots=True)
class SourceThrottle:
    """Token bucket, concurrency counter and proxy rotation for one source."""

    source_id: str
    policy: RateLimitPolicy
    bucket: TokenBucket
    proxies: ProxyRotation
    active: int = 0
    degraded: bool = False
    active_tasks: set[str] = field(default_factory=set)

    @classmethod
    def for_source(
        cls, source: SourceConfig, now: datetime, proxy_failure_threshold: int
    ) -> "SourceThrottle":
        policy = source.rate_limit
        capacity = min(policy.burst_limit, policy.requests_per_minute)
        return cls(
            source_id=source.id,
            policy=policy,
            bucket=TokenBucket(policy.requests_per_minute, capacity, now),
            proxies=ProxyRotation(
                source.proxies,
                mode=source.proxy_rotation,
                failure_threshold=proxy_failure_threshold,
                cooldown_seconds=policy.cooldown_seconds,
            ),
        )

    def reconfigure(self, source: SourceConfig, now: datetime) -> None:
        """Apply a changed source config, keeping counters and spent tokens."""

        policy = source.rate_limit
        if policy != self.policy:
            capacity = min(policy.burst_limit, policy.requests_per_minute)
            tokens = min(self.bucket.available(now), capacity)
            self.bucket = TokenBucket(policy.requests_per_minute, capacity, now)
            self.bucket.tokens = tokens
            self.policy = policy
        self.proxies.mode = source.proxy_rotation
        self.proxies.cooldown_seconds = policy.cooldown_seconds
        self.proxies.refresh(source.proxies)

    @property
    def has_capacity(self) -> bool:
        return self.active < self.policy.max_concurrent

    def task_started(self, task_id: str) -> None:
        self.active_tasks.add(task_id)
        self.active = len(self.active_tasks)

    def task_finished(self, task_id: str) -> None:
        self.active_tasks.discard(task_id)
        self.active = len(self.active_tasks)


__all__ = ["SourceThrottle", "TokenBucket"]
