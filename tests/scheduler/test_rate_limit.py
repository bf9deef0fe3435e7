from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from cv_harvester.config import ListingApiSource, ProxyConfig, RateLimitPolicy
from cv_harvester.infra.proxy_pool import ProxyRotation
from cv_harvester.scheduler.rate_limit import SourceThrottle, TokenBucket

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _proxies(count: int) -> list[ProxyConfig]:
    return [ProxyConfig(id=f"p{index}", host=f"10.0.0.{index}", port=8080) for index in range(count)]


def test_bucket_starts_full_and_refills_at_rate() -> None:
    bucket = TokenBucket(rate_per_minute=60, capacity=3, now=NOW)

    assert all(bucket.try_acquire(NOW) for _ in range(3))
    assert not bucket.try_acquire(NOW)
    assert bucket.seconds_until_available(NOW) == pytest.approx(1.0)

    later = NOW + timedelta(seconds=1)
    assert bucket.try_acquire(later)
    assert not bucket.try_acquire(later)


def test_bucket_never_exceeds_capacity() -> None:
    bucket = TokenBucket(rate_per_minute=600, capacity=5, now=NOW)
    assert bucket.available(NOW + timedelta(hours=1)) == 5.0


def test_bucket_rejects_non_positive_settings() -> None:
    with pytest.raises(ValueError):
        TokenBucket(rate_per_minute=0, capacity=1, now=NOW)
    with pytest.raises(ValueError):
        TokenBucket(rate_per_minute=10, capacity=0, now=NOW)


def test_throttle_caps_burst_at_requests_per_minute() -> None:
    source = ListingApiSource(
        id="slow",
        name="Slow",
        api_url="https://api.example.com/cvs",
        rate_limit=RateLimitPolicy(requests_per_minute=2, burst_limit=10, max_concurrent=1),
    )
    throttle = SourceThrottle.for_source(source, NOW, proxy_failure_threshold=3)

    assert throttle.bucket.capacity == 2
    assert throttle.has_capacity
    throttle.task_started("t1")
    assert not throttle.has_capacity
    throttle.task_finished("t1")
    throttle.task_finished("t1")
    assert throttle.active == 0


def test_throttle_reconfigure_keeps_spent_tokens() -> None:
    source = ListingApiSource(id="api", name="Api", api_url="https://api.example.com/cvs")
    throttle = SourceThrottle.for_source(source, NOW, proxy_failure_threshold=3)
    throttle.bucket.try_acquire(NOW)
    throttle.bucket.try_acquire(NOW)

    faster = source.model_copy(update={"rate_limit": RateLimitPolicy(requests_per_minute=60, burst_limit=5)})
    throttle.reconfigure(faster, NOW)

    assert throttle.bucket.capacity == 5
    assert throttle.bucket.available(NOW) == pytest.approx(1.0)


def test_round_robin_cycles_through_healthy_proxies() -> None:
    rotation = ProxyRotation(_proxies(3))
    picked = [rotation.get_proxy(NOW).id for _ in range(4)]
    assert picked == ["p0", "p1", "p2", "p0"]


def test_least_used_prefers_quiet_proxy() -> None:
    rotation = ProxyRotation(_proxies(2), mode="least_used")
    rotation.report_success("p0", NOW)
    assert rotation.get_proxy(NOW).id == "p1"


def test_random_mode_uses_injected_rng() -> None:
    rotation = ProxyRotation(_proxies(3), mode="random", rng=random.Random(3))
    assert rotation.get_proxy(NOW).id in {"p0", "p1", "p2"}


def test_failures_exclude_proxy_until_cooldown() -> None:
    rotation = ProxyRotation(_proxies(2), failure_threshold=3, cooldown_seconds=300)

    for expected in (False, False, True):
        _, excluded = rotation.report_failure("p0", NOW)
        assert excluded is expected

    assert [proxy.id for proxy in rotation.available(NOW)] == ["p1"]
    assert [rotation.get_proxy(NOW).id for _ in range(3)] == ["p1", "p1", "p1"]

    cooled = NOW + timedelta(seconds=300)
    assert {proxy.id for proxy in rotation.available(cooled)} == {"p0", "p1"}
    assert rotation.snapshot()[0].consecutive_failures == 0


def test_success_resets_consecutive_failures() -> None:
    rotation = ProxyRotation(_proxies(1), failure_threshold=2)
    rotation.report_failure("p0", NOW)
    rotation.report_success("p0", NOW)
    _, excluded = rotation.report_failure("p0", NOW)

    assert not excluded
    assert not rotation.exhausted(NOW)


def test_exhausted_only_when_pool_has_proxies() -> None:
    assert not ProxyRotation([]).exhausted(NOW)
    assert ProxyRotation([]).get_proxy(NOW) is None

    rotation = ProxyRotation(_proxies(1), failure_threshold=1)
    rotation.report_failure("p0", NOW)
    assert rotation.exhausted(NOW)
    assert rotation.get_proxy(NOW) is None


def test_refresh_keeps_health_of_surviving_proxies() -> None:
    rotation = ProxyRotation(_proxies(2), failure_threshold=1)
    rotation.report_failure("p0", NOW)

    rotation.refresh([*_proxies(1), ProxyConfig(id="p9", host="10.0.0.9", port=8080)])

    snapshot = {proxy.id: proxy for proxy in rotation.snapshot()}
    assert set(snapshot) == {"p0", "p9"}
    assert snapshot["p0"].cooldown_until is not None
    assert snapshot["p0"].failure_count == 1
