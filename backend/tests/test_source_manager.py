from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from discovery.core.errors import FailureKind, UnknownSourceError
from discovery.core.events import EventType
from discovery.core.models import RateLimitConfig

from conftest import GENEROUS_LIMIT, FakeAdapter


def _event_types(sub) -> list[EventType]:
    return [e.type for e in sub.drain()]


def test_unknown_source_is_never_admitted(manager):
    assert manager.can_make_request("nope") is False
    with pytest.raises(UnknownSourceError):
        manager.record_failure("nope", "boom")


def test_admission_requires_record_request_to_consume(manager, clock):
    manager.register_source(FakeAdapter("a"), RateLimitConfig(max_per_minute=60, max_per_hour=100, burst_size=1))
    assert manager.can_make_request("a")
    assert manager.can_make_request("a")
    manager.record_request("a")
    assert not manager.can_make_request("a")
    clock.advance(2)
    assert manager.can_make_request("a")


def test_unhealthy_exactly_at_fifth_failure(manager, channel):
    sub = channel.subscribe()
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)

    for _ in range(4):
        manager.record_failure("a", "timeout")
    assert manager.get_health("a").is_healthy
    assert _event_types(sub) == []

    manager.record_failure("a", "timeout")
    health = manager.get_health("a")
    assert not health.is_healthy
    assert health.consecutive_failures == 5
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]
    assert manager.get_unhealthy_sources() == ["a"]

    # Further failures do not re-emit.
    manager.record_failure("a", "timeout")
    assert _event_types(sub) == []


def test_auth_failure_is_immediately_unhealthy(manager, channel):
    sub = channel.subscribe()
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)
    manager.record_failure("a", "HTTP 403", FailureKind.AUTH)
    assert not manager.get_health("a").is_healthy
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]


def test_record_success_recovers_and_clears_streak(manager, channel):
    sub = channel.subscribe()
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)

    manager.record_failure("a", "timeout")
    manager.record_success("a")
    assert _event_types(sub) == [EventType.SOURCE_HEALTHY]

    for _ in range(5):
        manager.record_failure("a", "timeout")
    sub.drain()
    manager.record_success("a")
    health = manager.get_health("a")
    assert health.is_healthy and health.consecutive_failures == 0
    assert _event_types(sub) == [EventType.SOURCE_RECOVERED]


def test_health_is_not_restored_by_time_alone(manager, clock):
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)
    for _ in range(5):
        manager.record_failure("a", "timeout")
    clock.advance(3600)
    assert not manager.get_health("a").is_healthy
    # Unhealthy sources may still probe the vendor.
    assert manager.can_make_request("a")


def test_vendor_rate_limit_starts_cooldown(manager, clock):
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)
    manager.record_failure("a", "HTTP 429", FailureKind.RATE_LIMITED, retry_after_s=10)
    clock.advance(299)
    assert not manager.can_make_request("a")
    clock.advance(1)
    assert manager.can_make_request("a")


def test_retry_after_longer_than_default_cooldown_is_honoured(manager, clock):
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)
    manager.record_failure("a", "HTTP 429", FailureKind.RATE_LIMITED, retry_after_s=600)
    clock.advance(301)
    assert not manager.can_make_request("a")
    clock.advance(300)
    assert manager.can_make_request("a")


def test_check_all_health_diffs_probe(manager, channel):
    sub = channel.subscribe()
    adapter = FakeAdapter("a", healthy=True)
    manager.register_source(adapter, GENEROUS_LIMIT)

    assert manager.check_all_health() == {"a": True}
    assert _event_types(sub) == []

    adapter.healthy = False
    manager.check_all_health()
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]

    for _ in range(3):
        manager.record_failure("a", "timeout")
    adapter.healthy = True
    manager.check_all_health()
    health = manager.get_health("a")
    assert health.is_healthy and health.consecutive_failures == 0
    assert _event_types(sub) == [EventType.SOURCE_RECOVERED]


def test_raising_health_check_is_recorded_as_failure(manager, channel):
    sub = channel.subscribe()
    adapter = FakeAdapter("a")
    adapter.probe_error = RuntimeError("check exploded")
    manager.register_source(adapter, GENEROUS_LIMIT)

    assert manager.check_all_health() == {"a": False}
    health = manager.get_health("a")
    assert health.is_healthy
    assert health.consecutive_failures == 1
    assert "check exploded" in health.last_failure_reason

    for _ in range(4):
        manager.check_all_health()
    assert not manager.get_health("a").is_healthy
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]


def test_health_check_does_not_clear_auth_failure(manager, channel):
    sub = channel.subscribe()
    adapter = FakeAdapter("a", healthy=True)
    manager.register_source(adapter, GENEROUS_LIMIT)

    manager.record_failure("a", "HTTP 401", FailureKind.AUTH)
    manager.check_all_health()
    health = manager.get_health("a")
    assert not health.is_healthy
    assert health.consecutive_failures == 1
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]

    manager.record_success("a")
    assert manager.get_health("a").is_healthy
    assert _event_types(sub) == [EventType.SOURCE_RECOVERED]


def test_health_loop_runs_on_clock(manager, clock, channel):
    sub = channel.subscribe()
    adapter = FakeAdapter("a", healthy=False)
    manager.register_source(adapter, GENEROUS_LIMIT)

    async def scenario():
        await manager.start()
        await asyncio.sleep(0)
        clock.advance(60)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await manager.stop()

    asyncio.run(scenario())
    assert _event_types(sub) == [EventType.SOURCE_UNHEALTHY]


def test_unregister_and_stats(manager, clock):
    manager.register_source(FakeAdapter("a"), GENEROUS_LIMIT)
    manager.register_source(FakeAdapter("b"), GENEROUS_LIMIT)
    for _ in range(5):
        manager.record_failure("b", "timeout")

    stats = manager.get_stats()
    assert stats["total_sources"] == 2
    assert stats["healthy_sources"] == 1
    assert stats["sources"]["b"]["health"]["last_failure_reason"] == "timeout"

    assert manager.unregister_source("a") is True
    assert manager.unregister_source("a") is False
    assert manager.get_health("a") is None
    assert manager.get_healthy_sources() == []
