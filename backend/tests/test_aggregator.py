from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from discovery.core.aggregator import Aggregator
from discovery.core.events import EventType
from discovery.core.models import AggregatorConfig, DiscoveryStatus
from scoring.core.models import OutcomeReport

from conftest import make_raw


@pytest.fixture()
def aggregator(engine, channel, clock) -> Aggregator:
    for sid in ("a", "b", "c"):
        engine.initialize_source(sid, base_weight=1.0)
    return Aggregator(engine, channel, clock, AggregatorConfig())


def test_first_sighting_creates_record(aggregator, channel, engine, clock):
    sub = channel.subscribe()
    result = aggregator.ingest(make_raw("M1", "a", symbol="NEW", initial_liquidity=5000.0))

    assert not result.is_duplicate and not result.is_confirmation
    assert result.record.first_source_id == "a"
    assert result.record.discovered_at == clock.now()
    assert result.record.initial_liquidity == 5000.0
    assert result.record.status == DiscoveryStatus.PENDING_ANALYSIS
    assert result.score.confirmation_count == 1
    assert engine.get_metrics("a").total_found == 1

    events = sub.drain()
    assert [e.type for e in events] == [EventType.DISCOVERED]
    assert events[0].mint == "M1"
    assert events[0].record["symbol"] == "NEW"


def test_same_source_twice_is_plain_duplicate(aggregator, channel, engine):
    aggregator.ingest(make_raw("M1", "a"))
    sub = channel.subscribe()
    result = aggregator.ingest(make_raw("M1", "a"))

    assert result.is_duplicate and not result.is_confirmation
    assert result.record.confirmation_count == 1
    assert engine.get_metrics("a").total_found == 1
    assert sub.drain() == []


def test_second_source_confirms_and_crosses_gates(aggregator, channel, clock):
    aggregator.ingest(make_raw("M1", "a"))
    sub = channel.subscribe()
    clock.advance(12)
    result = aggregator.ingest(make_raw("M1", "b"))

    assert result.is_duplicate and result.is_confirmation
    assert result.newly_confirmed
    confirmation = result.record.confirmations[0]
    assert confirmation.source_id == "b"
    assert confirmation.latency_from_first_ms == pytest.approx(12_000)
    assert result.score.total_weight == pytest.approx(2.0)
    assert result.record.confirmed_at == clock.now()
    assert [e.type for e in sub.drain()] == [EventType.CONFIRMATION, EventType.CONFIRMED]

    # A third source confirms again but `confirmed` is not re-emitted.
    result = aggregator.ingest(make_raw("M1", "c"))
    assert result.is_confirmation and not result.newly_confirmed
    assert result.record.confirmation_count == 3
    assert [e.type for e in sub.drain()] == [EventType.CONFIRMATION]


def test_count_gate_alone_is_not_enough(engine, channel, clock):
    engine.initialize_source("weak1", base_weight=0.4)
    engine.initialize_source("weak2", base_weight=0.4)
    aggregator = Aggregator(engine, channel, clock, AggregatorConfig())

    aggregator.ingest(make_raw("M1", "weak1"))
    result = aggregator.ingest(make_raw("M1", "weak2"))
    assert result.is_confirmation
    assert not result.newly_confirmed
    assert result.record.confirmed_at is None
    assert not aggregator.is_confirmed(result.record)


def test_weight_gate_alone_is_not_enough(engine, channel, clock):
    engine.initialize_source("heavy", base_weight=1.0, source_weight=5.0)
    aggregator = Aggregator(engine, channel, clock, AggregatorConfig())
    result = aggregator.ingest(make_raw("M1", "heavy"))
    assert result.score.total_weight == pytest.approx(5.0)
    assert not result.newly_confirmed
    assert not aggregator.is_confirmed(result.record)


def test_single_source_config_confirms_on_first_sighting(engine, channel, clock):
    engine.initialize_source("a")
    aggregator = Aggregator(engine, channel, clock, AggregatorConfig(min_confirmations=1, confirmation_weight_threshold=1.0))
    sub = channel.subscribe()
    result = aggregator.ingest(make_raw("M1", "a"))
    assert result.newly_confirmed
    assert [e.type for e in sub.drain()] == [EventType.DISCOVERED, EventType.CONFIRMED]


def test_sighting_after_window_starts_new_record(aggregator, clock):
    aggregator.ingest(make_raw("M1", "a"))
    clock.advance(24 * 3600 + 1)
    result = aggregator.ingest(make_raw("M1", "b"))

    assert not result.is_duplicate
    assert result.record.first_source_id == "b"
    assert aggregator.get_stats()["archived_records"] == 1


def test_cleanup_archives_expired_records(aggregator, clock):
    aggregator.ingest(make_raw("OLD", "a"))
    clock.advance(23 * 3600)
    aggregator.ingest(make_raw("NEW", "a"))
    clock.advance(2 * 3600)

    assert aggregator.cleanup() == 1
    assert aggregator.get_record("OLD") is None
    assert aggregator.find_record("OLD").mint == "OLD"
    assert aggregator.get_record("NEW") is not None


def test_update_status(aggregator):
    aggregator.ingest(make_raw("M1", "a"))
    assert aggregator.update_status("M1", DiscoveryStatus.TRADED, was_rug=True, max_multiplier_24h=0.2)
    record = aggregator.get_record("M1")
    assert record.status == DiscoveryStatus.TRADED
    assert record.was_rug is True
    assert record.max_multiplier_24h == 0.2
    assert aggregator.update_status("ghost", DiscoveryStatus.IGNORED) is False


def test_is_confirmed_reevaluates_with_current_credibility(aggregator, engine):
    aggregator.ingest(make_raw("M1", "a"))
    result = aggregator.ingest(make_raw("M1", "b"))
    assert aggregator.is_confirmed(result.record)

    engine.reset_source("b")
    for _ in range(5):
        engine.record_discovery("b")
    for i in range(5):
        engine.record_outcome(f"r{i}", "b", OutcomeReport(latency_ms=3_600_000, max_multiplier=0.0, was_rug=True))

    assert not aggregator.is_confirmed(aggregator.get_record("M1"))
    # Already-emitted confirmation stays on the record.
    assert aggregator.get_record("M1").confirmed_at is not None


def test_stats(aggregator):
    aggregator.ingest(make_raw("M1", "a"))
    aggregator.ingest(make_raw("M1", "a"))
    aggregator.ingest(make_raw("M1", "b"))
    aggregator.ingest(make_raw("M2", "b"))

    stats = aggregator.get_stats()
    assert stats["active_records"] == 2
    assert stats["confirmed_records"] == 1
    assert stats["duplicates"] == 1
    assert stats["confirmations"] == 1
    assert stats["total_ingested"] == 4
    assert stats["avg_confirmations"] == pytest.approx(1.5)
    assert stats["first_discoveries_by_source"] == {"a": 1, "b": 1}
    assert [r.mint for r in aggregator.get_recent()] == ["M1", "M2"]


def test_simultaneous_first_sightings_create_one_record(aggregator, channel, engine):
    sub = channel.subscribe([EventType.DISCOVERED, EventType.CONFIRMATION])
    barrier = threading.Barrier(2)
    results = {}

    def sighting(source_id: str) -> None:
        barrier.wait()
        results[source_id] = aggregator.ingest(make_raw("RACE", source_id))

    threads = [threading.Thread(target=sighting, args=(sid,)) for sid in ("a", "b")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5.0)

    assert sorted(r.is_duplicate for r in results.values()) == [False, True]
    assert sum(r.is_confirmation for r in results.values()) == 1
    record = aggregator.get_record("RACE")
    assert record.confirmation_count == 2
    assert aggregator.get_stats()["active_records"] == 1
    assert sorted(e.type.value for e in sub.drain()) == ["confirmation", "discovered"]
    assert engine.get_metrics("a").total_found + engine.get_metrics("b").total_found == 2
