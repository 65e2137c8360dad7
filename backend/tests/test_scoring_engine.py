from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from discovery.core.errors import UnknownSourceError
from discovery.core.models import DiscoveryConfirmation, DiscoveryRecord
from scoring.core.engine import classify_outcome
from scoring.core.models import OutcomeClass, OutcomeReport

from conftest import T0


def _outcome(multiplier: float, *, rug: bool = False, volume: float = 0.0, latency_ms: float = 300_000, discovered_at=None):
    return OutcomeReport(
        latency_ms=latency_ms,
        max_multiplier=multiplier,
        was_rug=rug,
        volume=volume,
        discovered_at=discovered_at,
    )


def _record(first: str, *others: str) -> DiscoveryRecord:
    return DiscoveryRecord(
        mint="MINT",
        symbol="TKN",
        name="Token",
        first_source_id=first,
        discovered_at=T0,
        confirmations=[
            DiscoveryConfirmation(
                source_id=sid,
                confirmed_at=T0 + timedelta(seconds=i + 1),
                latency_from_first_ms=1000.0 * (i + 1),
                credibility_at_confirmation=1.0,
            )
            for i, sid in enumerate(others)
        ],
    )


def test_classification_order():
    assert classify_outcome(_outcome(2.0)) == OutcomeClass.SUCCESSFUL
    assert classify_outcome(_outcome(1.0, volume=150_000)) == OutcomeClass.SUCCESSFUL
    assert classify_outcome(_outcome(1.0, rug=True)) == OutcomeClass.RUG
    assert classify_outcome(_outcome(1.5)) == OutcomeClass.NEUTRAL


def test_initialize_is_idempotent_and_clamped(engine):
    engine.initialize_source("a", base_weight=0.8)
    engine.record_discovery("a")
    engine.initialize_source("a", base_weight=0.3)
    metrics = engine.get_metrics("a")
    assert metrics.total_found == 1
    assert metrics.credibility_score == pytest.approx(0.8)

    engine.initialize_source("heavy", base_weight=3.0)
    assert engine.get_metrics("heavy").credibility_score == 1.0


def test_scenario_credibility_is_0_403(engine, clock):
    engine.initialize_source("A", base_weight=1.0)
    for _ in range(10):
        engine.record_discovery("A")

    # Discovered long ago: no data in the recent window, so recent = 0.5.
    old = clock.now() - timedelta(days=8)
    outcomes = (
        [_outcome(4.5, discovered_at=old) for _ in range(6)]
        + [_outcome(1.0, rug=True, discovered_at=old) for _ in range(2)]
        + [_outcome(0.5, discovered_at=old) for _ in range(2)]
    )
    for i, outcome in enumerate(outcomes):
        assert engine.record_outcome(f"m{i}", "A", outcome)

    metrics = engine.get_metrics("A")
    assert metrics.successful_found == 6
    assert metrics.rug_count == 2
    assert metrics.average_gain == pytest.approx(3.0)
    assert metrics.average_latency_ms == pytest.approx(300_000)
    assert metrics.credibility_score == pytest.approx(0.4033, abs=1e-3)


def test_fewer_than_five_discoveries_keeps_base_score(engine):
    engine.initialize_source("a", base_weight=0.7)
    for _ in range(4):
        engine.record_discovery("a")
    for i in range(4):
        engine.record_outcome(f"m{i}", "a", _outcome(1.0, rug=True))
    assert engine.get_metrics("a").credibility_score == pytest.approx(0.7)


def test_credibility_clamped_to_floor(engine):
    engine.initialize_source("bad")
    for _ in range(5):
        engine.record_discovery("bad")
    for i in range(5):
        engine.record_outcome(f"m{i}", "bad", _outcome(0.0, rug=True, latency_ms=10 * 3_600_000))
    assert engine.get_metrics("bad").credibility_score == pytest.approx(0.1)


def test_rugs_weigh_double_in_success_component(engine, clock):
    old = clock.now() - timedelta(days=30)
    for sid, rugs in (("clean", 0), ("rugged", 1)):
        engine.initialize_source(sid)
        for _ in range(5):
            engine.record_discovery(sid)
        # 3 successes; the remaining outcomes are rugs or neutral.
        for i in range(3):
            engine.record_outcome(f"{sid}-s{i}", sid, _outcome(2.0, discovered_at=old))
        for i in range(2):
            engine.record_outcome(f"{sid}-x{i}", sid, _outcome(0.0, rug=i < rugs, discovered_at=old))

    clean = engine.get_metrics("clean").credibility_score
    rugged = engine.get_metrics("rugged").credibility_score
    # success component: 0.6 vs 0.6 - 2 * 0.2 = 0.2, everything else equal.
    assert clean - rugged == pytest.approx(0.4 * 0.4)


def test_recent_window_uses_discovery_time(engine, clock):
    engine.initialize_source("a")
    for _ in range(5):
        engine.record_discovery("a")
    engine.record_outcome("fresh", "a", _outcome(3.0, discovered_at=clock.now() - timedelta(days=1)))
    engine.record_outcome("stale", "a", _outcome(1.0, discovered_at=clock.now() - timedelta(days=8)))
    assert engine.get_source_score("a").recent_performance == pytest.approx(1.0)

    clock.advance(7 * 24 * 3600)
    assert engine.get_source_score("a").recent_performance == pytest.approx(0.5)


def test_repeated_outcome_is_ignored(engine):
    engine.initialize_source("a")
    engine.record_discovery("a")
    assert engine.record_outcome("m", "a", _outcome(3.0)) is True
    assert engine.record_outcome("m", "a", _outcome(0.0, rug=True)) is False
    metrics = engine.get_metrics("a")
    assert metrics.outcome_count == 1
    assert metrics.rug_count == 0


def test_outcome_for_unknown_source_raises(engine):
    with pytest.raises(UnknownSourceError):
        engine.record_outcome("m", "ghost", _outcome(1.0))


def test_token_score_weights(engine):
    engine.initialize_source("a", base_weight=1.0)
    engine.initialize_source("b", base_weight=0.5, source_weight=2.0)

    score = engine.calculate_token_score(_record("a", "b", "ghost"))
    assert score.confirmation_count == 3
    # a: 1.0, b: 0.5 * 2.0, ghost: floor 0.1
    assert score.total_weight == pytest.approx(2.1)
    assert score.credibility_score == pytest.approx(0.7)
    assert score.first_confirmation_latency_ms == 1000.0


def test_source_score_and_reset(engine):
    engine.initialize_source("a", base_weight=0.5)
    for _ in range(5):
        engine.record_discovery("a")
    engine.record_outcome("m", "a", _outcome(3.0))

    score = engine.get_source_score("a")
    assert score.success_rate == pytest.approx(0.2)
    assert score.weight == pytest.approx(0.5 * score.credibility_score)
    assert [s.source_id for s in engine.get_all_source_scores()] == ["a"]
    assert engine.get_source_score("ghost") is None

    assert engine.reset_source("a") is True
    metrics = engine.get_metrics("a")
    assert metrics.total_found == 0
    assert metrics.credibility_score == pytest.approx(0.5)
    # The outcome can be reported again after a reset.
    assert engine.record_outcome("m", "a", _outcome(3.0)) is True

    stats = engine.get_stats()
    assert stats["total_sources"] == 1
    assert stats["total_outcomes"] == 1


def test_outcome_for_one_source_does_not_wait_on_another(engine):
    engine.initialize_source("a")
    engine.initialize_source("b")
    a_done = threading.Event()
    b_done = threading.Event()

    def report(source_id: str, done: threading.Event) -> None:
        engine.record_outcome("M1", source_id, _outcome(3.0))
        done.set()

    with engine._source_locks["a"]:
        a = threading.Thread(target=report, args=("a", a_done))
        b = threading.Thread(target=report, args=("b", b_done))
        a.start()
        b.start()
        assert b_done.wait(timeout=2.0)
        assert not a_done.is_set()
    a.join(timeout=2.0)
    b.join(timeout=2.0)

    assert a_done.is_set()
    assert engine.get_metrics("a").outcome_count == 1
    assert engine.get_metrics("b").outcome_count == 1
    assert engine.get_stats()["total_outcomes"] == 2
