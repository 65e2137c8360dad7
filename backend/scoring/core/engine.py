"""
Scoring Engine: per-source credibility from delayed outcomes.

Credibility (recomputed on each outcome once a source has >= 5 discoveries):

    0.4 * success + 0.3 * gain + 0.2 * latency + 0.1 * recent

- success = max(0, success_rate - 2 * rug_rate)     rugs weigh double
- gain    = min(1, average_gain / 10)               10x is a perfect score
- latency = max(0, 1 - average_latency_min / 60)    an hour or more scores 0
- recent  = success rate of outcomes whose asset was discovered in the last
            7 days; 0.5 when there are none

The result is clamped to [0.1, 1.0]. Scores are never applied retroactively:
a change only affects weights computed afterwards.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Optional

from discovery.core.clock import Clock, SystemClock
from discovery.core.errors import UnknownSourceError
from discovery.core.models import DiscoveryRecord
from scoring.core.models import (
    CREDIBILITY_CEILING,
    CREDIBILITY_FLOOR,
    OutcomeClass,
    OutcomeReport,
    RecordedOutcome,
    SourceMetrics,
    SourceScore,
    TokenScore,
)

logger = logging.getLogger(__name__)

WEIGHT_SUCCESS = 0.4
WEIGHT_GAIN = 0.3
WEIGHT_LATENCY = 0.2
WEIGHT_RECENT = 0.1

MIN_DISCOVERIES_FOR_SCORE = 5
SUCCESS_MULTIPLIER = 2.0
SUCCESS_VOLUME = 100_000.0
GAIN_FOR_FULL_SCORE = 10.0
LATENCY_WORST_MINUTES = 60.0
RECENT_WINDOW = timedelta(days=7)
NEUTRAL_RECENT_SCORE = 0.5


def clamp_credibility(value: float) -> float:
    return max(CREDIBILITY_FLOOR, min(CREDIBILITY_CEILING, value))


def classify_outcome(outcome: OutcomeReport) -> OutcomeClass:
    if outcome.max_multiplier >= SUCCESS_MULTIPLIER or outcome.volume > SUCCESS_VOLUME:
        return OutcomeClass.SUCCESSFUL
    if outcome.was_rug:
        return OutcomeClass.RUG
    return OutcomeClass.NEUTRAL


class ScoringEngine:
    """Per-source metrics, each guarded by its own lock.

    The registry lock only covers inserting a source and snapshotting the id list;
    outcome feedback for one source never waits on another.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()
        self._metrics: dict[str, SourceMetrics] = {}
        self._source_weights: dict[str, float] = {}
        self._recent: dict[str, Deque[RecordedOutcome]] = {}
        self._outcome_mints: dict[str, set[str]] = {}
        self._source_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _source_lock(self, source_id: str) -> Optional[threading.Lock]:
        return self._source_locks.get(source_id)

    # ---- sources ----

    def initialize_source(self, source_id: str, base_weight: float = 1.0, source_weight: float = 1.0) -> None:
        """Idempotent: an already-known source keeps its metrics."""
        with self._registry_lock:
            if source_id in self._source_locks:
                return
            self._metrics[source_id] = SourceMetrics(
                source_id=source_id,
                base_weight=base_weight,
                credibility_score=clamp_credibility(base_weight),
                last_seen=self.clock.now(),
            )
            self._source_weights[source_id] = source_weight
            self._recent[source_id] = deque()
            self._outcome_mints[source_id] = set()
            # Published last: a source is visible once its lock exists.
            self._source_locks[source_id] = threading.Lock()
        logger.info(f"Initialized scoring for source {source_id} (base weight {base_weight})")

    def reset_source(self, source_id: str) -> bool:
        """Operator action: forget everything learned about a source."""
        lock = self._source_lock(source_id)
        if lock is None:
            return False
        with lock:
            metrics = self._metrics[source_id]
            self._metrics[source_id] = SourceMetrics(
                source_id=source_id,
                base_weight=metrics.base_weight,
                credibility_score=clamp_credibility(metrics.base_weight),
                last_seen=self.clock.now(),
            )
            self._recent[source_id] = deque()
            self._outcome_mints[source_id] = set()
        logger.info(f"Reset scoring metrics for source {source_id}")
        return True

    def record_discovery(self, source_id: str) -> None:
        lock = self._source_lock(source_id)
        if lock is None:
            return
        with lock:
            metrics = self._metrics[source_id]
            metrics.total_found += 1
            metrics.last_seen = self.clock.now()

    # ---- outcomes ----

    def record_outcome(self, mint: str, source_id: str, outcome: OutcomeReport) -> bool:
        """Fold one delayed outcome into the source's metrics.

        Returns False when an outcome for (mint, source_id) was already recorded.
        """
        lock = self._source_lock(source_id)
        if lock is None:
            raise UnknownSourceError(f"Scoring source {source_id!r} is not initialized")

        now = self.clock.now()
        with lock:
            metrics = self._metrics[source_id]
            seen = self._outcome_mints[source_id]
            if mint in seen:
                logger.warning(f"Outcome for {mint} from {source_id} already recorded; ignored")
                return False
            seen.add(mint)

            outcome_class = classify_outcome(outcome)
            if outcome_class == OutcomeClass.SUCCESSFUL:
                metrics.successful_found += 1
            elif outcome_class == OutcomeClass.RUG:
                metrics.rug_count += 1

            metrics.outcome_count += 1
            n = metrics.outcome_count
            metrics.average_latency_ms = (metrics.average_latency_ms * (n - 1) + outcome.latency_ms) / n
            metrics.average_gain = (metrics.average_gain * (n - 1) + outcome.max_multiplier) / n

            discovered_at = outcome.discovered_at or now
            if discovered_at > now - RECENT_WINDOW:
                self._recent[source_id].append(
                    RecordedOutcome(mint=mint, source_id=source_id, outcome_class=outcome_class, discovered_at=discovered_at)
                )

            self._update_credibility(metrics, now)

        logger.debug(f"Recorded outcome for {mint} from {source_id}: {outcome_class.value} ({outcome.max_multiplier}x)")
        return True

    def _update_credibility(self, metrics: SourceMetrics, now) -> None:
        # Caller holds the source lock.
        if metrics.total_found < MIN_DISCOVERIES_FOR_SCORE:
            return

        success_rate = metrics.successful_found / metrics.total_found
        rug_rate = metrics.rug_count / metrics.total_found
        success = max(0.0, success_rate - 2 * rug_rate)
        gain = min(1.0, metrics.average_gain / GAIN_FOR_FULL_SCORE)
        latency = max(0.0, 1 - (metrics.average_latency_ms / 60_000.0) / LATENCY_WORST_MINUTES)
        recent = self._recent_performance(metrics.source_id, now)

        score = (
            WEIGHT_SUCCESS * success
            + WEIGHT_GAIN * gain
            + WEIGHT_LATENCY * latency
            + WEIGHT_RECENT * recent
        )
        metrics.credibility_score = clamp_credibility(score)
        logger.info(
            f"Updated credibility for {metrics.source_id}: {metrics.credibility_score:.3f} "
            f"(success: {success:.2f}, gain: {gain:.2f}, latency: {latency:.2f}, recent: {recent:.2f})"
        )

    def _recent_performance(self, source_id: str, now) -> float:
        # Caller holds the source lock.
        window = self._recent.get(source_id)
        if window is None:
            return NEUTRAL_RECENT_SCORE
        cutoff = now - RECENT_WINDOW
        kept = [o for o in window if o.discovered_at > cutoff]
        if len(kept) != len(window):
            self._recent[source_id] = deque(kept)
        if not kept:
            return NEUTRAL_RECENT_SCORE
        successes = sum(1 for o in kept if o.outcome_class == OutcomeClass.SUCCESSFUL)
        return successes / len(kept)

    # ---- views ----

    def get_metrics(self, source_id: str) -> Optional[SourceMetrics]:
        lock = self._source_lock(source_id)
        if lock is None:
            return None
        with lock:
            return self._metrics[source_id].model_copy()

    def get_credibility(self, source_id: str) -> float:
        """Current credibility; unknown sources sit on the floor."""
        lock = self._source_lock(source_id)
        if lock is None:
            return CREDIBILITY_FLOOR
        with lock:
            return self._metrics[source_id].credibility_score

    def get_source_score(self, source_id: str) -> Optional[SourceScore]:
        lock = self._source_lock(source_id)
        if lock is None:
            return None
        now = self.clock.now()
        with lock:
            metrics = self._metrics[source_id]
            success_rate = metrics.successful_found / metrics.total_found if metrics.total_found else 0.0
            return SourceScore(
                source_id=source_id,
                credibility_score=metrics.credibility_score,
                success_rate=success_rate,
                average_latency_ms=metrics.average_latency_ms,
                recent_performance=self._recent_performance(source_id, now),
                weight=metrics.base_weight * metrics.credibility_score,
            )

    def _source_ids(self) -> list[str]:
        with self._registry_lock:
            return sorted(self._source_locks)

    def get_all_source_scores(self) -> list[SourceScore]:
        scores = [self.get_source_score(sid) for sid in self._source_ids()]
        return [s for s in scores if s is not None]

    def calculate_token_score(self, record: DiscoveryRecord) -> TokenScore:
        weights = [
            self.get_credibility(sid) * self._source_weights.get(sid, 1.0)
            for sid in record.source_ids
        ]
        total_weight = sum(weights)
        first_latency = record.confirmations[0].latency_from_first_ms if record.confirmations else 0.0
        return TokenScore(
            mint=record.mint,
            total_weight=total_weight,
            confirmation_count=len(weights),
            first_confirmation_latency_ms=first_latency,
            credibility_score=total_weight / len(weights) if weights else CREDIBILITY_FLOOR,
        )

    def get_stats(self) -> dict[str, Any]:
        source_metrics: dict[str, Any] = {}
        total_outcomes = 0
        for sid in self._source_ids():
            with self._source_locks[sid]:
                source_metrics[sid] = self._metrics[sid].model_dump(mode="json")
                total_outcomes += len(self._outcome_mints[sid])
        return {
            "total_sources": len(source_metrics),
            "total_outcomes": total_outcomes,
            "source_metrics": source_metrics,
        }
