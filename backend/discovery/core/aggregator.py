"""
Discovery Aggregator: deduplication and multi-source confirmation.

Principles:
- One canonical record per mint inside the dedup window, whichever source saw it first.
- A different source sighting a known mint appends exactly one confirmation.
  The same source sighting it again is a plain duplicate.
- A record is confirmed when it has >= min_confirmations contributing sources AND
  the credibility-weighted total reaches confirmation_weight_threshold.
  The `confirmed` event fires once per record, the first time both gates pass.
- Lookup-and-insert is atomic per mint (striped locks), so two sources racing on
  the same mint cannot both create a record.

Expired records leave the live index on cleanup() and are kept in a bounded archive.
"""

from __future__ import annotations

import logging
import threading
import zlib
from collections import deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Deque, Optional

from discovery.core.clock import Clock, SystemClock, elapsed_ms
from discovery.core.events import EventChannel, EventType
from discovery.core.models import (
    AggregatorConfig,
    DeduplicationResult,
    DiscoveryConfirmation,
    DiscoveryRecord,
    DiscoveryStatus,
    RawDiscovery,
)

if TYPE_CHECKING:
    from scoring.core.engine import ScoringEngine
    from scoring.core.models import TokenScore

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
ARCHIVE_SIZE = 10_000


class Aggregator:
    def __init__(
        self,
        scoring: "ScoringEngine",
        channel: EventChannel,
        clock: Optional[Clock] = None,
        config: Optional[AggregatorConfig] = None,
        *,
        archive_size: int = ARCHIVE_SIZE,
    ):
        self.scoring = scoring
        self.channel = channel
        self.clock = clock or SystemClock()
        self.config = config or AggregatorConfig()
        self._records: dict[str, DiscoveryRecord] = {}
        self._archive: Deque[DiscoveryRecord] = deque(maxlen=archive_size)
        self._stripes = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._index_lock = threading.Lock()
        self._ingested = 0
        self._duplicates = 0
        self._confirmations = 0

    @property
    def dedup_window(self) -> timedelta:
        return timedelta(milliseconds=self.config.dedup_window_ms)

    def _stripe(self, mint: str) -> threading.Lock:
        return self._stripes[zlib.crc32(mint.encode("utf-8")) % LOCK_STRIPES]

    # ---- ingest ----

    def ingest(self, raw: RawDiscovery) -> DeduplicationResult:
        now = self.clock.now()
        with self._stripe(raw.mint):
            self._ingested += 1
            record = self._live_record(raw.mint, now)

            if record is None:
                record = self._create(raw, now)
                self.scoring.record_discovery(raw.source_id)
                score = self.scoring.calculate_token_score(record)
                newly_confirmed = self._check_confirmed(record, score, now)
                events = [(EventType.DISCOVERED, {})]
                result = DeduplicationResult(
                    is_duplicate=False,
                    is_confirmation=False,
                    record=record,
                    score=score,
                    newly_confirmed=newly_confirmed,
                )
            elif record.has_source(raw.source_id):
                self._duplicates += 1
                score = self.scoring.calculate_token_score(record)
                logger.debug(f"Duplicate sighting of {raw.mint} from {raw.source_id}")
                return DeduplicationResult(is_duplicate=True, is_confirmation=False, record=record, score=score)
            else:
                confirmation = DiscoveryConfirmation(
                    source_id=raw.source_id,
                    confirmed_at=now,
                    latency_from_first_ms=max(0.0, elapsed_ms(record.discovered_at, now)),
                    credibility_at_confirmation=self.scoring.get_credibility(raw.source_id),
                )
                record.confirmations = record.confirmations + [confirmation]
                self._confirmations += 1
                self.scoring.record_discovery(raw.source_id)
                score = self.scoring.calculate_token_score(record)
                newly_confirmed = self._check_confirmed(record, score, now)
                events = [(EventType.CONFIRMATION, {"latency_ms": confirmation.latency_from_first_ms})]
                logger.info(
                    f"Confirmation of {record.symbol} ({raw.mint}) by {raw.source_id} "
                    f"after {confirmation.latency_from_first_ms / 1000:.1f}s "
                    f"({score.confirmation_count} sources, weight {score.total_weight:.2f})"
                )
                result = DeduplicationResult(
                    is_duplicate=True,
                    is_confirmation=True,
                    record=record,
                    score=score,
                    newly_confirmed=newly_confirmed,
                )

            if result.newly_confirmed:
                events.append((EventType.CONFIRMED, {}))
            record_view = record.model_dump(mode="json")

        score_view = result.score.model_dump(mode="json")
        for event_type, detail in events:
            self.channel.emit(
                event_type,
                now,
                source_id=raw.source_id,
                mint=raw.mint,
                record=record_view,
                score=score_view,
                detail=detail,
            )
        return result

    def _live_record(self, mint: str, now: datetime) -> Optional[DiscoveryRecord]:
        record = self._records.get(mint)
        if record is None:
            return None
        if now - record.discovered_at > self.dedup_window:
            # Expired: archive and treat the sighting as new.
            with self._index_lock:
                self._records.pop(mint, None)
                self._archive.append(record)
            return None
        return record

    def _create(self, raw: RawDiscovery, now: datetime) -> DiscoveryRecord:
        record = DiscoveryRecord(
            mint=raw.mint,
            symbol=raw.symbol,
            name=raw.name,
            first_source_id=raw.source_id,
            discovered_at=now,
            first_observed_at=raw.observed_at,
            initial_liquidity=raw.initial_liquidity,
            initial_market_cap=raw.initial_market_cap,
        )
        with self._index_lock:
            self._records[raw.mint] = record
        logger.info(f"New discovery: {raw.symbol} ({raw.mint}) from {raw.source_id}")
        return record

    def _passes_gates(self, record: DiscoveryRecord, score: "TokenScore") -> bool:
        return (
            record.confirmation_count >= self.config.min_confirmations
            and score.total_weight >= self.config.confirmation_weight_threshold
        )

    def _check_confirmed(self, record: DiscoveryRecord, score: "TokenScore", now: datetime) -> bool:
        if record.confirmed_at is not None or not self._passes_gates(record, score):
            return False
        record.confirmed_at = now
        logger.info(
            f"Token confirmed: {record.symbol} ({record.mint}) by {score.confirmation_count} sources, "
            f"weight {score.total_weight:.2f}"
        )
        return True

    # ---- queries ----

    def is_confirmed(self, record: DiscoveryRecord) -> bool:
        """Re-evaluates both gates with current credibility."""
        return self._passes_gates(record, self.scoring.calculate_token_score(record))

    def get_record(self, mint: str) -> Optional[DiscoveryRecord]:
        with self._stripe(mint):
            record = self._records.get(mint)
            return record.model_copy(deep=True) if record else None

    def find_record(self, mint: str) -> Optional[DiscoveryRecord]:
        """Live record first, then the most recent archived one."""
        record = self.get_record(mint)
        if record is not None:
            return record
        with self._index_lock:
            for archived in reversed(self._archive):
                if archived.mint == mint:
                    return archived.model_copy(deep=True)
        return None

    def get_recent(self, limit: int = 50) -> list[DiscoveryRecord]:
        with self._index_lock:
            records = list(self._records.values())
        records.sort(key=lambda r: r.discovered_at, reverse=True)
        return [r.model_copy(deep=True) for r in records[:limit]]

    # ---- mutation by collaborators ----

    def update_status(
        self,
        mint: str,
        status: DiscoveryStatus,
        *,
        was_rug: Optional[bool] = None,
        max_multiplier_24h: Optional[float] = None,
    ) -> bool:
        with self._stripe(mint):
            record = self._records.get(mint)
            if record is None:
                logger.warning(f"Status update for unknown record {mint} ignored")
                return False
            record.status = status
            if was_rug is not None:
                record.was_rug = was_rug
            if max_multiplier_24h is not None:
                record.max_multiplier_24h = max_multiplier_24h
        logger.info(f"Record {mint} status -> {status.value}")
        return True

    def cleanup(self) -> int:
        """Move records older than the dedup window to the archive."""
        now = self.clock.now()
        cutoff = now - self.dedup_window
        with self._index_lock:
            expired = [mint for mint, r in self._records.items() if r.discovered_at < cutoff]
        removed = 0
        for mint in expired:
            with self._stripe(mint):
                with self._index_lock:
                    record = self._records.get(mint)
                    if record is None or record.discovered_at >= cutoff:
                        continue
                    del self._records[mint]
                    self._archive.append(record)
                    removed += 1
        if removed:
            logger.info(f"Archived {removed} expired discovery records")
        return removed

    def get_stats(self) -> dict[str, Any]:
        with self._index_lock:
            records = list(self._records.values())
            archived = len(self._archive)
        confirmed = sum(1 for r in records if r.confirmed_at is not None)
        by_source: dict[str, int] = {}
        for r in records:
            by_source[r.first_source_id] = by_source.get(r.first_source_id, 0) + 1
        avg_confirmations = sum(r.confirmation_count for r in records) / len(records) if records else 0.0
        return {
            "total_ingested": self._ingested,
            "active_records": len(records),
            "archived_records": archived,
            "confirmed_records": confirmed,
            "duplicates": self._duplicates,
            "confirmations": self._confirmations,
            "avg_confirmations": round(avg_confirmations, 3),
            "first_discoveries_by_source": by_source,
            "config": self.config.model_dump(),
        }
