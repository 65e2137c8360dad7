"""
DiscoveryController: composition root of the discovery engine.

Owns one Source Manager, one Scoring Engine, one Aggregator and the event channel,
and is the only object the job and the API talk to. Constructed explicitly and
passed around; there is no module-level instance.

Flow:
    adapter -> handle_discovery -> (drop if source unhealthy) -> Aggregator.ingest
    report_outcome -> Scoring Engine (with the asset's real discovery time)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from discovery.core.adapter import DiscoveryAdapter
from discovery.core.aggregator import Aggregator
from discovery.core.clock import Clock, SystemClock
from discovery.core.events import EventChannel
from discovery.core.models import (
    AggregatorConfig,
    DeduplicationResult,
    DiscoveryRecord,
    RateLimitConfig,
    RawDiscovery,
    SourceConfig,
)
from discovery.core.source_manager import HEALTH_CHECK_INTERVAL_S, SourceManager
from scoring.core.engine import ScoringEngine
from scoring.core.models import OutcomeReport

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_S = 600.0


class DiscoveryController:
    def __init__(
        self,
        *,
        clock: Optional[Clock] = None,
        channel: Optional[EventChannel] = None,
        aggregator_config: Optional[AggregatorConfig] = None,
        health_check_interval_s: float = HEALTH_CHECK_INTERVAL_S,
        cleanup_interval_s: float = CLEANUP_INTERVAL_S,
    ):
        self.clock = clock or SystemClock()
        self.channel = channel or EventChannel()
        self.manager = SourceManager(self.channel, self.clock, health_check_interval_s=health_check_interval_s)
        self.scoring = ScoringEngine(self.clock)
        self.aggregator = Aggregator(self.scoring, self.channel, self.clock, aggregator_config)
        self.cleanup_interval_s = cleanup_interval_s
        self._adapters: dict[str, DiscoveryAdapter] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False
        self.dropped_unhealthy = 0
        self.dropped_unknown = 0

    @property
    def is_running(self) -> bool:
        return self._running

    # ---- sources ----

    def register(
        self,
        adapter: DiscoveryAdapter,
        rate_limit: RateLimitConfig,
        *,
        base_weight: float = 1.0,
        source_weight: float = 1.0,
    ) -> None:
        self.scoring.initialize_source(adapter.source_id, base_weight, source_weight)
        self.manager.register_source(adapter, rate_limit)
        adapter.bind(self.manager, self.handle_discovery, self.clock)
        self._adapters[adapter.source_id] = adapter

    def register_config(self, adapter: DiscoveryAdapter, cfg: SourceConfig) -> None:
        self.register(adapter, cfg.rate_limit, base_weight=cfg.base_weight, source_weight=cfg.source_weight)

    async def add_source(self, adapter: DiscoveryAdapter, rate_limit: RateLimitConfig, **weights: float) -> None:
        """Register at runtime; starts the adapter when the engine is already running."""
        self.register(adapter, rate_limit, **weights)
        if self._running:
            await self._start_adapter(adapter)

    async def remove_source(self, source_id: str) -> bool:
        adapter = self._adapters.pop(source_id, None)
        if adapter is None:
            return False
        await self._stop_adapter(adapter)
        self.manager.unregister_source(source_id)
        # Scoring metrics and records survive; they describe past behaviour.
        return True

    def get_adapter(self, source_id: str) -> Optional[DiscoveryAdapter]:
        return self._adapters.get(source_id)

    # ---- data path ----

    async def handle_discovery(self, raw: RawDiscovery) -> Optional[DeduplicationResult]:
        if not self.manager.is_registered(raw.source_id):
            self.dropped_unknown += 1
            logger.debug(f"Dropped {raw.mint}: source {raw.source_id} is not registered")
            return None
        if not self.manager.is_healthy(raw.source_id):
            self.dropped_unhealthy += 1
            logger.debug(f"Dropped {raw.mint}: source {raw.source_id} is unhealthy")
            return None
        return self.aggregator.ingest(raw)

    def report_outcome(self, mint: str, source_id: str, outcome: OutcomeReport) -> bool:
        if outcome.discovered_at is None:
            record = self.aggregator.find_record(mint)
            if record is not None:
                outcome = outcome.model_copy(update={"discovered_at": record.discovered_at})
        return self.scoring.record_outcome(mint, source_id, outcome)

    def get_record(self, mint: str) -> Optional[DiscoveryRecord]:
        return self.aggregator.find_record(mint)

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._running:
            logger.warning("Discovery controller already running")
            return
        self._running = True
        await self.manager.start()
        for adapter in self._adapters.values():
            await self._start_adapter(adapter)
        self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="discovery-cleanup")
        logger.info(f"Discovery started with {len(self._adapters)} sources")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for adapter in list(self._adapters.values()):
            await self._stop_adapter(adapter)
        await self.manager.stop()
        logger.info("Discovery stopped")

    async def _start_adapter(self, adapter: DiscoveryAdapter) -> None:
        try:
            await adapter.start()
        except Exception:  # noqa: BLE001
            logger.exception(f"Failed to start source {adapter.source_id}")

    async def _stop_adapter(self, adapter: DiscoveryAdapter) -> None:
        try:
            await adapter.stop()
        except Exception:  # noqa: BLE001
            logger.exception(f"Failed to stop source {adapter.source_id}")

    async def _cleanup_loop(self) -> None:
        while True:
            await self.clock.sleep(self.cleanup_interval_s)
            try:
                self.aggregator.cleanup()
            except Exception:  # noqa: BLE001
                logger.exception("Record cleanup failed")

    # ---- stats ----

    def get_source_stats(self, source_id: str) -> Optional[dict[str, Any]]:
        adapter = self._adapters.get(source_id)
        manager_stats = self.manager.get_source_stats(source_id)
        if adapter is None or manager_stats is None:
            return None
        score = self.scoring.get_source_score(source_id)
        return {
            **manager_stats,
            "adapter": adapter.get_stats(),
            "score": score.model_dump() if score else None,
        }

    def get_stats(self) -> dict[str, Any]:
        manager_stats = self.manager.get_stats()
        return {
            "running": self._running,
            "timestamp": self.clock.now().isoformat(),
            "total_sources": manager_stats["total_sources"],
            "healthy_sources": manager_stats["healthy_sources"],
            "unhealthy_sources": manager_stats["unhealthy_sources"],
            "dropped_unhealthy": self.dropped_unhealthy,
            "dropped_unknown": self.dropped_unknown,
            "aggregator": self.aggregator.get_stats(),
            "scoring": self.scoring.get_stats(),
            "source_scores": [s.model_dump() for s in self.scoring.get_all_source_scores()],
        }
