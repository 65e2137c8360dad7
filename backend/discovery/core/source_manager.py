"""
Source Manager: admission control and health supervision for discovery sources.

Principles:
- Every outbound vendor call is admitted here first (token bucket + hard windows).
- A vendor 429 puts the source into a cooldown; nothing is admitted until it ends.
- Health is tracked per source. Failure counting is synchronous; the periodic
  check only asks each adapter for its own view (is_healthy) and diffs it.
- Health never gates admission. Unhealthy sources keep polling so a successful
  call can bring them back; the controller drops their discoveries meanwhile.
- Health transitions are published on the event channel.

All per-source mutation happens under that source's lock.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Optional

from discovery.core.clock import Clock, SystemClock
from discovery.core.errors import VENDOR_COOLDOWN_SECONDS, FailureKind, UnknownSourceError
from discovery.core.events import EventChannel, EventType
from discovery.core.health import HealthMonitor, HealthTransition, SourceHealth
from discovery.core.models import RateLimitConfig
from discovery.core.rate_limit import RateLimiter

if TYPE_CHECKING:
    from discovery.core.adapter import DiscoveryAdapter

logger = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL_S = 60.0

_TRANSITION_EVENTS = {
    HealthTransition.BECAME_UNHEALTHY: EventType.SOURCE_UNHEALTHY,
    HealthTransition.RECOVERED: EventType.SOURCE_RECOVERED,
    HealthTransition.STREAK_CLEARED: EventType.SOURCE_HEALTHY,
}


@dataclass(slots=True)
class _ManagedSource:
    adapter: "DiscoveryAdapter"
    limiter: RateLimiter
    health: SourceHealth
    lock: threading.Lock = field(default_factory=threading.Lock)
    requests_admitted: int = 0
    requests_denied: int = 0


class SourceManager:
    def __init__(
        self,
        channel: EventChannel,
        clock: Optional[Clock] = None,
        *,
        health_check_interval_s: float = HEALTH_CHECK_INTERVAL_S,
        vendor_cooldown_s: float = VENDOR_COOLDOWN_SECONDS,
        monitor: Optional[HealthMonitor] = None,
    ):
        self.channel = channel
        self.clock = clock or SystemClock()
        self.health_check_interval_s = health_check_interval_s
        self.vendor_cooldown_s = vendor_cooldown_s
        self.monitor = monitor or HealthMonitor()
        self._sources: dict[str, _ManagedSource] = {}
        self._registry_lock = threading.Lock()
        self._health_task: Optional[asyncio.Task] = None

    # ---- registration ----

    def register_source(self, adapter: "DiscoveryAdapter", rate_limit: RateLimitConfig) -> None:
        now = self.clock.now()
        managed = _ManagedSource(
            adapter=adapter,
            limiter=RateLimiter(rate_limit, now),
            health=SourceHealth(source_id=adapter.source_id, last_check=now),
        )
        with self._registry_lock:
            if adapter.source_id in self._sources:
                logger.warning(f"Source {adapter.source_id} re-registered; state reset")
            self._sources[adapter.source_id] = managed
        logger.info(
            f"Registered source {adapter.source_id} "
            f"({rate_limit.max_per_minute}/min, {rate_limit.max_per_hour}/h, burst {rate_limit.burst_size})"
        )

    def unregister_source(self, source_id: str) -> bool:
        with self._registry_lock:
            removed = self._sources.pop(source_id, None)
        if removed is not None:
            logger.info(f"Unregistered source {source_id}")
        return removed is not None

    def is_registered(self, source_id: str) -> bool:
        return source_id in self._sources

    def get_adapter(self, source_id: str) -> Optional["DiscoveryAdapter"]:
        managed = self._sources.get(source_id)
        return managed.adapter if managed else None

    def source_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._sources)

    # ---- admission ----

    def can_make_request(self, source_id: str) -> bool:
        """True when the source may issue one vendor call now. Does not consume."""
        managed = self._sources.get(source_id)
        if managed is None:
            return False
        now = self.clock.now()
        with managed.lock:
            allowed = managed.limiter.allows(now)
            if allowed:
                managed.requests_admitted += 1
            else:
                managed.requests_denied += 1
        if not allowed:
            logger.debug(f"Request denied for {source_id} (rate limit)")
        return allowed

    def record_request(self, source_id: str) -> None:
        managed = self._require(source_id)
        now = self.clock.now()
        with managed.lock:
            managed.limiter.consume(now)

    # ---- health signals ----

    def record_success(self, source_id: str) -> None:
        managed = self._require(source_id)
        now = self.clock.now()
        with managed.lock:
            transition = self.monitor.record_success(managed.health, now)
        self._publish(source_id, transition, {})

    def record_failure(
        self,
        source_id: str,
        reason: str,
        kind: FailureKind = FailureKind.TRANSIENT,
        retry_after_s: Optional[float] = None,
    ) -> None:
        managed = self._require(source_id)
        now = self.clock.now()
        with managed.lock:
            if kind == FailureKind.RATE_LIMITED:
                cooldown_s = max(self.vendor_cooldown_s, retry_after_s or 0.0)
                managed.limiter.start_cooldown(now + timedelta(seconds=cooldown_s))
                logger.warning(f"Source {source_id} rate limited by vendor; cooling down {cooldown_s:.0f}s")
            transition = self.monitor.record_failure(managed.health, now, reason, kind)
            failures = managed.health.consecutive_failures
        logger.warning(f"Source {source_id} failure #{failures} ({kind.value}): {reason}")
        self._publish(source_id, transition, {"reason": reason, "kind": kind.value})

    # ---- health queries ----

    def get_health(self, source_id: str) -> Optional[SourceHealth]:
        managed = self._sources.get(source_id)
        if managed is None:
            return None
        with managed.lock:
            return managed.health.model_copy()

    def is_healthy(self, source_id: str) -> bool:
        health = self.get_health(source_id)
        return bool(health and health.is_healthy)

    def get_healthy_sources(self) -> list[str]:
        return [sid for sid in self.source_ids() if self.is_healthy(sid)]

    def get_unhealthy_sources(self) -> list[str]:
        return [sid for sid in self.source_ids() if self.is_registered(sid) and not self.is_healthy(sid)]

    def check_all_health(self) -> dict[str, bool]:
        """Probe every adapter once. An is_healthy() that raises is recorded as a failure."""
        results: dict[str, bool] = {}
        for source_id in self.source_ids():
            managed = self._sources.get(source_id)
            if managed is None:
                continue
            try:
                probe = bool(managed.adapter.is_healthy())
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Health probe for {source_id} raised: {e}")
                self.record_failure(source_id, f"health check raised: {e}")
                results[source_id] = False
                continue

            now = self.clock.now()
            with managed.lock:
                transition = self.monitor.apply_probe(managed.health, now, probe)
            self._publish(source_id, transition, {"reason": "health_check"})
            results[source_id] = probe
        return results

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_loop(), name="source-health-check")
        logger.info(f"Source health checks every {self.health_check_interval_s:.0f}s")

    async def stop(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _health_loop(self) -> None:
        while True:
            await self.clock.sleep(self.health_check_interval_s)
            try:
                self.check_all_health()
            except Exception:  # noqa: BLE001
                logger.exception("Health check pass failed")

    # ---- stats ----

    def get_source_stats(self, source_id: str) -> Optional[dict[str, Any]]:
        managed = self._sources.get(source_id)
        if managed is None:
            return None
        now = self.clock.now()
        with managed.lock:
            health = managed.health.model_dump(mode="json")
            rate_limit = managed.limiter.snapshot(now)
            admitted, denied = managed.requests_admitted, managed.requests_denied
        return {
            "source_id": source_id,
            "name": managed.adapter.name,
            "health": health,
            "rate_limit": rate_limit,
            "requests_admitted": admitted,
            "requests_denied": denied,
        }

    def get_stats(self) -> dict[str, Any]:
        per_source = {sid: self.get_source_stats(sid) for sid in self.source_ids()}
        per_source = {sid: s for sid, s in per_source.items() if s is not None}
        healthy = sum(1 for s in per_source.values() if s["health"]["is_healthy"])
        return {
            "total_sources": len(per_source),
            "healthy_sources": healthy,
            "unhealthy_sources": len(per_source) - healthy,
            "sources": per_source,
        }

    # ---- internals ----

    def _require(self, source_id: str) -> _ManagedSource:
        managed = self._sources.get(source_id)
        if managed is None:
            raise UnknownSourceError(f"Source {source_id!r} is not registered")
        return managed

    def _publish(self, source_id: str, transition: Optional[HealthTransition], detail: dict[str, Any]) -> None:
        if transition is None:
            return
        self.channel.emit(
            _TRANSITION_EVENTS[transition],
            self.clock.now(),
            source_id=source_id,
            detail=detail,
        )
