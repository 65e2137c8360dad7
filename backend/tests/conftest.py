from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/` packages are importable as top-level `app`, `discovery`, `scoring`.
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from discovery.core.adapter import DiscoveryAdapter  # noqa: E402
from discovery.core.clock import ManualClock  # noqa: E402
from discovery.core.events import EventChannel  # noqa: E402
from discovery.core.models import RateLimitConfig, RawDiscovery  # noqa: E402
from discovery.core.source_manager import SourceManager  # noqa: E402
from scoring.core.engine import ScoringEngine  # noqa: E402


UTC = timezone.utc
T0 = datetime(2024, 1, 1, tzinfo=UTC)

GENEROUS_LIMIT = RateLimitConfig(max_per_minute=1000, max_per_hour=100000, burst_size=100)


class FakeAdapter(DiscoveryAdapter):
    """Adapter whose health is set by the test."""

    adapter_type = "fake"

    def __init__(self, source_id: str, *, healthy: bool = True):
        super().__init__(source_id)
        self.healthy = healthy
        self.started = 0
        self.stopped = 0
        self.probe_error: Optional[Exception] = None

    async def start(self) -> None:
        self._running = True
        self.started += 1

    async def stop(self) -> None:
        self._running = False
        self.stopped += 1

    async def discover(self) -> list[RawDiscovery]:
        return []

    def is_healthy(self) -> bool:
        if self.probe_error is not None:
            raise self.probe_error
        return self.healthy

    def last_seen_at(self) -> Optional[datetime]:
        return None


def make_raw(mint: str, source_id: str, *, at: datetime = T0, **kwargs) -> RawDiscovery:
    return RawDiscovery(mint=mint, source_id=source_id, observed_at=at, symbol=kwargs.pop("symbol", "TKN"), **kwargs)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture()
def channel() -> EventChannel:
    return EventChannel()


@pytest.fixture()
def engine(clock: ManualClock) -> ScoringEngine:
    return ScoringEngine(clock)


@pytest.fixture()
def manager(channel: EventChannel, clock: ManualClock) -> SourceManager:
    return SourceManager(channel, clock)
