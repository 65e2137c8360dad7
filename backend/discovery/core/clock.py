"""
Clock abstraction for the discovery engine.

Every timer in the engine (poll intervals, reconnect delays, health checks,
rate-limit refills, dedup windows, recency windows) reads time and sleeps through
a Clock. Production wires SystemClock; tests wire ManualClock and move time by hand
so backoff and health-timeout logic can be exercised without real sleeps.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

UTC = timezone.utc


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Wall clock (UTC) backed by asyncio.sleep."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """
    Virtual clock. Time only moves when advance() is called.

    Sleepers are parked on futures ordered by deadline and released by advance()
    once their deadline has been reached.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)
        self._sleepers: list[tuple[datetime, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        loop = asyncio.get_running_loop()
        fut = loop.create_future()
        deadline = self._now + timedelta(seconds=seconds)
        heapq.heappush(self._sleepers, (deadline, next(self._seq), fut))
        await fut

    def advance(self, seconds: float = 0.0, *, ms: float = 0.0) -> None:
        """Move time forward and wake every sleeper whose deadline has passed."""
        self._now += timedelta(seconds=seconds, milliseconds=ms)
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, fut = heapq.heappop(self._sleepers)
            if not fut.done():
                fut.set_result(None)

    @property
    def pending_sleepers(self) -> int:
        return sum(1 for _, _, fut in self._sleepers if not fut.done())


def elapsed_ms(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() * 1000.0
