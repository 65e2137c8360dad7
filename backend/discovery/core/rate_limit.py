"""
Per-source admission control.

Two independent mechanisms must both agree before a request is admitted:

1. Token bucket: refills continuously at max_per_minute / 60000 tokens per ms,
   capped at burst_size. A request needs at least one whole token.
2. Hard window counters: per-minute and per-hour counts, each below its ceiling.
   Counters are zeroed exactly when their window boundary passes. Boundaries sit
   on a fixed grid anchored at registration time, so bursty refill can never buy
   more than the ceiling inside one window.

A vendor 429 adds a third gate: a cooldown during which nothing is admitted,
regardless of the local budget.

Admission (allows) never consumes. consume() is called once the request has
actually been issued, so speculative checks do not leak budget.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from discovery.core.clock import elapsed_ms
from discovery.core.models import RateLimitConfig

MINUTE = timedelta(minutes=1)
HOUR = timedelta(hours=1)
MS_PER_MINUTE = 60_000.0


class RateLimitState(BaseModel):
    """Mutable limiter state for one source."""
    tokens: float = Field(ge=0.0)
    last_refill: datetime
    minute_count: int = Field(default=0, ge=0)
    hour_count: int = Field(default=0, ge=0)
    minute_reset_at: datetime
    hour_reset_at: datetime
    cooldown_until: Optional[datetime] = None

    model_config = ConfigDict(validate_assignment=True)


class RateLimiter:
    """Token bucket plus hard windows for a single source. Not thread-safe on its own;
    the Source Manager holds the source's lock around every call."""

    def __init__(self, config: RateLimitConfig, now: datetime):
        self.config = config
        self.state = RateLimitState(
            tokens=float(config.burst_size),
            last_refill=now,
            minute_reset_at=now + MINUTE,
            hour_reset_at=now + HOUR,
        )

    def refill(self, now: datetime) -> None:
        since = elapsed_ms(self.state.last_refill, now)
        if since <= 0:
            return
        rate = self.config.max_per_minute / MS_PER_MINUTE
        self.state.tokens = min(float(self.config.burst_size), self.state.tokens + since * rate)
        self.state.last_refill = now

    def roll_windows(self, now: datetime) -> None:
        """Zero the counters whose boundary has passed and move to the next boundary."""
        state = self.state
        if now >= state.minute_reset_at:
            state.minute_count = 0
            state.minute_reset_at = _next_boundary(state.minute_reset_at, now, MINUTE)
        if now >= state.hour_reset_at:
            state.hour_count = 0
            state.hour_reset_at = _next_boundary(state.hour_reset_at, now, HOUR)

    def allows(self, now: datetime) -> bool:
        self.refill(now)
        self.roll_windows(now)
        state = self.state

        if self.is_cooling_down(now):
            return False
        if state.minute_count >= self.config.max_per_minute:
            return False
        if state.hour_count >= self.config.max_per_hour:
            return False
        if state.tokens < 1.0:
            return False
        return True

    def consume(self, now: datetime) -> None:
        self.refill(now)
        self.roll_windows(now)
        self.state.tokens = max(0.0, self.state.tokens - 1.0)
        self.state.minute_count += 1
        self.state.hour_count += 1

    def start_cooldown(self, until: datetime) -> None:
        current = self.state.cooldown_until
        if current is None or until > current:
            self.state.cooldown_until = until

    def is_cooling_down(self, now: datetime) -> bool:
        until = self.state.cooldown_until
        return until is not None and now < until

    def snapshot(self, now: datetime) -> dict:
        self.refill(now)
        self.roll_windows(now)
        state = self.state
        return {
            "tokens": round(state.tokens, 3),
            "burst_size": self.config.burst_size,
            "minute_count": state.minute_count,
            "hour_count": state.hour_count,
            "minute_reset_in_ms": max(0.0, elapsed_ms(now, state.minute_reset_at)),
            "hour_reset_in_ms": max(0.0, elapsed_ms(now, state.hour_reset_at)),
            "cooldown_until": state.cooldown_until.isoformat() if self.is_cooling_down(now) else None,
        }


def _next_boundary(boundary: datetime, now: datetime, window: timedelta) -> datetime:
    missed = (now - boundary) // window
    return boundary + window * (missed + 1)
