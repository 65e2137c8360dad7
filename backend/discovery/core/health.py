"""
Health bookkeeping for discovery sources.

Principles:
- Failures are counted synchronously: the 5th consecutive failure flips a source
  to unhealthy on the spot, without waiting for the next periodic check.
- An authentication failure flips it immediately; retrying cannot help.
- Recovery is explicit: only a successful probe or a recorded success flips a
  source back. Time alone never does.

The monitor only mutates SourceHealth and reports transitions; the Source Manager
turns transitions into events.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from discovery.core.errors import FailureKind

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_FAILURES = 5


class HealthTransition(str, Enum):
    BECAME_UNHEALTHY = "became_unhealthy"
    RECOVERED = "recovered"
    STREAK_CLEARED = "streak_cleared"   # healthy source whose failure streak was reset


class SourceHealth(BaseModel):
    """Supervised health of one registered source."""
    source_id: str
    is_healthy: bool = True
    consecutive_failures: int = Field(default=0, ge=0)
    last_check: datetime
    last_successful_discovery: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    last_failure_kind: Optional[FailureKind] = None

    model_config = ConfigDict(validate_assignment=True)


class HealthMonitor:
    """Applies success/failure/probe signals to a SourceHealth."""

    def __init__(self, max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES):
        self.max_consecutive_failures = max_consecutive_failures

    def record_success(self, health: SourceHealth, now: datetime) -> Optional[HealthTransition]:
        had_streak = health.consecutive_failures > 0
        was_healthy = health.is_healthy

        health.consecutive_failures = 0
        health.is_healthy = True
        health.last_successful_discovery = now
        health.last_check = now

        if not was_healthy:
            return HealthTransition.RECOVERED
        if had_streak:
            return HealthTransition.STREAK_CLEARED
        return None

    def record_failure(
        self,
        health: SourceHealth,
        now: datetime,
        reason: str,
        kind: FailureKind = FailureKind.TRANSIENT,
    ) -> Optional[HealthTransition]:
        health.consecutive_failures += 1
        health.last_check = now
        health.last_failure_reason = reason
        health.last_failure_kind = kind

        if not health.is_healthy:
            return None

        if kind == FailureKind.AUTH:
            health.is_healthy = False
            logger.error(f"Source {health.source_id} marked unhealthy: authentication failure ({reason})")
            return HealthTransition.BECAME_UNHEALTHY

        if health.consecutive_failures >= self.max_consecutive_failures:
            health.is_healthy = False
            logger.error(
                f"Source {health.source_id} marked unhealthy after "
                f"{health.consecutive_failures} consecutive failures ({reason})"
            )
            return HealthTransition.BECAME_UNHEALTHY

        return None

    def apply_probe(self, health: SourceHealth, now: datetime, probe_healthy: bool) -> Optional[HealthTransition]:
        """Diff an adapter's own is_healthy() against the stored state."""
        health.last_check = now

        if not probe_healthy and health.is_healthy:
            health.is_healthy = False
            logger.warning(f"Source {health.source_id} became unhealthy")
            return HealthTransition.BECAME_UNHEALTHY

        if probe_healthy and not health.is_healthy:
            if health.last_failure_kind == FailureKind.AUTH and health.consecutive_failures > 0:
                # Only a successful call clears an auth failure.
                return None
            health.is_healthy = True
            health.consecutive_failures = 0
            logger.info(f"Source {health.source_id} recovered")
            return HealthTransition.RECOVERED

        return None
