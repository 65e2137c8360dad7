"""Schemas for the discovery stats API (read-only).

Response models mirror the controller's stats; the API never computes scores itself.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class SourceScoreOut(BaseModel):
    source_id: str
    credibility_score: float = Field(ge=0.1, le=1.0)
    success_rate: float
    average_latency_ms: float
    recent_performance: float
    weight: float


class SourceHealthOut(BaseModel):
    source_id: str
    is_healthy: bool
    consecutive_failures: int
    last_check: datetime
    last_successful_discovery: Optional[datetime] = None
    last_failure_reason: Optional[str] = None
    last_failure_kind: Optional[str] = None


class SourceStatsOut(BaseModel):
    source_id: str
    name: str
    health: SourceHealthOut
    rate_limit: dict[str, Any]
    requests_admitted: int
    requests_denied: int
    adapter: dict[str, Any]
    score: Optional[SourceScoreOut] = None


class SourceListOut(BaseModel):
    total: int
    healthy: list[str]
    unhealthy: list[str]
    sources: list[SourceStatsOut]


class ConfirmationOut(BaseModel):
    source_id: str
    confirmed_at: datetime
    latency_from_first_ms: float
    credibility_at_confirmation: float


class DiscoveryRecordOut(BaseModel):
    mint: str
    symbol: str
    name: str
    first_source_id: str
    discovered_at: datetime
    status: str
    confirmation_count: int
    confirmations: list[ConfirmationOut]
    confirmed_at: Optional[datetime] = None
    is_confirmed: bool
    total_weight: float
    credibility_score: float
    initial_liquidity: Optional[float] = None
    initial_market_cap: Optional[float] = None


class DiscoveryStatsOut(BaseModel):
    running: bool
    timestamp: datetime
    total_sources: int
    healthy_sources: int
    unhealthy_sources: int
    dropped_unhealthy: int
    dropped_unknown: int
    aggregator: dict[str, Any]
    scoring: dict[str, Any]
    source_scores: list[SourceScoreOut]
