"""
Core data models for the discovery engine.

Separated from the components so adapters, the Aggregator and the Scoring Engine
can share them without importing each other.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from scoring.core.models import TokenScore

DEFAULT_DEDUP_WINDOW_MS = 24 * 60 * 60 * 1000


class DiscoveryStatus(str, Enum):
    """Lifecycle of a record. Transitions are driven by downstream collaborators."""
    PENDING_ANALYSIS = "pending_analysis"
    ANALYZED = "analyzed"
    TRADED = "traded"
    IGNORED = "ignored"


class RawDiscovery(BaseModel):
    """One sighting of an asset as reported by a single adapter."""
    mint: str = Field(min_length=1)
    symbol: str = "UNKNOWN"
    name: str = "Unknown Token"
    source_id: str = Field(min_length=1)
    observed_at: datetime
    initial_price: Optional[float] = None
    initial_liquidity: Optional[float] = None
    initial_market_cap: Optional[float] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class DiscoveryConfirmation(BaseModel):
    """A repeat sighting from a different source inside the dedup window."""
    source_id: str
    confirmed_at: datetime
    latency_from_first_ms: float
    credibility_at_confirmation: float

    model_config = ConfigDict(frozen=True)


class DiscoveryRecord(BaseModel):
    """
    Canonical, deduplicated record for one physical asset.

    Created once on first sighting; confirmations are appended while the record
    lives inside the dedup window. `mint` never changes.
    """
    mint: str
    symbol: str
    name: str
    first_source_id: str
    discovered_at: datetime
    first_observed_at: Optional[datetime] = None
    initial_liquidity: Optional[float] = None
    initial_market_cap: Optional[float] = None
    status: DiscoveryStatus = DiscoveryStatus.PENDING_ANALYSIS
    confirmations: list[DiscoveryConfirmation] = Field(default_factory=list)
    was_rug: bool = False
    max_multiplier_24h: Optional[float] = None
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def source_ids(self) -> list[str]:
        """Contributing sources in sighting order, first source included."""
        return [self.first_source_id] + [c.source_id for c in self.confirmations]

    @property
    def confirmation_count(self) -> int:
        return 1 + len(self.confirmations)

    def has_source(self, source_id: str) -> bool:
        return source_id == self.first_source_id or any(
            c.source_id == source_id for c in self.confirmations
        )


class RateLimitConfig(BaseModel):
    """Per-source admission budget supplied at registration."""
    max_per_minute: int = Field(gt=0)
    max_per_hour: int = Field(gt=0)
    burst_size: int = Field(ge=1)

    model_config = ConfigDict(frozen=True)


class AggregatorConfig(BaseModel):
    dedup_window_ms: int = Field(default=DEFAULT_DEDUP_WINDOW_MS, gt=0)
    min_confirmations: int = Field(default=2, ge=1)
    confirmation_weight_threshold: float = Field(default=2.0, ge=0.0)

    model_config = ConfigDict(frozen=True)


class SourceConfig(BaseModel):
    """
    One entry of sources.yaml.

    Polling sources use poll_interval_ms; streaming sources use
    reconnect_delay_ms and heartbeat_interval_ms.
    """
    key: str
    type: str
    enabled: bool = False
    name: Optional[str] = None
    priority: str = "low"  # low|medium|high
    url: Optional[str] = None
    api_key_env: Optional[str] = None
    base_weight: float = Field(default=1.0, gt=0.0)
    source_weight: float = Field(default=1.0, gt=0.0)
    rate_limit: RateLimitConfig
    poll_interval_ms: Optional[int] = Field(default=None, gt=0)
    reconnect_delay_ms: Optional[int] = Field(default=None, gt=0)
    heartbeat_interval_ms: Optional[int] = Field(default=None, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _has_schedule(self) -> "SourceConfig":
        if self.poll_interval_ms is None and self.reconnect_delay_ms is None:
            raise ValueError(
                f"source {self.key!r} needs poll_interval_ms (polling) "
                "or reconnect_delay_ms (streaming)"
            )
        return self

    @property
    def display_name(self) -> str:
        return self.name or self.key


@dataclass(frozen=True, slots=True)
class DeduplicationResult:
    """Outcome of Aggregator.ingest for one sighting."""
    is_duplicate: bool
    is_confirmation: bool
    record: DiscoveryRecord
    score: "TokenScore"
    newly_confirmed: bool = False
