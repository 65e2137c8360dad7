"""Scoring data models.

SourceMetrics is the only mutable model and belongs to the Scoring Engine.
SourceScore and TokenScore are derived views, computed on demand.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

CREDIBILITY_FLOOR = 0.1
CREDIBILITY_CEILING = 1.0


class OutcomeClass(str, Enum):
    SUCCESSFUL = "successful"
    RUG = "rug"
    NEUTRAL = "neutral"


class SourceMetrics(BaseModel):
    source_id: str
    base_weight: float = 1.0
    total_found: int = Field(default=0, ge=0)
    successful_found: int = Field(default=0, ge=0)
    rug_count: int = Field(default=0, ge=0)
    outcome_count: int = Field(default=0, ge=0)
    average_latency_ms: float = 0.0
    average_gain: float = 0.0
    credibility_score: float = Field(ge=CREDIBILITY_FLOOR, le=CREDIBILITY_CEILING)
    last_seen: datetime

    model_config = ConfigDict(validate_assignment=True)


class OutcomeReport(BaseModel):
    """Delayed ground truth for one discovered asset, as seen by one source.

    discovered_at is when the asset was first discovered; the engine falls back
    to the recording time when it is missing.
    """
    latency_ms: float = Field(ge=0.0)
    max_multiplier: float = Field(ge=0.0)
    was_rug: bool = False
    volume: float = Field(default=0.0, ge=0.0)
    discovered_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True)


class SourceScore(BaseModel):
    source_id: str
    credibility_score: float
    success_rate: float
    average_latency_ms: float
    recent_performance: float
    weight: float

    model_config = ConfigDict(frozen=True)


class TokenScore(BaseModel):
    mint: str
    total_weight: float
    confirmation_count: int
    first_confirmation_latency_ms: float
    credibility_score: float

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True, slots=True)
class RecordedOutcome:
    mint: str
    source_id: str
    outcome_class: OutcomeClass
    discovered_at: datetime
