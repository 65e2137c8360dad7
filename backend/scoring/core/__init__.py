"""Source credibility scoring."""

from scoring.core.engine import ScoringEngine, classify_outcome, clamp_credibility
from scoring.core.models import (
    OutcomeClass,
    OutcomeReport,
    SourceMetrics,
    SourceScore,
    TokenScore,
)

__all__ = [
    "ScoringEngine",
    "classify_outcome",
    "clamp_credibility",
    "OutcomeClass",
    "OutcomeReport",
    "SourceMetrics",
    "SourceScore",
    "TokenScore",
]
