"""Discovery core primitives.

Only leaf modules are re-exported here. Components that depend on the Scoring
Engine (Aggregator, DiscoveryController) are imported from their own modules.
"""

from discovery.core.clock import Clock, ManualClock, SystemClock
from discovery.core.errors import (
    ConfigError,
    DiscoveryError,
    FailureKind,
    MalformedPayloadError,
    SourceAuthError,
    SourceFetchError,
    UnknownSourceError,
    VendorRateLimitError,
)
from discovery.core.events import DiscoveryEvent, EventChannel, EventType, Subscription
from discovery.core.models import (
    AggregatorConfig,
    DeduplicationResult,
    DiscoveryConfirmation,
    DiscoveryRecord,
    DiscoveryStatus,
    RateLimitConfig,
    RawDiscovery,
    SourceConfig,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "ConfigError",
    "DiscoveryError",
    "FailureKind",
    "MalformedPayloadError",
    "SourceAuthError",
    "SourceFetchError",
    "UnknownSourceError",
    "VendorRateLimitError",
    "DiscoveryEvent",
    "EventChannel",
    "EventType",
    "Subscription",
    "AggregatorConfig",
    "DeduplicationResult",
    "DiscoveryConfirmation",
    "DiscoveryRecord",
    "DiscoveryStatus",
    "RateLimitConfig",
    "RawDiscovery",
    "SourceConfig",
]
