from __future__ import annotations

"""Controlled discovery errors.

Intent:
- Nothing in the discovery core is fatal to the process.
- Adapters raise these inside their fetch path; discover() catches them and reports
  the failure kind to the Source Manager, which decides health and cooldowns.
- Only ConfigError may abort the job, and only at start-up.
"""

from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """How a failed discovery attempt is accounted for by the Source Manager."""

    TRANSIENT = "transient"          # Timeout, connection reset, 5xx
    RATE_LIMITED = "rate_limited"    # Vendor said 429; forces a cooldown
    AUTH = "auth"                    # 401/403; retrying cannot help


class DiscoveryError(RuntimeError):
    """Base error for the discovery engine; caught and logged, not propagated."""

    kind: FailureKind = FailureKind.TRANSIENT


class SourceFetchError(DiscoveryError):
    """Transient I/O failure talking to a vendor (timeout, reset, 5xx)."""


class VendorRateLimitError(DiscoveryError):
    """Vendor rejected the call with HTTP 429 or equivalent."""

    kind = FailureKind.RATE_LIMITED

    def __init__(self, message: str, retry_after_s: Optional[float] = None):
        super().__init__(message)
        self.retry_after_s = retry_after_s


class SourceAuthError(DiscoveryError):
    """Vendor rejected our credentials (HTTP 401/403)."""

    kind = FailureKind.AUTH


class MalformedPayloadError(DiscoveryError):
    """A single vendor item could not be parsed; the item is skipped."""


class UnknownSourceError(DiscoveryError):
    """Operation referenced a source id that was never registered/initialized."""


class ConfigError(DiscoveryError):
    """Invalid sources/aggregator configuration."""


# Cooldown applied after a vendor 429 when the vendor gives no longer Retry-After.
VENDOR_COOLDOWN_SECONDS = 300.0
