"""
Shared HTTP plumbing for REST polling adapters.

Maps vendor responses onto the discovery error taxonomy:
- 429            -> VendorRateLimitError (Retry-After honoured when numeric)
- 401 / 403      -> SourceAuthError
- other >= 400   -> SourceFetchError
- network errors -> SourceFetchError
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from discovery.core.errors import (
    MalformedPayloadError,
    SourceAuthError,
    SourceFetchError,
    VendorRateLimitError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


def build_client(
    base_url: str,
    headers: dict[str, str],
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    timeout_s: float = DEFAULT_TIMEOUT_S,
) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"Accept": "application/json", **headers},
        timeout=timeout_s,
        follow_redirects=True,
        transport=transport,
    )


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def check_vendor_status(response: httpx.Response, source_id: str) -> None:
    status = response.status_code
    if status == 429:
        raise VendorRateLimitError(f"{source_id}: HTTP 429", retry_after_s=_retry_after_seconds(response))
    if status in (401, 403):
        raise SourceAuthError(f"{source_id}: HTTP {status} (check API key)")
    if status >= 400:
        raise SourceFetchError(f"{source_id}: HTTP {status}")


async def get_json(client: httpx.AsyncClient, path: str, source_id: str, params: Optional[dict[str, Any]] = None) -> Any:
    try:
        response = await client.get(path, params=params)
    except httpx.TimeoutException as e:
        raise SourceFetchError(f"{source_id}: timeout calling {path}") from e
    except httpx.HTTPError as e:
        raise SourceFetchError(f"{source_id}: network error calling {path}: {e}") from e

    check_vendor_status(response, source_id)
    try:
        return response.json()
    except ValueError as e:
        raise MalformedPayloadError(f"{source_id}: response from {path} is not JSON") from e


def as_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
