"""
Dextools adapter: new and hot Solana pools (REST, polling).

Each cycle reads two endpoints. One failing endpoint does not discard the other;
the cycle only fails when both fail. Pools below min_liquidity are ignored, and
the quote side of a pair (SOL, USDC, ...) is never reported as a discovery.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from discovery.adapters.http import as_float, build_client, get_json
from discovery.core.adapter import PollingAdapter
from discovery.core.clock import Clock
from discovery.core.errors import DiscoveryError, MalformedPayloadError
from discovery.core.models import RawDiscovery

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dextools.io"
ENDPOINTS = {
    "new_pairs": ("/v2/pool/solana/new", {"sort": "creationTime", "order": "desc"}),
    "hot_pairs": ("/v2/pool/solana/hot", {"sort": "volume", "order": "desc"}),
}
QUOTE_SYMBOLS = {"SOL", "USDC", "USDT", "WSOL"}
PAIR_EXPLORER_URL = "https://www.dextools.io/app/solana/pair-explorer/"


def extract_token(pool: dict[str, Any]) -> Optional[dict[str, str]]:
    """Pick the traded token of a pool; None when nothing usable is there."""
    for side in ("token0", "token1"):
        token = pool.get(side)
        if isinstance(token, dict) and token.get("address"):
            if str(token.get("symbol", "")).upper() not in QUOTE_SYMBOLS:
                return {
                    "address": str(token["address"]),
                    "symbol": token.get("symbol") or "UNKNOWN",
                    "name": token.get("name") or "Unknown Token",
                }

    if pool.get("symbol") and pool.get("name"):
        token0 = pool.get("token0") or {}
        token1 = pool.get("token1") or {}
        address = token0.get("address") or token1.get("address") or pool.get("address")
        if address:
            return {"address": str(address), "symbol": pool["symbol"], "name": pool["name"]}
    return None


class DextoolsAdapter(PollingAdapter):
    adapter_type = "dextools"

    def __init__(
        self,
        source_id: str = "dextools",
        *,
        api_key: str,
        poll_interval_ms: int = 30_000,
        min_liquidity: float = 1000.0,
        base_url: Optional[str] = None,
        name: Optional[str] = "Dextools API",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(source_id, poll_interval_ms=poll_interval_ms, name=name, clock=clock)
        self.min_liquidity = min_liquidity
        self._client = build_client(base_url or DEFAULT_BASE_URL, {"X-API-Key": api_key}, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(self) -> list[RawDiscovery]:
        labels = list(ENDPOINTS)
        results = await asyncio.gather(*(self._fetch_endpoint(label) for label in labels), return_exceptions=True)

        items: list[RawDiscovery] = []
        errors: list[DiscoveryError] = []
        for label, result in zip(labels, results):
            if isinstance(result, DiscoveryError):
                logger.warning(f"[{self.source_id}] Failed to fetch {label}: {result}")
                errors.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                items.extend(result)

        if errors and len(errors) == len(labels):
            # Report the most severe failure: auth over rate limit over transient.
            order = {"auth": 0, "rate_limited": 1, "transient": 2}
            raise min(errors, key=lambda e: order[e.kind.value])
        return items

    async def _fetch_endpoint(self, label: str) -> list[RawDiscovery]:
        path, params = ENDPOINTS[label]
        payload = await get_json(self._client, path, self.source_id, params=params)
        results = (payload.get("data") or {}).get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            logger.warning(f"[{self.source_id}] Unexpected response from {label}")
            return []
        return self.parse_items(results, lambda pool: self._parse_pool(pool, label), self.source_id)

    def _parse_pool(self, pool: Any, endpoint: str) -> Optional[RawDiscovery]:
        if not isinstance(pool, dict):
            raise MalformedPayloadError("pool is not an object")

        liquidity = as_float(pool.get("liquidity"))
        if self.min_liquidity and liquidity is not None and liquidity < self.min_liquidity:
            return None

        token = extract_token(pool)
        if token is None:
            return None

        return RawDiscovery(
            mint=token["address"],
            symbol=token["symbol"],
            name=token["name"],
            source_id=self.source_id,
            observed_at=self.clock.now(),
            initial_price=as_float(pool.get("price")),
            initial_liquidity=liquidity,
            initial_market_cap=as_float(pool.get("marketCap")),
            metadata={
                "pool_address": pool.get("address"),
                "endpoint": endpoint,
                "creation_time": pool.get("creationTime"),
                "dextools_url": f"{PAIR_EXPLORER_URL}{pool.get('address')}",
            },
        )
