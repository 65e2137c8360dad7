"""Birdeye adapter: newest Solana token listings (REST, polling)."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from discovery.adapters.http import as_float, build_client, get_json
from discovery.core.adapter import PollingAdapter
from discovery.core.clock import Clock
from discovery.core.errors import MalformedPayloadError
from discovery.core.models import RawDiscovery

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://public-api.birdeye.so"
NEW_TOKENS_PATH = "/defi/v3/token/new"


class BirdeyeAdapter(PollingAdapter):
    adapter_type = "birdeye"

    def __init__(
        self,
        source_id: str = "birdeye",
        *,
        api_key: str,
        poll_interval_ms: int = 60_000,
        base_url: Optional[str] = None,
        name: Optional[str] = "Birdeye API",
        limit: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(source_id, poll_interval_ms=poll_interval_ms, name=name, clock=clock)
        self.limit = limit
        self._client = build_client(base_url or DEFAULT_BASE_URL, {"X-API-KEY": api_key}, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    async def fetch(self) -> list[RawDiscovery]:
        payload = await get_json(
            self._client,
            NEW_TOKENS_PATH,
            self.source_id,
            params={"chain": "solana", "sort_by": "time", "sort_type": "desc", "limit": self.limit},
        )
        if not isinstance(payload, dict) or not payload.get("success"):
            logger.warning(f"[{self.source_id}] Response indicates failure or no tokens")
            return []
        data = payload.get("data") or {}
        tokens = data.get("tokens") if isinstance(data, dict) else None
        if not isinstance(tokens, list):
            logger.warning(f"[{self.source_id}] Response has no token list")
            return []
        return self.parse_items(tokens, self._parse_token, self.source_id)

    def _parse_token(self, token: Any) -> RawDiscovery:
        if not isinstance(token, dict) or not token.get("address"):
            raise MalformedPayloadError("token without address")
        return RawDiscovery(
            mint=str(token["address"]),
            symbol=token.get("symbol") or "UNKNOWN",
            name=token.get("name") or "Unknown Token",
            source_id=self.source_id,
            observed_at=self.clock.now(),
            initial_price=as_float(token.get("price")),
            initial_liquidity=as_float(token.get("liquidity")),
            initial_market_cap=as_float(token.get("mc")),
            metadata={
                "decimals": token.get("decimals"),
                "volume_24h": token.get("v24hUSD"),
                "volume_24h_change": token.get("v24hChangePercent"),
                "holders": token.get("holder"),
                "created_at": token.get("createdAt"),
            },
        )
