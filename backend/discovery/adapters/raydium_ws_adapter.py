"""Raydium pool-creation feed over Solana RPC `logsSubscribe` (websocket, streaming)."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from discovery.core.adapter import Connector, StreamingAdapter, decode_json_frame
from discovery.core.clock import Clock
from discovery.core.errors import MalformedPayloadError
from discovery.core.models import RawDiscovery

logger = logging.getLogger(__name__)

RAYDIUM_AMM_PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
MINT_PATTERN = re.compile(r"mint: ([A-Za-z0-9]{32,44})")


class RaydiumWebSocketAdapter(StreamingAdapter):
    adapter_type = "raydium_ws"

    def __init__(
        self,
        source_id: str = "raydium_ws",
        *,
        url: str,
        program_id: str = RAYDIUM_AMM_PROGRAM_ID,
        reconnect_delay_ms: int = 5_000,
        heartbeat_interval_ms: int = 30_000,
        name: Optional[str] = "Raydium WebSocket",
        connector: Optional[Connector] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(
            source_id,
            url=url,
            reconnect_delay_ms=reconnect_delay_ms,
            heartbeat_interval_ms=heartbeat_interval_ms,
            name=name,
            connector=connector,
            clock=clock,
        )
        self.program_id = program_id
        self.subscription_id: Optional[int] = None

    async def subscribe(self, ws: Any) -> None:
        self.subscription_id = None
        await ws.send(
            json.dumps(
                {
                    "jsonrpc": "2.0",
                    "id": 1,
                    "method": "logsSubscribe",
                    "params": [{"mentions": [self.program_id]}, {"commitment": "confirmed"}],
                }
            )
        )
        logger.debug(f"[{self.source_id}] Subscribed to logs for {self.program_id}")

    def parse_message(self, message: Any) -> list[RawDiscovery]:
        frame = decode_json_frame(message)
        if not isinstance(frame, dict):
            raise MalformedPayloadError("frame is not an object")

        if "error" in frame:
            logger.warning(f"[{self.source_id}] RPC error: {frame['error']}")
            return []
        if frame.get("id") == 1 and "result" in frame:
            self.subscription_id = frame["result"]
            logger.info(f"[{self.source_id}] Subscription id {self.subscription_id}")
            return []
        if frame.get("method") != "logsNotification":
            return []

        try:
            value = frame["params"]["result"]["value"]
        except (KeyError, TypeError) as e:
            raise MalformedPayloadError(f"notification without value: {e}") from e
        if not isinstance(value, dict) or value.get("err"):
            return []

        logs = value.get("logs") or []
        mints: list[str] = []
        for line in logs:
            for mint in MINT_PATTERN.findall(str(line)):
                if mint not in mints:
                    mints.append(mint)

        now = self.clock.now()
        return [
            RawDiscovery(
                mint=mint,
                source_id=self.source_id,
                observed_at=now,
                metadata={"program_id": self.program_id, "signature": value.get("signature")},
            )
            for mint in mints
        ]
