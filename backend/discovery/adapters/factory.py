"""Build adapters from SourceConfig entries."""

from __future__ import annotations

import os
from typing import Optional

from discovery.adapters.birdeye_adapter import BirdeyeAdapter
from discovery.adapters.dextools_adapter import DextoolsAdapter
from discovery.adapters.raydium_ws_adapter import RAYDIUM_AMM_PROGRAM_ID, RaydiumWebSocketAdapter
from discovery.core.adapter import DiscoveryAdapter
from discovery.core.clock import Clock
from discovery.core.errors import ConfigError
from discovery.core.models import SourceConfig


def _api_key(cfg: SourceConfig) -> str:
    if not cfg.api_key_env:
        raise ConfigError(f"Source {cfg.key!r} needs api_key_env")
    key = (os.environ.get(cfg.api_key_env) or "").strip()
    if not key:
        raise ConfigError(f"Source {cfg.key!r}: environment variable {cfg.api_key_env} is not set")
    return key


def build_adapter(cfg: SourceConfig, clock: Optional[Clock] = None) -> DiscoveryAdapter:
    if cfg.type == "birdeye":
        return BirdeyeAdapter(
            cfg.key,
            api_key=_api_key(cfg),
            poll_interval_ms=cfg.poll_interval_ms or 60_000,
            base_url=cfg.url or None,
            name=cfg.display_name,
            limit=int(cfg.options.get("limit", 50)),
            clock=clock,
        )
    if cfg.type == "dextools":
        return DextoolsAdapter(
            cfg.key,
            api_key=_api_key(cfg),
            poll_interval_ms=cfg.poll_interval_ms or 30_000,
            min_liquidity=float(cfg.options.get("min_liquidity", 1000.0)),
            base_url=cfg.url or None,
            name=cfg.display_name,
            clock=clock,
        )
    if cfg.type == "raydium_ws":
        if not cfg.url:
            raise ConfigError(f"Source {cfg.key!r} needs a websocket url")
        return RaydiumWebSocketAdapter(
            cfg.key,
            url=cfg.url,
            program_id=str(cfg.options.get("program_id", RAYDIUM_AMM_PROGRAM_ID)),
            reconnect_delay_ms=cfg.reconnect_delay_ms or 5_000,
            heartbeat_interval_ms=cfg.heartbeat_interval_ms or 30_000,
            name=cfg.display_name,
            clock=clock,
        )
    raise ConfigError(f"Source {cfg.key!r} has unknown type {cfg.type!r}")
