from __future__ import annotations

"""Discovery job entry point: sources -> Source Manager -> Aggregator -> events.

STRICT:
- Failure isolated per source; a source that cannot be built is skipped and logged.
- Only an unreadable/invalid sources.yaml aborts start-up.
- Structured JSON summary lines; never log API keys.
- The stats API is read-only and served from the same process.

Run:
  python discovery/jobs/run_discovery.py
"""

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, Optional

import uvicorn

# Ensure `backend/` is on sys.path so `import app...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from app.core.env import load_env_if_present  # noqa: E402
from app.main import create_app  # noqa: E402
from discovery.adapters.factory import build_adapter  # noqa: E402
from discovery.core.clock import Clock  # noqa: E402
from discovery.core.controller import DiscoveryController  # noqa: E402
from discovery.core.errors import ConfigError  # noqa: E402
from discovery.core.events import DiscoveryEvent, EventType  # noqa: E402
from discovery.core.relay import RedisEventRelay  # noqa: E402
from discovery.core.source_registry import DEFAULT_SOURCES_YAML, SourceRegistry, load_sources_yaml  # noqa: E402


logger = logging.getLogger("discovery.job")
logger.setLevel(logging.INFO)

# Ensure logs are visible when run from a scheduler / console.
if not logging.getLogger().handlers:
    logging.basicConfig(level=logging.INFO, format="%(message)s")

SUMMARY_INTERVAL_S = 300.0
DEFAULT_API_PORT = 8087


def _log(event: dict) -> None:
    logger.info(json.dumps(event, ensure_ascii=False, default=str))


def _log_event(event: DiscoveryEvent) -> None:
    entry: dict[str, Any] = {
        "event": f"discovery_{event.type.value}",
        "timestamp": event.timestamp.isoformat(),
        "source_id": event.source_id,
    }
    if event.mint:
        entry["mint"] = event.mint
    if event.score:
        entry["total_weight"] = round(event.score.get("total_weight", 0.0), 3)
        entry["confirmation_count"] = event.score.get("confirmation_count")
    if event.detail:
        entry["detail"] = event.detail
    _log(entry)


def build_controller(registry: SourceRegistry, clock: Optional[Clock] = None) -> tuple[DiscoveryController, list[dict]]:
    """Wire every enabled source. Returns the controller and one summary per source."""
    controller = DiscoveryController(clock=clock, aggregator_config=registry.aggregator)
    summaries: list[dict] = []

    for source in registry.enabled_sources():
        summary = {
            "source_key": source.key,
            "source_name": source.display_name,
            "source_type": source.type,
            "registered": False,
        }
        try:
            adapter = build_adapter(source, clock=controller.clock)
            controller.register_config(adapter, source)
            summary["registered"] = True
        except ConfigError as e:
            summary["error"] = str(e)
        summaries.append(summary)

    return controller, summaries


async def _summary_loop(controller: DiscoveryController) -> None:
    while True:
        await controller.clock.sleep(SUMMARY_INTERVAL_S)
        stats = controller.get_stats()
        _log(
            {
                "event": "discovery_run_summary",
                "timestamp": stats["timestamp"],
                "sources_count": stats["total_sources"],
                "healthy_sources": stats["healthy_sources"],
                "active_records": stats["aggregator"]["active_records"],
                "confirmed_records": stats["aggregator"]["confirmed_records"],
                "duplicates": stats["aggregator"]["duplicates"],
                "dropped_unhealthy": stats["dropped_unhealthy"],
            }
        )


async def run(registry: SourceRegistry, *, api_port: Optional[int], redis_url: Optional[str]) -> int:
    controller, summaries = build_controller(registry)
    for summary in summaries:
        _log({"event": "discovery_source_registered", **summary})

    if not any(s["registered"] for s in summaries):
        _log({"event": "discovery_no_sources", "detail": "no enabled source could be built"})
        return 1

    controller.channel.add_listener(
        _log_event,
        types=[EventType.DISCOVERED, EventType.CONFIRMED, EventType.SOURCE_UNHEALTHY, EventType.SOURCE_RECOVERED],
    )

    relay: Optional[RedisEventRelay] = None
    if redis_url:
        relay = RedisEventRelay.from_url(controller.channel, redis_url)
        await relay.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt.
            pass

    server: Optional[uvicorn.Server] = None
    server_task: Optional[asyncio.Task] = None
    if api_port:
        config = uvicorn.Config(create_app(controller), host="0.0.0.0", port=api_port, log_level="warning")
        server = uvicorn.Server(config)
        server_task = asyncio.create_task(server.serve(), name="discovery-api")

    await controller.start()
    summary_task = asyncio.create_task(_summary_loop(controller), name="discovery-summary")
    stop_task = asyncio.create_task(stop.wait(), name="discovery-stop")
    waiters = {stop_task} if server_task is None else {stop_task, server_task}
    try:
        # The API server exits on SIGINT/SIGTERM too; either one ends the run.
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (summary_task, stop_task):
            task.cancel()
        await asyncio.gather(summary_task, stop_task, return_exceptions=True)
        await controller.stop()
        if relay is not None:
            await relay.stop()
        if server is not None and server_task is not None:
            server.should_exit = True
            await asyncio.gather(server_task, return_exceptions=True)

    stats = controller.get_stats()
    _log(
        {
            "event": "discovery_stopped",
            "active_records": stats["aggregator"]["active_records"],
            "confirmed_records": stats["aggregator"]["confirmed_records"],
        }
    )
    return 0


def main() -> int:
    load_env_if_present()

    cfg_path = os.environ.get("DISCOVERY_SOURCES_YAML") or str(DEFAULT_SOURCES_YAML)
    try:
        registry = load_sources_yaml(Path(cfg_path))
    except ConfigError as e:
        _log({"event": "discovery_config_error", "path": cfg_path, "error": str(e)})
        return 2

    port_raw = os.environ.get("DISCOVERY_API_PORT", str(DEFAULT_API_PORT)).strip()
    api_port = int(port_raw) if port_raw and port_raw != "0" else None
    redis_url = os.environ.get("DISCOVERY_REDIS_URL") or None

    try:
        return asyncio.run(run(registry, api_port=api_port, redis_url=redis_url))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
