"""
Source adapter contract.

Every vendor is wrapped by one adapter. Two variants:

- PollingAdapter: REST feeds. A loop asks the Source Manager for admission, fetches,
  and sleeps. Consecutive errors stretch the sleep (extended backoff).
- StreamingAdapter: a persistent websocket. Reconnects after a delay, keeps the
  channel alive with pings and forces a reconnect when it goes quiet.

Adapters never raise out of their loops. Vendor errors are caught inside discover()
or the session, counted locally and reported to the Source Manager.
Discoveries are handed to the sink the controller binds; the adapter does not
know about deduplication or scoring.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional

import websockets

from discovery.core.clock import Clock, SystemClock
from discovery.core.errors import (
    VENDOR_COOLDOWN_SECONDS,
    DiscoveryError,
    FailureKind,
    MalformedPayloadError,
    VendorRateLimitError,
)
from discovery.core.models import RawDiscovery

if TYPE_CHECKING:
    from discovery.core.source_manager import SourceManager

logger = logging.getLogger(__name__)

DiscoverySink = Callable[[RawDiscovery], Awaitable[Any]]

DEFAULT_FETCH_TIMEOUT_S = 30.0
SEEN_CAPACITY = 10_000
SEEN_TRIM_TO = 5_000
UNHEALTHY_ERROR_COUNT = 5


class AdapterState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class DiscoveryAdapter(abc.ABC):
    """Common surface the Source Manager and the controller rely on."""

    adapter_type: str = "generic"

    def __init__(self, source_id: str, name: Optional[str] = None, *, clock: Optional[Clock] = None):
        self.source_id = source_id
        self.name = name or source_id
        self.clock: Clock = clock or SystemClock()
        self.manager: Optional["SourceManager"] = None
        self._sink: Optional[DiscoverySink] = None
        self._running = False
        self._consecutive_errors = 0
        self._total_discovered = 0
        self._seen: OrderedDict[str, None] = OrderedDict()

    def bind(self, manager: "SourceManager", sink: DiscoverySink, clock: Optional[Clock] = None) -> None:
        self.manager = manager
        self._sink = sink
        if clock is not None:
            self.clock = clock

    @property
    def is_running(self) -> bool:
        return self._running

    @abc.abstractmethod
    async def start(self) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...

    @abc.abstractmethod
    async def discover(self) -> list[RawDiscovery]:
        ...

    @abc.abstractmethod
    def is_healthy(self) -> bool:
        ...

    @abc.abstractmethod
    def last_seen_at(self) -> Optional[datetime]:
        ...

    # ---- helpers shared by both variants ----

    def _is_new(self, mint: str) -> bool:
        """Adapter-local LRU of mints already handed out."""
        if mint in self._seen:
            self._seen.move_to_end(mint)
            return False
        self._seen[mint] = None
        if len(self._seen) > SEEN_CAPACITY:
            while len(self._seen) > SEEN_TRIM_TO:
                self._seen.popitem(last=False)
        return True

    async def _deliver(self, items: Iterable[RawDiscovery]) -> int:
        delivered = 0
        for item in items:
            self._total_discovered += 1
            delivered += 1
            if self._sink is None:
                continue
            try:
                await self._sink(item)
            except Exception:  # noqa: BLE001
                logger.exception(f"[{self.source_id}] Discovery sink failed for {item.mint}")
        return delivered

    def _report_success(self) -> None:
        if self.manager is not None and self.manager.is_registered(self.source_id):
            self.manager.record_success(self.source_id)

    def _report_failure(self, reason: str, kind: FailureKind, retry_after_s: Optional[float] = None) -> None:
        if self.manager is not None and self.manager.is_registered(self.source_id):
            self.manager.record_failure(self.source_id, reason, kind, retry_after_s=retry_after_s)

    def get_stats(self) -> dict[str, Any]:
        last_seen = self.last_seen_at()
        return {
            "source_id": self.source_id,
            "name": self.name,
            "type": self.adapter_type,
            "running": self._running,
            "healthy": self.is_healthy(),
            "consecutive_errors": self._consecutive_errors,
            "total_discovered": self._total_discovered,
            "last_seen_at": last_seen.isoformat() if last_seen else None,
        }


class PollingAdapter(DiscoveryAdapter):
    """Base for REST adapters. Subclasses implement fetch().

    The first fetch runs as soon as start() is called; each later cycle waits
    next_delay_s() after the previous one.
    """

    adapter_type = "polling"

    ERROR_BACKOFF_THRESHOLD = 3
    EXTENDED_BACKOFF_S = 30.0
    MAX_BACKOFF_S = 600.0

    def __init__(
        self,
        source_id: str,
        *,
        poll_interval_ms: int,
        name: Optional[str] = None,
        fetch_timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        clock: Optional[Clock] = None,
    ):
        super().__init__(source_id, name, clock=clock)
        self.poll_interval_s = poll_interval_ms / 1000.0
        self.fetch_timeout_s = fetch_timeout_s
        self.state = AdapterState.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._last_successful_fetch: Optional[datetime] = None
        self._last_error_kind: Optional[FailureKind] = None
        self._cooldown_s = VENDOR_COOLDOWN_SECONDS

    @abc.abstractmethod
    async def fetch(self) -> list[RawDiscovery]:
        """One vendor round-trip. Raise DiscoveryError subclasses on failure."""

    async def close(self) -> None:
        """Release vendor clients. Called from stop()."""

    async def start(self) -> None:
        if self._running:
            logger.warning(f"[{self.source_id}] Already running")
            return
        self._running = True
        self.state = AdapterState.RUNNING
        self._task = asyncio.create_task(self._run(), name=f"poll-{self.source_id}")
        logger.info(f"[{self.source_id}] Polling every {self.poll_interval_s:.0f}s")

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = AdapterState.STOPPED
        await self.close()
        logger.info(f"[{self.source_id}] Stopped")

    async def _run(self) -> None:
        while self._running:
            try:
                delay_s = await self.poll_once()
            except Exception:  # noqa: BLE001
                logger.exception(f"[{self.source_id}] Poll cycle failed")
                delay_s = self.poll_interval_s
            await self.clock.sleep(delay_s)

    async def poll_once(self) -> float:
        """One admission-check + discover + deliver cycle. Returns seconds to sleep."""
        if self.manager is not None and not self.manager.can_make_request(self.source_id):
            logger.debug(f"[{self.source_id}] Rate limited locally, skipping cycle")
            return self.poll_interval_s

        items = await self.discover()
        if self._last_error_kind is None:
            await self._deliver(items)
        return self.next_delay_s()

    def next_delay_s(self) -> float:
        if self._last_error_kind == FailureKind.RATE_LIMITED:
            return self._cooldown_s
        if self._last_error_kind == FailureKind.AUTH:
            return self.MAX_BACKOFF_S
        if self._consecutive_errors >= self.ERROR_BACKOFF_THRESHOLD:
            extra = self._consecutive_errors - self.ERROR_BACKOFF_THRESHOLD
            return min(self.MAX_BACKOFF_S, self.EXTENDED_BACKOFF_S * (2 ** extra))
        return self.poll_interval_s

    async def discover(self) -> list[RawDiscovery]:
        try:
            raw_items = await asyncio.wait_for(self.fetch(), timeout=self.fetch_timeout_s)
        except VendorRateLimitError as e:
            self._cooldown_s = max(VENDOR_COOLDOWN_SECONDS, e.retry_after_s or 0.0)
            self._on_failure(str(e), e.kind, e.retry_after_s)
            return []
        except DiscoveryError as e:
            self._on_failure(str(e), e.kind)
            return []
        except asyncio.TimeoutError:
            self._on_failure(f"fetch timed out after {self.fetch_timeout_s:.0f}s", FailureKind.TRANSIENT)
            return []
        except Exception as e:  # noqa: BLE001
            logger.exception(f"[{self.source_id}] Unexpected fetch error")
            self._on_failure(f"unexpected error: {e}", FailureKind.TRANSIENT)
            return []
        finally:
            if self.manager is not None and self.manager.is_registered(self.source_id):
                self.manager.record_request(self.source_id)

        self._consecutive_errors = 0
        self._last_error_kind = None
        self._last_successful_fetch = self.clock.now()
        self._report_success()

        fresh = [item for item in raw_items if self._is_new(item.mint)]
        if fresh:
            logger.info(f"[{self.source_id}] Found {len(fresh)} new tokens")
        return fresh

    def _on_failure(self, reason: str, kind: FailureKind, retry_after_s: Optional[float] = None) -> None:
        self._consecutive_errors += 1
        self._last_error_kind = kind
        logger.warning(f"[{self.source_id}] Fetch failed ({kind.value}, #{self._consecutive_errors}): {reason}")
        self._report_failure(reason, kind, retry_after_s)

    def is_healthy(self) -> bool:
        if not self._running or self._last_successful_fetch is None:
            return False
        # Rejected credentials stay unhealthy until a fetch succeeds again.
        if self._last_error_kind == FailureKind.AUTH:
            return False
        if self._consecutive_errors >= UNHEALTHY_ERROR_COUNT:
            return False
        stale_after = timedelta(seconds=self.poll_interval_s * 3)
        return self.clock.now() - self._last_successful_fetch <= stale_after

    def last_seen_at(self) -> Optional[datetime]:
        return self._last_successful_fetch

    @staticmethod
    def parse_items(payloads: Iterable[Any], parse: Callable[[Any], Optional[RawDiscovery]], source_id: str) -> list[RawDiscovery]:
        """Parse a vendor batch; malformed items are logged and skipped."""
        items: list[RawDiscovery] = []
        for payload in payloads:
            try:
                item = parse(payload)
            except (MalformedPayloadError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"[{source_id}] Skipping malformed item: {e}")
                continue
            if item is not None:
                items.append(item)
        return items


Connector = Callable[..., Any]


def default_connector(url: str, *, open_timeout: float) -> Any:
    # Heartbeat is driven by the adapter, so the library's own keepalive is off.
    return websockets.connect(url, open_timeout=open_timeout, ping_interval=None, close_timeout=5)


class StreamingAdapter(DiscoveryAdapter):
    """Base for websocket feeds. Subclasses implement subscribe() and parse_message()."""

    adapter_type = "streaming"

    STALENESS_LIMIT_S = 300.0
    WATCHDOG_INTERVAL_S = 60.0
    MAX_HEARTBEAT_FAILURES = 3

    def __init__(
        self,
        source_id: str,
        *,
        url: str,
        reconnect_delay_ms: int,
        heartbeat_interval_ms: int = 30_000,
        name: Optional[str] = None,
        connector: Optional[Connector] = None,
        open_timeout_s: float = DEFAULT_FETCH_TIMEOUT_S,
        ping_timeout_s: float = 10.0,
        clock: Optional[Clock] = None,
    ):
        super().__init__(source_id, name, clock=clock)
        self.url = url
        self.reconnect_delay_s = reconnect_delay_ms / 1000.0
        self.heartbeat_interval_s = heartbeat_interval_ms / 1000.0
        self.open_timeout_s = open_timeout_s
        self.ping_timeout_s = ping_timeout_s
        self._connector = connector or default_connector
        self.state = AdapterState.DISCONNECTED
        self._task: Optional[asyncio.Task] = None
        self._ws: Any = None
        self._last_message_at: Optional[datetime] = None
        self._heartbeat_failures = 0
        self.parse_errors = 0
        self.reconnects = 0

    @abc.abstractmethod
    async def subscribe(self, ws: Any) -> None:
        """Send the vendor subscription on a freshly opened socket."""

    @abc.abstractmethod
    def parse_message(self, message: Any) -> list[RawDiscovery]:
        """Decode one frame. Raise MalformedPayloadError for frames that cannot be read."""

    async def start(self) -> None:
        if self._running:
            logger.warning(f"[{self.source_id}] Already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name=f"stream-{self.source_id}")

    async def stop(self) -> None:
        self._running = False
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:  # noqa: BLE001
                logger.debug(f"[{self.source_id}] Error closing socket: {e}")
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self.state = AdapterState.DISCONNECTED
        logger.info(f"[{self.source_id}] Stopped")

    async def discover(self) -> list[RawDiscovery]:
        # Push-based: discoveries arrive through the socket.
        return []

    async def _run(self) -> None:
        while self._running:
            self.state = AdapterState.CONNECTING
            logger.info(f"[{self.source_id}] Connecting to {self.url}")
            try:
                async with self._connector(self.url, open_timeout=self.open_timeout_s) as ws:
                    await self._session(ws)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self._consecutive_errors += 1
                logger.warning(f"[{self.source_id}] Connection error (#{self._consecutive_errors}): {e}")
                self._report_failure(f"connection error: {e}", FailureKind.TRANSIENT)
            finally:
                self._ws = None
                self.state = AdapterState.DISCONNECTED

            if not self._running:
                break
            self.reconnects += 1
            logger.info(f"[{self.source_id}] Reconnecting in {self.reconnect_delay_s:.1f}s")
            await self.clock.sleep(self.reconnect_delay_s)

    async def _session(self, ws: Any) -> None:
        self._ws = ws
        self.state = AdapterState.CONNECTED
        self._consecutive_errors = 0
        self._heartbeat_failures = 0
        self._last_message_at = self.clock.now()
        logger.info(f"[{self.source_id}] Connected")

        await self.subscribe(ws)
        self._report_success()

        heartbeat = asyncio.create_task(self._heartbeat(ws), name=f"heartbeat-{self.source_id}")
        watchdog = asyncio.create_task(self._watchdog(ws), name=f"watchdog-{self.source_id}")
        try:
            async for message in ws:
                await self.handle_message(message)
        finally:
            for task in (heartbeat, watchdog):
                task.cancel()
            await asyncio.gather(heartbeat, watchdog, return_exceptions=True)
        logger.warning(f"[{self.source_id}] Connection closed")

    async def handle_message(self, message: Any) -> int:
        self._last_message_at = self.clock.now()
        try:
            items = self.parse_message(message)
        except (MalformedPayloadError, ValueError) as e:
            self.parse_errors += 1
            logger.warning(f"[{self.source_id}] Skipping malformed message: {e}")
            return 0
        fresh = [item for item in items if self._is_new(item.mint)]
        return await self._deliver(fresh)

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await self.clock.sleep(self.heartbeat_interval_s)
            try:
                pong_waiter = await ws.ping()
                await asyncio.wait_for(pong_waiter, timeout=self.ping_timeout_s)
                self._heartbeat_failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                self._heartbeat_failures += 1
                logger.warning(f"[{self.source_id}] Heartbeat failed ({self._heartbeat_failures}): {e}")
                if self._heartbeat_failures >= self.MAX_HEARTBEAT_FAILURES:
                    await self._force_reconnect(ws, "heartbeat failures")
                    return

    async def _watchdog(self, ws: Any) -> None:
        while True:
            await self.clock.sleep(self.WATCHDOG_INTERVAL_S)
            if self._is_stale():
                await self._force_reconnect(ws, "no messages for too long")
                return

    def _is_stale(self) -> bool:
        last = self._last_message_at
        if last is None:
            return True
        return (self.clock.now() - last).total_seconds() > self.STALENESS_LIMIT_S

    async def _force_reconnect(self, ws: Any, reason: str) -> None:
        self._consecutive_errors += 1
        logger.warning(f"[{self.source_id}] Forcing reconnect: {reason}")
        self._report_failure(reason, FailureKind.TRANSIENT)
        try:
            await ws.close()
        except Exception as e:  # noqa: BLE001
            logger.debug(f"[{self.source_id}] Error closing socket: {e}")

    def is_healthy(self) -> bool:
        if not self._running or self.state != AdapterState.CONNECTED:
            return False
        if self._consecutive_errors >= UNHEALTHY_ERROR_COUNT:
            return False
        return not self._is_stale()

    def last_seen_at(self) -> Optional[datetime]:
        return self._last_message_at

    def get_stats(self) -> dict[str, Any]:
        stats = super().get_stats()
        stats.update(
            {
                "state": self.state.value,
                "reconnects": self.reconnects,
                "parse_errors": self.parse_errors,
            }
        )
        return stats


def decode_json_frame(message: Any) -> Any:
    if isinstance(message, (bytes, bytearray)):
        message = message.decode("utf-8", errors="replace")
    try:
        return json.loads(message)
    except json.JSONDecodeError as e:
        raise MalformedPayloadError(f"invalid JSON frame: {e}") from e
