"""
Event channel for discovery and source lifecycle notifications.

Producers (Source Manager, Aggregator) publish; downstream consumers (alerting,
trading, persistence, the Redis relay) each own a bounded subscription queue.
Publishing never blocks: a full subscriber queue drops its oldest event and counts
the drop. Order is preserved per subscriber, hence per source.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


class EventType(str, Enum):
    SOURCE_HEALTHY = "source_healthy"
    SOURCE_UNHEALTHY = "source_unhealthy"
    SOURCE_RECOVERED = "source_recovered"
    DISCOVERED = "discovered"
    CONFIRMATION = "confirmation"   # another source sighted a known asset
    CONFIRMED = "confirmed"         # record crossed both confirmation gates


class DiscoveryEvent(BaseModel):
    type: EventType
    timestamp: datetime
    source_id: Optional[str] = None
    mint: Optional[str] = None
    record: Optional[dict[str, Any]] = None
    score: Optional[dict[str, Any]] = None
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class Subscription:
    """Bounded FIFO of events for one consumer."""

    def __init__(self, types: Optional[Iterable[EventType]], maxsize: int):
        self.types = frozenset(types) if types else None
        self._queue: Deque[DiscoveryEvent] = deque(maxlen=maxsize)
        self._lock = threading.Lock()
        self._waiters: list[asyncio.Future] = []
        self.dropped = 0

    def wants(self, event: DiscoveryEvent) -> bool:
        return self.types is None or event.type in self.types

    def put(self, event: DiscoveryEvent) -> None:
        with self._lock:
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            waiters, self._waiters = self._waiters, []
        for fut in waiters:
            if not fut.done():
                fut.get_loop().call_soon_threadsafe(_resolve, fut)

    def get_nowait(self) -> Optional[DiscoveryEvent]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def drain(self) -> list[DiscoveryEvent]:
        with self._lock:
            events = list(self._queue)
            self._queue.clear()
        return events

    async def get(self) -> DiscoveryEvent:
        while True:
            event = self.get_nowait()
            if event is not None:
                return event
            fut = asyncio.get_running_loop().create_future()
            with self._lock:
                if self._queue:
                    continue
                self._waiters.append(fut)
            await fut

    def __len__(self) -> int:
        return len(self._queue)


def _resolve(fut: asyncio.Future) -> None:
    if not fut.done():
        fut.set_result(None)


class EventChannel:
    """Publish/subscribe hub. Constructed explicitly and injected, never global."""

    def __init__(self, default_queue_size: int = DEFAULT_QUEUE_SIZE):
        self._default_queue_size = default_queue_size
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[Optional[frozenset], Callable[[DiscoveryEvent], None]]] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        types: Optional[Iterable[EventType]] = None,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        sub = Subscription(types, maxsize or self._default_queue_size)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def add_listener(
        self,
        handler: Callable[[DiscoveryEvent], None],
        types: Optional[Iterable[EventType]] = None,
    ) -> None:
        """Synchronous hook, invoked inline. Handler errors are logged and contained."""
        with self._lock:
            self._listeners.append((frozenset(types) if types else None, handler))

    def publish(self, event: DiscoveryEvent) -> None:
        with self._lock:
            subs = list(self._subscriptions)
            listeners = list(self._listeners)

        for sub in subs:
            if sub.wants(event):
                before = sub.dropped
                sub.put(event)
                if sub.dropped != before:
                    logger.warning(f"Subscriber queue full; dropped oldest event ({sub.dropped} total)")

        for types, handler in listeners:
            if types is not None and event.type not in types:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event listener failed for {event.type.value}")

    def emit(self, event_type: EventType, timestamp: datetime, **fields: Any) -> DiscoveryEvent:
        event = DiscoveryEvent(type=event_type, timestamp=timestamp, **fields)
        self.publish(event)
        return event
