"""Redis pub/sub relay for discovery events.

Best-effort: every event is published as JSON on one channel. A Redis outage is
logged and the event is dropped; the engine never waits on Redis.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from discovery.core.events import EventChannel, EventType, Subscription

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "discovery:events"


class RedisEventRelay:
    def __init__(
        self,
        channel: EventChannel,
        client: Any,
        *,
        redis_channel: str = DEFAULT_CHANNEL,
        types: Optional[Iterable[EventType]] = None,
    ):
        self.channel = channel
        self.client = client
        self.redis_channel = redis_channel
        self._types = types
        self._subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.published = 0
        self.failed = 0

    @classmethod
    def from_url(cls, channel: EventChannel, url: str, **kwargs: Any) -> "RedisEventRelay":
        return cls(channel, aioredis.from_url(url), **kwargs)

    async def start(self) -> None:
        if self._task is not None:
            return
        self._subscription = self.channel.subscribe(self._types)
        self._task = asyncio.create_task(self._run(), name="redis-event-relay")
        logger.info(f"Relaying discovery events to Redis channel {self.redis_channel}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._subscription is not None:
            # Flush whatever is still queued.
            for event in self._subscription.drain():
                await self.publish(event.model_dump_json())
            self.channel.unsubscribe(self._subscription)
            self._subscription = None
        await self.client.aclose()

    async def _run(self) -> None:
        assert self._subscription is not None
        while True:
            event = await self._subscription.get()
            await self.publish(event.model_dump_json())

    async def publish(self, payload: str) -> bool:
        try:
            await self.client.publish(self.redis_channel, payload)
        except (RedisError, OSError) as e:
            self.failed += 1
            logger.warning(f"Redis publish failed ({self.failed} total): {e}")
            return False
        self.published += 1
        return True
