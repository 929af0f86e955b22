"""Redis async connection pool and a pub/sub listener shared by the feeds."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

import redis.asyncio as aioredis

from src.config import settings

logger = logging.getLogger(__name__)

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url, decode_responses=True
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)


class RedisListener:
    """
    One Redis pub/sub connection plus the task that drains it.

    ``on_message(channel, data)`` is awaited for every published message, in
    arrival order.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        on_message: Callable[[str, str], Awaitable[None]],
    ):
        self.client = client
        self.on_message = on_message
        self.pubsub: Optional[aioredis.client.PubSub] = None
        self.task: Optional[asyncio.Task] = None

    async def start(self, *channels: str) -> None:
        self.pubsub = self.client.pubsub()
        if channels:
            await self.pubsub.subscribe(*channels)
        self.task = asyncio.create_task(self._drain())

    async def subscribe(self, channel: str) -> None:
        if self.pubsub is not None:
            await self.pubsub.subscribe(channel)

    async def unsubscribe(self, channel: str) -> None:
        if self.pubsub is not None:
            await self.pubsub.unsubscribe(channel)

    async def stop(self) -> None:
        if self.task:
            self.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self.task
            self.task = None
        if self.pubsub is not None:
            await self.pubsub.aclose()
            self.pubsub = None

    async def _drain(self) -> None:
        assert self.pubsub is not None
        while True:
            # get_message returns immediately while nothing is subscribed yet
            if not self.pubsub.subscribed:
                await asyncio.sleep(0.1)
                continue
            message = await self.pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message is None or message.get("type") != "message":
                continue
            try:
                await self.on_message(message["channel"], message["data"])
            except Exception:
                logger.exception("Error handling message on %s", message["channel"])
