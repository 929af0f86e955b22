"""
Low-latency message channel (Redis pub/sub).

One shared connection, opened lazily by the first ``acquire()`` and closed
when the last ``ChannelLease`` is released.  The channel is constructed by
the application lifespan and handed to whoever needs it; there is no module
level instance.

Payloads are the closed event union from ``src.domain.events``; anything
else on the wire is dropped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from pydantic import ValidationError
from redis.exceptions import RedisError

from .pubsub import EventBus, Handler, Subscription
from .redis_client import RedisListener
from src.domain.events import ChannelEvent, parse_event
from src.domain.exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=ChannelEvent)

DEFAULT_CHANNEL = "dispatch:messages"


class ConnectionState(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class ChannelLease:
    """Interest in the channel.  Release exactly once; extra calls are no-ops."""

    def __init__(self, channel: "MessageChannel"):
        self.channel = channel
        self.released = False

    def release(self) -> None:
        """Drop interest synchronously; the disconnect, if any, runs in the background."""
        if not self.released:
            self.released = True
            self.channel._drop_lease()

    async def aclose(self) -> None:
        if not self.released:
            self.released = True
            await self.channel._drop_lease_and_wait()

    async def __aenter__(self) -> "ChannelLease":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()


class MessageChannel:
    def __init__(
        self,
        redis_factory: Callable[[], Awaitable],
        channel_name: str = DEFAULT_CHANNEL,
    ):
        self._redis_factory = redis_factory
        self.channel_name = channel_name
        self._redis = None
        self._listener: Optional[RedisListener] = None
        self._leases = 0
        self._lock = asyncio.Lock()
        self._pending_disconnect: Optional[asyncio.Task] = None
        self._buses: dict[str, EventBus[ChannelEvent]] = {}
        self.state_changes: EventBus[ConnectionState] = EventBus("connection")
        self.connected = False
        self.last_error: Optional[str] = None

    @property
    def lease_count(self) -> int:
        return self._leases

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def acquire(self) -> ChannelLease:
        async with self._lock:
            self._leases += 1
            if not self.connected:
                try:
                    await self._connect()
                except RedisError as exc:
                    self._leases -= 1
                    self.last_error = f"Connection error: {exc}"
                    await self.state_changes.publish(ConnectionState.ERROR)
                    raise StoreUnavailable("Message channel unavailable") from exc
        return ChannelLease(self)

    def _drop_lease(self) -> None:
        self._leases = max(0, self._leases - 1)
        if self._leases == 0 and self.connected:
            self._pending_disconnect = asyncio.get_running_loop().create_task(
                self._disconnect_if_idle()
            )

    async def _drop_lease_and_wait(self) -> None:
        self._drop_lease()
        if self._pending_disconnect is not None:
            await self._pending_disconnect

    async def _connect(self) -> None:
        self._redis = await self._redis_factory()
        self._listener = RedisListener(self._redis, self._on_raw)
        await self._listener.start(self.channel_name)
        self.connected = True
        self.last_error = None
        logger.info("Message channel connected (%s)", self.channel_name)
        await self.state_changes.publish(ConnectionState.CONNECTED)

    async def _disconnect_if_idle(self) -> None:
        async with self._lock:
            # A new lease may have arrived while this task was queued.
            if self._leases > 0 or not self.connected:
                return
            if self._listener is not None:
                await self._listener.stop()
            self._listener = None
            self._redis = None
            self.connected = False
            logger.info("Message channel disconnected (last lease released)")
        await self.state_changes.publish(ConnectionState.DISCONNECTED)

    # ── Events ────────────────────────────────────────────────────────

    def on(self, event_type: type[E], handler: Handler[E]) -> Subscription:
        name = event_type.model_fields["event"].default
        bus = self._buses.setdefault(name, EventBus(name))
        return bus.subscribe(handler)

    async def emit(self, event: ChannelEvent) -> bool:
        if not self.connected or self._redis is None:
            logger.warning("Message channel not connected, cannot emit %s", event.event)
            return False
        try:
            await self._redis.publish(self.channel_name, event.to_wire())
        except RedisError:
            logger.exception("Failed to emit %s", event.event)
            return False
        return True

    async def deliver(self, event: ChannelEvent) -> None:
        bus = self._buses.get(event.event)
        if bus is not None:
            await bus.publish(event)

    async def _on_raw(self, channel: str, data: str) -> None:
        try:
            event = parse_event(data)
        except ValidationError:
            logger.debug("Dropping malformed payload on %s", channel)
            return
        await self.deliver(event)
