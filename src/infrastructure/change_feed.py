"""
Row-change notification feed.

After every committed booking write the writer publishes
``{event: INSERT|UPDATE, table, row}`` to two Redis channels:

* ``changes:bookings``        -- table-wide, consumed by candidate pools
* ``changes:bookings:<id>``   -- per row, consumed by tracking sessions

Observers of the same booking id share one underlying Redis subscription;
the last observer to leave unsubscribes it.  Deliveries for one booking
arrive in publish order, which is commit order because each transition is
published by the writer right after its own commit.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError

from .pubsub import EventBus, Handler, Subscription
from .redis_client import RedisListener
from src.domain.entities import Booking, ChangeNotification, Location
from src.domain.enums import BookingStatus, ChangeType

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"


class BookingRow(BaseModel):
    """Wire shape of one ``bookings`` row."""

    id: str
    requester_id: str
    driver_id: Optional[str] = None
    pickup_address: str
    pickup_lat: float
    pickup_lng: float
    destination_address: str
    destination_lat: float
    destination_lng: float
    status: BookingStatus
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingRow":
        return cls(
            id=booking.id,
            requester_id=booking.requester_id,
            driver_id=booking.driver_id,
            pickup_address=booking.pickup.address,
            pickup_lat=booking.pickup.latitude,
            pickup_lng=booking.pickup.longitude,
            destination_address=booking.destination.address,
            destination_lat=booking.destination.latitude,
            destination_lng=booking.destination.longitude,
            status=booking.status,
            created_at=booking.created_at,
            accepted_at=booking.accepted_at,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            cancelled_by=booking.cancelled_by,
            cancellation_reason=booking.cancellation_reason,
        )

    def to_booking(self) -> Booking:
        return Booking(
            id=self.id,
            requester_id=self.requester_id,
            driver_id=self.driver_id,
            pickup=Location(self.pickup_address, self.pickup_lat, self.pickup_lng),
            destination=Location(
                self.destination_address, self.destination_lat, self.destination_lng
            ),
            status=self.status,
            created_at=self.created_at,
            accepted_at=self.accepted_at,
            started_at=self.started_at,
            completed_at=self.completed_at,
            cancelled_at=self.cancelled_at,
            cancelled_by=self.cancelled_by,
            cancellation_reason=self.cancellation_reason,
        )


class ChangeMessage(BaseModel):
    event: ChangeType
    table: str
    row: BookingRow

    def to_notification(self) -> ChangeNotification:
        return ChangeNotification(
            event=self.event, table=self.table, booking=self.row.to_booking()
        )


def table_channel(table: str) -> str:
    return f"changes:{table}"


def row_channel(table: str, row_id: str) -> str:
    return f"changes:{table}:{row_id}"


class ChangeFeed:
    def __init__(self, redis_factory: Callable[[], Awaitable]):
        self._redis_factory = redis_factory
        self._redis = None
        self._listener: Optional[RedisListener] = None
        self._buses: dict[str, EventBus[ChangeNotification]] = {}
        self._background: set[asyncio.Task] = set()

    async def start(self) -> None:
        self._redis = await self._redis_factory()
        self._listener = RedisListener(self._redis, self._on_raw)
        await self._listener.start()
        logger.info("Change feed started")

    async def stop(self) -> None:
        if self._listener is not None:
            await self._listener.stop()
        self._listener = None
        pending = list(self._background)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Change feed stopped")

    # ── Publishing ────────────────────────────────────────────────────

    async def publish(self, event: ChangeType, booking: Booking) -> None:
        """Announce a committed write.  Failures are logged, never raised."""
        if self._redis is None:
            return
        payload = ChangeMessage(
            event=event, table=BOOKINGS_TABLE, row=BookingRow.from_booking(booking)
        ).model_dump_json()
        try:
            await self._redis.publish(table_channel(BOOKINGS_TABLE), payload)
            await self._redis.publish(row_channel(BOOKINGS_TABLE, booking.id), payload)
        except RedisError:
            logger.exception("Failed to publish change for booking %s", booking.id)

    # ── Subscribing ───────────────────────────────────────────────────

    async def subscribe(
        self,
        handler: Handler[ChangeNotification],
        *,
        table: str = BOOKINGS_TABLE,
        row_id: Optional[str] = None,
    ) -> Subscription:
        channel = row_channel(table, row_id) if row_id else table_channel(table)
        bus = self._buses.get(channel)
        if bus is None:
            bus = self._buses[channel] = EventBus(channel)
            if self._listener is not None:
                await self._listener.subscribe(channel)
        inner = bus.subscribe(handler)

        def release() -> None:
            inner.unsubscribe()
            if len(bus) == 0 and self._buses.get(channel) is bus:
                del self._buses[channel]
                self._spawn(self._unsubscribe(channel))

        return Subscription(release)

    def observers(self, channel: str) -> int:
        bus = self._buses.get(channel)
        return len(bus) if bus else 0

    async def deliver(self, channel: str, notification: ChangeNotification) -> None:
        bus = self._buses.get(channel)
        if bus is not None:
            await bus.publish(notification)

    async def _on_raw(self, channel: str, data: str) -> None:
        try:
            message = ChangeMessage.model_validate_json(data)
        except ValidationError:
            logger.debug("Dropping malformed change on %s", channel)
            return
        await self.deliver(channel, message.to_notification())

    async def _unsubscribe(self, channel: str) -> None:
        # Someone may have re-subscribed while this was queued.
        if channel in self._buses or self._listener is None:
            return
        try:
            await self._listener.unsubscribe(channel)
        except RedisError:
            logger.warning("Could not unsubscribe from %s", channel)

    def _spawn(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
