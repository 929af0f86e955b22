"""
Dispatch service -- wires the in-memory ``DispatchMatcher`` to the lifecycle,
the change feed and the message channel.

On start it seeds the matcher from the store (drivers and pending bookings),
then keeps the pools in step from two directions: the table-wide change feed
and ``bookingAccept`` / ``bookingStatusUpdate`` messages.  Either may arrive
before or after the action's own result; every matcher update is idempotent.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.entities import Booking, DriverPosition, Location, Session, TransitionResult
from src.domain.enums import BookingEvent, Role
from src.domain.events import (
    BookingAccept,
    BookingRequest,
    BookingStatusUpdate,
    DriverAvailabilityChanged,
)
from src.domain.exceptions import ActorNotPermitted, DriverUnavailable, StoreUnavailable
from src.domain.matcher import DispatchMatcher
from src.infrastructure.change_feed import ChangeFeed
from src.infrastructure.message_channel import ChannelLease, MessageChannel
from src.infrastructure.pubsub import Subscription
from src.infrastructure.repositories import BookingRepository, DriverRepository
from src.services.broadcaster import LocationBroadcaster
from src.services.lifecycle import BookingLifecycle

logger = logging.getLogger(__name__)


class DispatchService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: BookingLifecycle,
        change_feed: Optional[ChangeFeed] = None,
        channel: Optional[MessageChannel] = None,
        matcher: Optional[DispatchMatcher] = None,
    ):
        self._session_factory = session_factory
        self.lifecycle = lifecycle
        self._change_feed = change_feed
        self._channel = channel
        self.matcher = matcher or DispatchMatcher()
        self._lease: Optional[ChannelLease] = None
        self._subscriptions: list[Subscription] = []
        self._broadcasters: dict[str, LocationBroadcaster] = {}

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._channel is not None:
            self._lease = await self._channel.acquire()
            self._subscriptions += [
                self._channel.on(BookingAccept, self.matcher.apply_message),
                self._channel.on(BookingStatusUpdate, self.matcher.apply_message),
                self._channel.on(BookingRequest, self._on_booking_request),
            ]
        if self._change_feed is not None:
            self._subscriptions.append(
                await self._change_feed.subscribe(self.matcher.apply_change)
            )
        await self.seed()
        logger.info(
            "Dispatch service started (%d drivers registered)", len(self.matcher.drivers)
        )

    async def stop(self) -> None:
        for broadcaster in self._broadcasters.values():
            await broadcaster.shutdown()
        self._broadcasters.clear()
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()
        if self._lease is not None:
            await self._lease.aclose()
            self._lease = None
        logger.info("Dispatch service stopped")

    async def seed(self) -> None:
        """Load drivers and pending, unassigned bookings from the store."""
        try:
            async with self._session_factory() as session:
                drivers = await DriverRepository(session).list_drivers()
                pending = await BookingRepository(session).list_pending_unassigned()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not seed dispatch pools") from exc
        for driver in drivers:
            self.matcher.register_driver(driver.id, driver.is_available)
        for booking in pending:
            self.matcher.offer(booking)

    # ── Actions ───────────────────────────────────────────────────────

    async def create(
        self, requester: Session, pickup: Location, destination: Location
    ) -> Booking:
        booking = await self.lifecycle.create(requester, pickup, destination)
        self.matcher.offer(booking)
        return booking

    async def accept(self, booking_id: str, driver: Session) -> TransitionResult:
        result = await self.lifecycle.accept(booking_id, driver)
        self.matcher.record_accept_result(driver.user_id, result)
        return result

    async def cancel(
        self, booking_id: str, actor: Session, reason: Optional[str] = None
    ) -> TransitionResult:
        result = await self.lifecycle.cancel(booking_id, actor, reason)
        if result.applied:
            self.matcher.withdraw(booking_id)
        return result

    async def fire(
        self,
        event: BookingEvent,
        booking_id: str,
        actor: Session,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        if event == BookingEvent.ACCEPT:
            return await self.accept(booking_id, actor)
        if event == BookingEvent.CANCEL:
            return await self.cancel(booking_id, actor, reason)
        return await self.lifecycle.fire(event, booking_id, actor)

    async def candidates(self, driver: Session) -> list[Booking]:
        if driver.role != Role.DRIVER:
            raise ActorNotPermitted("Only drivers have a candidate pool")
        if driver.user_id not in self.matcher.drivers:
            await self._register_from_store(driver.user_id)
        return self.matcher.candidates(driver.user_id)

    async def set_availability(
        self, driver: Session, available: bool, position: Optional[DriverPosition] = None
    ) -> bool:
        if driver.role != Role.DRIVER:
            raise ActorNotPermitted("Only drivers can change availability")
        try:
            async with self._session_factory() as session:
                repo = DriverRepository(session)
                if not await repo.set_availability(driver.user_id, available):
                    raise DriverUnavailable(f"Unknown driver {driver.user_id}")
                if position is not None:
                    await repo.save_position(position)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not update availability") from exc

        self.matcher.set_availability(driver.user_id, available)
        if self._channel is not None:
            await self._channel.emit(
                DriverAvailabilityChanged(
                    driver_id=driver.user_id,
                    is_available=available,
                    lat=position.latitude if position else None,
                    lng=position.longitude if position else None,
                )
            )
        if not available:
            broadcaster = self._broadcasters.pop(driver.user_id, None)
            if broadcaster is not None:
                broadcaster.stop()
        logger.info(
            "Driver %s is now %s", driver.user_id, "available" if available else "unavailable"
        )
        return available

    async def report_position(self, driver: Session, position: DriverPosition) -> None:
        """A position pushed by the driver's device: live sample plus periodic snapshot."""
        if driver.role != Role.DRIVER:
            raise ActorNotPermitted("Only drivers report positions")
        broadcaster = self._broadcasters.get(driver.user_id)
        if broadcaster is None:
            broadcaster = self._broadcasters[driver.user_id] = LocationBroadcaster(
                driver.user_id,
                self._channel,
                self._session_factory,
                snapshot_every=settings.snapshot_every_n_samples,
            )
        await broadcaster.publish(position)

    # ── Internals ─────────────────────────────────────────────────────

    async def _register_from_store(self, driver_id: str) -> None:
        try:
            async with self._session_factory() as session:
                available = await DriverRepository(session).is_available(driver_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not load driver") from exc
        self.matcher.register_driver(driver_id, available)

    async def _on_booking_request(self, event: BookingRequest) -> None:
        # Requests raised by another process; the row itself is authoritative.
        if self.matcher.pending(event.booking_id) is not None:
            return
        try:
            async with self._session_factory() as session:
                booking = await BookingRepository(session).get_by_id(event.booking_id)
        except SQLAlchemyError:
            logger.exception("Could not load requested booking %s", event.booking_id)
            return
        if booking is not None:
            self.matcher.offer(booking)
