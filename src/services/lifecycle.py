"""
Booking lifecycle service
=========================

Runs state-machine plans against the store.  Each action is:

1. read the booking as it is now,
2. build the guarded write plan (``src.domain.state_machine``),
3. issue the conditional ``UPDATE`` and commit,
4. re-read the row and return it with the outcome.

Zero rows affected -> ``Outcome.LOST_RACE``.  So is a plan the state machine
refuses (the booking already moved on, or the caller may not touch it): the
caller gets the current row back and shows that.  Nothing here retries a
write.

Database failures surface as ``StoreUnavailable`` for the action boundary to
turn into a retryable notice.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.entities import Booking, Location, Session, TransitionResult
from src.domain.enums import BookingEvent, ChangeType, Outcome, Role
from src.domain.events import BookingAccept, BookingRequest, BookingStatusUpdate
from src.domain.exceptions import (
    ActiveTripExists,
    ActorNotPermitted,
    BookingNotFound,
    DriverUnavailable,
    InvalidStateTransition,
    StoreUnavailable,
)
from src.domain.state_machine import plan_transition
from src.infrastructure.change_feed import ChangeFeed
from src.infrastructure.locks import BookingLease
from src.infrastructure.message_channel import MessageChannel
from src.infrastructure.repositories import BookingRepository, DriverRepository

logger = logging.getLogger(__name__)


class BookingLifecycle:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        change_feed: Optional[ChangeFeed] = None,
        channel: Optional[MessageChannel] = None,
        redis_factory: Optional[Callable[[], Awaitable]] = None,
        *,
        accept_lease_enabled: bool = settings.accept_lease_enabled,
        accept_lease_ttl_seconds: int = settings.accept_lease_ttl_seconds,
        enforce_single_active_trip: bool = settings.enforce_single_active_trip,
    ):
        self._session_factory = session_factory
        self._change_feed = change_feed
        self._channel = channel
        self._redis_factory = redis_factory
        self.accept_lease_enabled = accept_lease_enabled
        self.accept_lease_ttl_seconds = accept_lease_ttl_seconds
        self.enforce_single_active_trip = enforce_single_active_trip

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, booking_id: str) -> Booking:
        try:
            async with self._session_factory() as session:
                booking = await BookingRepository(session).get_by_id(booking_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not load booking") from exc
        if booking is None:
            raise BookingNotFound(f"Booking {booking_id} not found")
        return booking

    # ── Actions ───────────────────────────────────────────────────────

    async def create(
        self, requester: Session, pickup: Location, destination: Location
    ) -> Booking:
        if requester.role != Role.REQUESTER:
            raise ActorNotPermitted("Only requesters can book an ambulance")
        try:
            async with self._session_factory() as session:
                booking = await BookingRepository(session).create_booking(
                    requester_id=requester.user_id,
                    pickup=pickup,
                    destination=destination,
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not create booking") from exc

        logger.info("Booking %s created by %s", booking.id, requester.user_id)
        if self._change_feed is not None:
            await self._change_feed.publish(ChangeType.INSERT, booking)
        if self._channel is not None:
            await self._channel.emit(
                BookingRequest(
                    booking_id=booking.id,
                    requester_id=booking.requester_id,
                    pickup_address=pickup.address,
                    pickup_lat=pickup.latitude,
                    pickup_lng=pickup.longitude,
                    destination_address=destination.address,
                    destination_lat=destination.latitude,
                    destination_lng=destination.longitude,
                )
            )
        return booking

    async def accept(self, booking_id: str, driver: Session) -> TransitionResult:
        await self._check_driver_can_accept(driver)

        if not (self.accept_lease_enabled and self._redis_factory):
            return await self._transition(booking_id, BookingEvent.ACCEPT, driver)

        lease = BookingLease(
            await self._redis_factory(), booking_id, self.accept_lease_ttl_seconds
        )
        if not await lease.acquire():
            logger.info("Lease on booking %s held elsewhere; %s lost", booking_id, driver.user_id)
            return TransitionResult(Outcome.LOST_RACE, await self.get(booking_id))
        try:
            return await self._transition(booking_id, BookingEvent.ACCEPT, driver)
        finally:
            await lease.release()

    async def cancel(
        self, booking_id: str, actor: Session, reason: Optional[str] = None
    ) -> TransitionResult:
        return await self._transition(booking_id, BookingEvent.CANCEL, actor, reason)

    async def start_en_route(self, booking_id: str, driver: Session) -> TransitionResult:
        return await self._transition(booking_id, BookingEvent.START_EN_ROUTE, driver)

    async def arrive(self, booking_id: str, driver: Session) -> TransitionResult:
        return await self._transition(booking_id, BookingEvent.ARRIVE, driver)

    async def start_trip(self, booking_id: str, driver: Session) -> TransitionResult:
        return await self._transition(booking_id, BookingEvent.START_TRIP, driver)

    async def complete(self, booking_id: str, driver: Session) -> TransitionResult:
        return await self._transition(booking_id, BookingEvent.COMPLETE, driver)

    async def fire(
        self,
        event: BookingEvent,
        booking_id: str,
        actor: Session,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Dispatch *event* to the matching action."""
        if event == BookingEvent.ACCEPT:
            return await self.accept(booking_id, actor)
        if event == BookingEvent.CANCEL:
            return await self.cancel(booking_id, actor, reason)
        return await self._transition(booking_id, event, actor)

    # ── Internals ─────────────────────────────────────────────────────

    async def _check_driver_can_accept(self, driver: Session) -> None:
        if driver.role != Role.DRIVER:
            raise ActorNotPermitted("Only drivers can accept bookings")
        try:
            async with self._session_factory() as session:
                available = await DriverRepository(session).is_available(driver.user_id)
                active = 0
                if self.enforce_single_active_trip:
                    active = await BookingRepository(session).count_active_for_driver(
                        driver.user_id
                    )
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not check driver availability") from exc
        if not available:
            raise DriverUnavailable(f"Driver {driver.user_id} is not available")
        if active:
            raise ActiveTripExists(f"Driver {driver.user_id} already has an active booking")

    async def _transition(
        self,
        booking_id: str,
        event: BookingEvent,
        actor: Session,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        try:
            async with self._session_factory() as session:
                repo = BookingRepository(session)
                booking = await repo.get_by_id(booking_id)
                if booking is None:
                    raise BookingNotFound(f"Booking {booking_id} not found")
                await session.commit()

                try:
                    plan = plan_transition(booking, event, actor, reason=reason)
                except (InvalidStateTransition, ActorNotPermitted) as exc:
                    logger.info("Refused %s on %s: %s", event.value, booking_id, exc)
                    return TransitionResult(Outcome.LOST_RACE, booking)

                rows = await repo.guarded_transition(
                    plan.booking_id,
                    plan.expected_status,
                    plan.new_fields,
                    require_unassigned=plan.require_unassigned,
                    expected_driver_id=plan.expected_driver_id,
                )
                await session.commit()
                current = await repo.get_by_id(booking_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Could not {event.value} booking") from exc

        if rows == 0:
            logger.info(
                "%s on booking %s by %s lost the race (now %s)",
                event.value,
                booking_id,
                actor.user_id,
                current.status.value,
            )
            return TransitionResult(Outcome.LOST_RACE, current)

        logger.info(
            "Booking %s: %s -> %s by %s",
            booking_id,
            plan.expected_status.value,
            current.status.value,
            actor.user_id,
        )
        await self._announce(event, current)
        return TransitionResult(Outcome.APPLIED, current)

    async def _announce(self, event: BookingEvent, booking: Booking) -> None:
        if self._change_feed is not None:
            await self._change_feed.publish(ChangeType.UPDATE, booking)
        if self._channel is None:
            return
        if event == BookingEvent.ACCEPT:
            await self._channel.emit(
                BookingAccept(booking_id=booking.id, driver_id=booking.driver_id)
            )
        else:
            await self._channel.emit(
                BookingStatusUpdate(booking_id=booking.id, status=booking.status)
            )
