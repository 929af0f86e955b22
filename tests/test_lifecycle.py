"""
Booking lifecycle against a real (SQLite) store: guarded writes, lost races,
history queries, and what gets announced after a commit.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from src.domain.entities import Session
from src.domain.enums import BookingStatus, ChangeType, Outcome, Role
from src.domain.events import BookingAccept, BookingRequest, BookingStatusUpdate
from src.domain.exceptions import (
    ActiveTripExists,
    ActorNotPermitted,
    BookingNotFound,
    DriverUnavailable,
    StoreUnavailable,
)
from src.infrastructure.repositories import BookingRepository
from src.services.lifecycle import BookingLifecycle
from tests.conftest import DESTINATION, PICKUP, add_booking, add_user


def _announcers():
    feed = AsyncMock()
    channel = AsyncMock()
    return feed, channel


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_persists_pending_and_announces(self, session_factory, requester):
        feed, channel = _announcers()
        lifecycle = BookingLifecycle(session_factory, feed, channel)

        booking = await lifecycle.create(requester, PICKUP, DESTINATION)

        assert booking.status == BookingStatus.PENDING
        assert booking.driver_id is None
        assert booking.created_at is not None
        assert (await lifecycle.get(booking.id)).pickup == PICKUP
        feed.publish.assert_awaited_once_with(ChangeType.INSERT, booking)
        emitted = channel.emit.await_args.args[0]
        assert isinstance(emitted, BookingRequest)
        assert emitted.booking_id == booking.id

    @pytest.mark.asyncio
    async def test_drivers_cannot_book(self, session_factory, driver):
        with pytest.raises(ActorNotPermitted):
            await BookingLifecycle(session_factory).create(driver, PICKUP, DESTINATION)

    @pytest.mark.asyncio
    async def test_unknown_booking(self, session_factory):
        with pytest.raises(BookingNotFound):
            await BookingLifecycle(session_factory).get("missing")


class TestTripLifecycle:
    @pytest.mark.asyncio
    async def test_full_trip(self, session_factory, requester, driver):
        feed, channel = _announcers()
        lifecycle = BookingLifecycle(session_factory, feed, channel)
        booking_id = await add_booking(session_factory, requester)

        accepted = await lifecycle.accept(booking_id, driver)
        assert accepted.applied
        assert accepted.booking.driver_id == driver.user_id
        assert accepted.booking.accepted_at is not None
        assert isinstance(channel.emit.await_args.args[0], BookingAccept)

        for step, status in (
            (lifecycle.start_en_route, BookingStatus.EN_ROUTE),
            (lifecycle.arrive, BookingStatus.ARRIVED),
            (lifecycle.start_trip, BookingStatus.IN_PROGRESS),
            (lifecycle.complete, BookingStatus.COMPLETED),
        ):
            result = await step(booking_id, driver)
            assert result.outcome == Outcome.APPLIED
            assert result.booking.status == status
            assert result.booking.driver_assignment_consistent()

        final = await lifecycle.get(booking_id)
        assert final.started_at is not None
        assert final.completed_at is not None
        last = channel.emit.await_args.args[0]
        assert isinstance(last, BookingStatusUpdate)
        assert last.status == BookingStatus.COMPLETED
        assert feed.publish.await_count == 5

    @pytest.mark.asyncio
    async def test_skip_arrive(self, session_factory, requester, driver):
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(
            session_factory, requester, status=BookingStatus.EN_ROUTE, driver=driver
        )

        result = await lifecycle.start_trip(booking_id, driver)
        assert result.booking.status == BookingStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_requester_cancels_pending(self, session_factory, requester):
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(session_factory, requester)

        result = await lifecycle.cancel(booking_id, requester, "Feeling better")

        assert result.applied
        assert result.booking.status == BookingStatus.CANCELLED
        assert result.booking.cancelled_by == "requester"
        assert result.booking.cancellation_reason == "Feeling better"


class TestLostRaces:
    @pytest.mark.asyncio
    async def test_accept_after_cancel_is_a_lost_race(self, session_factory, requester, driver):
        feed, channel = _announcers()
        lifecycle = BookingLifecycle(session_factory, feed, channel)
        booking_id = await add_booking(session_factory, requester)
        await lifecycle.cancel(booking_id, requester)
        feed.reset_mock()
        channel.reset_mock()

        result = await lifecycle.accept(booking_id, driver)

        assert result.outcome == Outcome.LOST_RACE
        assert result.booking.status == BookingStatus.CANCELLED
        feed.publish.assert_not_awaited()
        channel.emit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_accept_loses(self, session_factory, requester, driver):
        other = await add_user(session_factory, Role.DRIVER, available=True)
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(session_factory, requester)

        first = await lifecycle.accept(booking_id, driver)
        second = await lifecycle.accept(booking_id, other)

        assert first.applied
        assert second.outcome == Outcome.LOST_RACE
        assert second.booking.driver_id == driver.user_id

    @pytest.mark.asyncio
    async def test_guarded_write_misses_a_moved_row(self, session_factory, requester, driver):
        """The row moved between the read and the guarded write."""
        booking_id = await add_booking(session_factory, requester)
        async with session_factory() as session:
            await BookingRepository(session).guarded_transition(
                booking_id,
                BookingStatus.PENDING,
                {"status": BookingStatus.CANCELLED},
            )
            await session.commit()
        async with session_factory() as session:
            rows = await BookingRepository(session).guarded_transition(
                booking_id,
                BookingStatus.PENDING,
                {"status": BookingStatus.ACCEPTED, "driver_id": driver.user_id},
                require_unassigned=True,
            )
        assert rows == 0

    @pytest.mark.asyncio
    async def test_wrong_driver_loses_without_error(self, session_factory, requester, driver):
        other = await add_user(session_factory, Role.DRIVER, available=True)
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(
            session_factory, requester, status=BookingStatus.ACCEPTED, driver=driver
        )

        result = await lifecycle.start_en_route(booking_id, other)

        assert result.outcome == Outcome.LOST_RACE
        assert result.booking.status == BookingStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_requester_cannot_cancel_en_route(self, session_factory, requester, driver):
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(
            session_factory, requester, status=BookingStatus.EN_ROUTE, driver=driver
        )

        result = await lifecycle.cancel(booking_id, requester)

        assert result.outcome == Outcome.LOST_RACE
        assert result.booking.status == BookingStatus.EN_ROUTE


class TestAcceptPreconditions:
    @pytest.mark.asyncio
    async def test_unavailable_driver_gets_an_error_and_no_write(self, session_factory, requester):
        off_shift = await add_user(session_factory, Role.DRIVER, available=False)
        lifecycle = BookingLifecycle(session_factory)
        booking_id = await add_booking(session_factory, requester)

        with pytest.raises(DriverUnavailable):
            await lifecycle.accept(booking_id, off_shift)
        assert (await lifecycle.get(booking_id)).status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_single_active_trip_when_enforced(self, session_factory, requester, driver):
        lifecycle = BookingLifecycle(session_factory, enforce_single_active_trip=True)
        await add_booking(session_factory, requester, status=BookingStatus.EN_ROUTE, driver=driver)
        booking_id = await add_booking(session_factory, requester)

        with pytest.raises(ActiveTripExists):
            await lifecycle.accept(booking_id, driver)

    @pytest.mark.asyncio
    async def test_second_trip_allowed_by_default(self, session_factory, requester, driver):
        lifecycle = BookingLifecycle(session_factory)
        await add_booking(session_factory, requester, status=BookingStatus.EN_ROUTE, driver=driver)
        booking_id = await add_booking(session_factory, requester)

        assert (await lifecycle.accept(booking_id, driver)).applied

    @pytest.mark.asyncio
    async def test_store_failure_is_retryable(self):
        def broken():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        with pytest.raises(StoreUnavailable):
            await BookingLifecycle(broken).get("b-1")


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_queries(self, session_factory, requester, driver):
        mine = await add_booking(session_factory, requester)
        active = await add_booking(
            session_factory, requester, status=BookingStatus.IN_PROGRESS, driver=driver
        )
        done = await add_booking(
            session_factory, requester, status=BookingStatus.COMPLETED, driver=driver
        )
        stranger = await add_user(session_factory, Role.REQUESTER)
        await add_booking(session_factory, stranger)

        async with session_factory() as session:
            repo = BookingRepository(session)
            assert {b.id for b in await repo.list_for_requester(requester.user_id)} == {
                mine,
                active,
                done,
            }
            assert {b.id for b in await repo.list_for_driver(driver.user_id)} == {active, done}
            assert [b.id for b in await repo.list_for_driver(driver.user_id, active_only=True)] == [
                active
            ]
            assert await repo.count_active_for_driver(driver.user_id) == 1
            pending = await repo.list_pending_unassigned()
            assert mine in {b.id for b in pending}
            assert all(b.status == BookingStatus.PENDING for b in pending)
