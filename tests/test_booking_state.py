"""Unit tests for booking entity state transitions (State Pattern)."""

import pytest

from src.domain.entities import Booking, Location
from src.domain.enums import BookingEvent, BookingStatus
from src.domain.exceptions import InvalidStateTransition

HERE = Location("Here", 28.6, 77.2)


def _booking(status=BookingStatus.PENDING, driver_id=None) -> Booking:
    return Booking(
        id="b-1",
        requester_id="r-1",
        pickup=HERE,
        destination=HERE,
        status=status,
        driver_id=driver_id,
    )


class TestBookingStateMachine:
    def test_initial_status_is_pending(self):
        booking = _booking()
        assert booking.status == BookingStatus.PENDING
        assert booking.is_open_for_dispatch

    # ── Valid transitions ─────────────────────────────────────────

    def test_pending_to_accepted(self):
        assert _booking().next_status(BookingEvent.ACCEPT) == BookingStatus.ACCEPTED

    def test_pending_to_cancelled(self):
        assert _booking().next_status(BookingEvent.CANCEL) == BookingStatus.CANCELLED

    def test_accepted_to_en_route(self):
        booking = _booking(BookingStatus.ACCEPTED, "d-1")
        assert booking.next_status(BookingEvent.START_EN_ROUTE) == BookingStatus.EN_ROUTE

    def test_en_route_to_arrived(self):
        booking = _booking(BookingStatus.EN_ROUTE, "d-1")
        assert booking.next_status(BookingEvent.ARRIVE) == BookingStatus.ARRIVED

    def test_en_route_straight_to_in_progress(self):
        booking = _booking(BookingStatus.EN_ROUTE, "d-1")
        assert booking.next_status(BookingEvent.START_TRIP) == BookingStatus.IN_PROGRESS

    def test_arrived_to_in_progress(self):
        booking = _booking(BookingStatus.ARRIVED, "d-1")
        assert booking.next_status(BookingEvent.START_TRIP) == BookingStatus.IN_PROGRESS

    def test_in_progress_to_completed(self):
        booking = _booking(BookingStatus.IN_PROGRESS, "d-1")
        assert booking.next_status(BookingEvent.COMPLETE) == BookingStatus.COMPLETED

    @pytest.mark.parametrize(
        "status", [BookingStatus.ACCEPTED, BookingStatus.EN_ROUTE, BookingStatus.ARRIVED]
    )
    def test_cancellable_before_trip_starts(self, status):
        booking = _booking(status, "d-1")
        assert booking.next_status(BookingEvent.CANCEL) == BookingStatus.CANCELLED

    # ── Invalid transitions ───────────────────────────────────────

    def test_pending_to_completed_fails(self):
        with pytest.raises(InvalidStateTransition):
            _booking().next_status(BookingEvent.COMPLETE)

    def test_accept_twice_fails(self):
        with pytest.raises(InvalidStateTransition):
            _booking(BookingStatus.ACCEPTED, "d-1").next_status(BookingEvent.ACCEPT)

    @pytest.mark.parametrize("status", [BookingStatus.COMPLETED, BookingStatus.CANCELLED])
    @pytest.mark.parametrize("event", list(BookingEvent))
    def test_terminal_statuses_accept_nothing(self, status, event):
        booking = _booking(status, "d-1")
        assert booking.is_terminal
        with pytest.raises(InvalidStateTransition):
            booking.next_status(event)

    def test_in_progress_to_cancelled_fails(self):
        """Once the patient is on board, the trip can only complete."""
        with pytest.raises(InvalidStateTransition):
            _booking(BookingStatus.IN_PROGRESS, "d-1").next_status(BookingEvent.CANCEL)


class TestDriverAssignment:
    def test_pending_must_be_unassigned(self):
        assert _booking().driver_assignment_consistent()
        assert not _booking(driver_id="d-1").driver_assignment_consistent()

    @pytest.mark.parametrize(
        "status",
        [
            BookingStatus.ACCEPTED,
            BookingStatus.EN_ROUTE,
            BookingStatus.ARRIVED,
            BookingStatus.IN_PROGRESS,
        ],
    )
    def test_assigned_statuses_need_a_driver(self, status):
        assert _booking(status, "d-1").driver_assignment_consistent()
        assert not _booking(status, None).driver_assignment_consistent()

    def test_cancelled_before_accept_has_no_driver(self):
        assert _booking(BookingStatus.CANCELLED, None).driver_assignment_consistent()
