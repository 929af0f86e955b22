"""Guarded write plans built by the booking state machine."""

from datetime import datetime, timezone

import pytest

from src.domain.entities import Session
from src.domain.enums import BookingEvent, BookingStatus, Role
from src.domain.exceptions import ActorNotPermitted, InvalidStateTransition
from src.domain.state_machine import apply_plan, plan_transition
from tests.conftest import make_booking

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
REQUESTER = Session("r-1", Role.REQUESTER)
DRIVER = Session("d-1", Role.DRIVER)
OTHER_DRIVER = Session("d-2", Role.DRIVER)


class TestAcceptPlan:
    def test_accept_guards_on_pending_and_unassigned(self):
        plan = plan_transition(make_booking(), BookingEvent.ACCEPT, DRIVER, now=NOW)

        assert plan.expected_status == BookingStatus.PENDING
        assert plan.target_status == BookingStatus.ACCEPTED
        assert plan.require_unassigned is True
        assert plan.expected_driver_id is None
        assert plan.new_fields == {
            "status": BookingStatus.ACCEPTED,
            "accepted_at": NOW,
            "driver_id": "d-1",
        }

    def test_requester_cannot_accept(self):
        with pytest.raises(ActorNotPermitted):
            plan_transition(make_booking(), BookingEvent.ACCEPT, REQUESTER)

    def test_accept_on_accepted_booking_is_invalid(self):
        booking = make_booking(status=BookingStatus.ACCEPTED, driver_id="d-2")
        with pytest.raises(InvalidStateTransition):
            plan_transition(booking, BookingEvent.ACCEPT, DRIVER)


class TestDriverEventPlans:
    @pytest.mark.parametrize(
        "status, event, target",
        [
            (BookingStatus.ACCEPTED, BookingEvent.START_EN_ROUTE, BookingStatus.EN_ROUTE),
            (BookingStatus.EN_ROUTE, BookingEvent.ARRIVE, BookingStatus.ARRIVED),
            (BookingStatus.ARRIVED, BookingEvent.START_TRIP, BookingStatus.IN_PROGRESS),
            (BookingStatus.IN_PROGRESS, BookingEvent.COMPLETE, BookingStatus.COMPLETED),
        ],
    )
    def test_driver_events_guard_on_assigned_driver(self, status, event, target):
        booking = make_booking(status=status, driver_id="d-1")
        plan = plan_transition(booking, event, DRIVER, now=NOW)

        assert plan.expected_status == status
        assert plan.target_status == target
        assert plan.expected_driver_id == "d-1"
        assert plan.require_unassigned is False

    def test_start_trip_and_complete_stamp_timestamps(self):
        booking = make_booking(status=BookingStatus.EN_ROUTE, driver_id="d-1")
        assert plan_transition(booking, BookingEvent.START_TRIP, DRIVER, now=NOW).new_fields[
            "started_at"
        ] == NOW

        booking = make_booking(status=BookingStatus.IN_PROGRESS, driver_id="d-1")
        assert plan_transition(booking, BookingEvent.COMPLETE, DRIVER, now=NOW).new_fields[
            "completed_at"
        ] == NOW

    def test_other_driver_is_refused(self):
        booking = make_booking(status=BookingStatus.ACCEPTED, driver_id="d-1")
        with pytest.raises(ActorNotPermitted):
            plan_transition(booking, BookingEvent.START_EN_ROUTE, OTHER_DRIVER)

    def test_requester_cannot_drive_the_trip(self):
        booking = make_booking(status=BookingStatus.ACCEPTED, driver_id="d-1")
        with pytest.raises(ActorNotPermitted):
            plan_transition(booking, BookingEvent.START_EN_ROUTE, REQUESTER)


class TestCancelPlans:
    def test_requester_cancel_pending_uses_status_guard_only(self):
        plan = plan_transition(
            make_booking(), BookingEvent.CANCEL, REQUESTER, reason="Feeling better", now=NOW
        )

        assert plan.expected_status == BookingStatus.PENDING
        assert plan.require_unassigned is False
        assert plan.expected_driver_id is None
        assert plan.new_fields["cancelled_by"] == "requester"
        assert plan.new_fields["cancellation_reason"] == "Feeling better"
        assert plan.new_fields["cancelled_at"] == NOW

    def test_requester_can_cancel_accepted(self):
        booking = make_booking(status=BookingStatus.ACCEPTED, driver_id="d-1")
        plan = plan_transition(booking, BookingEvent.CANCEL, REQUESTER)
        assert plan.expected_status == BookingStatus.ACCEPTED

    def test_requester_cannot_cancel_once_en_route(self):
        booking = make_booking(status=BookingStatus.EN_ROUTE, driver_id="d-1")
        with pytest.raises(ActorNotPermitted):
            plan_transition(booking, BookingEvent.CANCEL, REQUESTER)

    def test_other_requester_cannot_cancel(self):
        with pytest.raises(ActorNotPermitted):
            plan_transition(make_booking(), BookingEvent.CANCEL, Session("r-2", Role.REQUESTER))

    def test_driver_cancel_guards_on_driver(self):
        booking = make_booking(status=BookingStatus.ARRIVED, driver_id="d-1")
        plan = plan_transition(booking, BookingEvent.CANCEL, DRIVER, reason="No patient")

        assert plan.expected_driver_id == "d-1"
        assert plan.new_fields["cancelled_by"] == "driver"

    def test_unassigned_driver_cannot_cancel_pending(self):
        with pytest.raises(ActorNotPermitted):
            plan_transition(make_booking(), BookingEvent.CANCEL, DRIVER)


def test_apply_plan_previews_the_row():
    booking = make_booking()
    plan = plan_transition(booking, BookingEvent.ACCEPT, DRIVER, now=NOW)
    after = apply_plan(booking, plan)

    assert after.status == BookingStatus.ACCEPTED
    assert after.driver_id == "d-1"
    assert after.accepted_at == NOW
    assert after.driver_assignment_consistent()
    assert booking.status == BookingStatus.PENDING
