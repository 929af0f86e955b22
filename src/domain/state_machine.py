"""
Booking State Machine
=====================

Turns ``(booking, event, actor)`` into a **guarded write plan**: the single
conditional ``UPDATE`` that moves the booking forward if, and only if, the
row still looks the way the caller saw it.

Guards
------
* every transition: ``status = <status the caller observed>``
* ``accept``:        ``driver_id IS NULL``
* driver events:     ``driver_id = <acting driver>``

The store's row-level atomicity is the only serialisation point.  A plan that
affects zero rows lost a race and is never retried.

Complexity: O(1) per plan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from .entities import Booking, Session, utcnow
from .enums import REQUESTER_CANCELLABLE, BookingEvent, BookingStatus, Role
from .exceptions import ActorNotPermitted

# Audit column stamped by each event.
_TIMESTAMP_FIELD: dict[BookingEvent, str] = {
    BookingEvent.ACCEPT: "accepted_at",
    BookingEvent.START_TRIP: "started_at",
    BookingEvent.COMPLETE: "completed_at",
    BookingEvent.CANCEL: "cancelled_at",
}


@dataclass(frozen=True)
class TransitionPlan:
    booking_id: str
    event: BookingEvent
    expected_status: BookingStatus
    target_status: BookingStatus
    new_fields: dict[str, Any] = field(default_factory=dict)
    require_unassigned: bool = False
    expected_driver_id: Optional[str] = None


def plan_transition(
    booking: Booking,
    event: BookingEvent,
    actor: Session,
    *,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TransitionPlan:
    """
    Validate *event* against the booking as last seen and build its plan.

    Raises ``InvalidStateTransition`` if the event is illegal from the
    current status (terminal statuses included) and ``ActorNotPermitted``
    if *actor* may not fire it.
    """
    target = booking.next_status(event)
    now = now or utcnow()

    fields: dict[str, Any] = {"status": target}
    if event in _TIMESTAMP_FIELD:
        fields[_TIMESTAMP_FIELD[event]] = now

    if event == BookingEvent.ACCEPT:
        _require_role(actor, Role.DRIVER, event)
        fields["driver_id"] = actor.user_id
        return TransitionPlan(
            booking_id=booking.id,
            event=event,
            expected_status=booking.status,
            target_status=target,
            new_fields=fields,
            require_unassigned=True,
        )

    if event == BookingEvent.CANCEL:
        fields["cancelled_by"] = actor.role.value
        fields["cancellation_reason"] = reason
        if actor.role == Role.REQUESTER:
            if actor.user_id != booking.requester_id:
                raise ActorNotPermitted(
                    f"{actor.user_id} did not request booking {booking.id}"
                )
            if booking.status not in REQUESTER_CANCELLABLE:
                raise ActorNotPermitted(
                    f"Requester cannot cancel booking in status {booking.status.value}"
                )
            # Status guard only; an accept in between moves status off pending.
            return TransitionPlan(
                booking_id=booking.id,
                event=event,
                expected_status=booking.status,
                target_status=target,
                new_fields=fields,
            )

    # Everything else (and a driver-side cancel) belongs to the assigned driver.
    _require_role(actor, Role.DRIVER, event)
    if booking.driver_id is None or booking.driver_id != actor.user_id:
        raise ActorNotPermitted(
            f"Driver {actor.user_id} is not assigned to booking {booking.id}"
        )
    return TransitionPlan(
        booking_id=booking.id,
        event=event,
        expected_status=booking.status,
        target_status=target,
        new_fields=fields,
        expected_driver_id=actor.user_id,
    )


def apply_plan(booking: Booking, plan: TransitionPlan) -> Booking:
    """Return *booking* as it will look once *plan* has been written."""
    return booking.with_fields(**plan.new_fields)


def _require_role(actor: Session, role: Role, event: BookingEvent) -> None:
    if actor.role != role:
        raise ActorNotPermitted(
            f"Role {actor.role.value} cannot {event.value} a booking"
        )
