"""
Booking endpoints
=================

POST  /api/v1/bookings                       -- request an ambulance (requester)
GET   /api/v1/bookings                       -- my bookings, newest first
GET   /api/v1/bookings/{id}                  -- one booking
PATCH /api/v1/bookings/{id}/accept           -- driver claims a pending booking
PATCH /api/v1/bookings/{id}/cancel           -- requester or assigned driver
PATCH /api/v1/bookings/{id}/start-en-route   -- assigned driver
PATCH /api/v1/bookings/{id}/arrive           -- assigned driver
PATCH /api/v1/bookings/{id}/start-trip       -- assigned driver
PATCH /api/v1/bookings/{id}/complete         -- assigned driver

Transitions answer ``200`` with ``{outcome, booking}``.  ``lost_race`` is not
an error: the booking had already moved on, and the body carries its current
row.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_current_session, get_db, get_dispatch
from src.api.middleware import limiter
from src.api.schemas import (
    BookingCreateRequest,
    BookingResponse,
    CancelRequest,
    TransitionResponse,
)
from src.config import settings
from src.domain.entities import Session, TransitionResult
from src.domain.enums import BookingEvent, Role
from src.domain.exceptions import ActorNotPermitted
from src.infrastructure.repositories import BookingRepository
from src.services.dispatch import DispatchService

router = APIRouter(prefix="/bookings", tags=["bookings"])


def _transition_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        outcome=result.outcome,
        booking=BookingResponse.from_booking(result.booking),
    )


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Request an ambulance",
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    booking = await dispatch.create(
        caller, body.pickup.to_location(), body.destination.to_location()
    )
    return BookingResponse.from_booking(booking)


@router.get(
    "",
    response_model=list[BookingResponse],
    summary="List my bookings",
    description=(
        "Requesters see the bookings they made; drivers see the bookings "
        "assigned to them.  ``active_only`` narrows a driver's list to "
        "accepted through in-progress."
    ),
)
@limiter.limit(settings.rate_limit)
async def list_bookings(
    request: Request,
    active_only: bool = False,
    caller: Session = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
):
    repo = BookingRepository(db)
    if caller.role == Role.DRIVER:
        bookings = await repo.list_for_driver(caller.user_id, active_only=active_only)
    else:
        bookings = await repo.list_for_requester(caller.user_id)
    return [BookingResponse.from_booking(b) for b in bookings]


@router.get(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Get one booking",
)
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    booking = await dispatch.lifecycle.get(booking_id)
    visible = booking.requester_id == caller.user_id or (
        caller.role == Role.DRIVER
        and (booking.driver_id == caller.user_id or booking.is_open_for_dispatch)
    )
    if not visible:
        raise ActorNotPermitted(f"{caller.user_id} may not view booking {booking_id}")
    return BookingResponse.from_booking(booking)


@router.patch(
    "/{booking_id}/accept",
    response_model=TransitionResponse,
    summary="Accept a pending booking",
    responses={409: {"description": "Driver unavailable or already on a trip."}},
)
@limiter.limit(settings.rate_limit)
async def accept_booking(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return _transition_response(await dispatch.accept(booking_id, caller))


@router.patch(
    "/{booking_id}/cancel",
    response_model=TransitionResponse,
    summary="Cancel a booking",
)
@limiter.limit(settings.rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: str,
    body: Optional[CancelRequest] = None,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    reason = body.reason if body else None
    return _transition_response(await dispatch.cancel(booking_id, caller, reason))


async def _fire(
    event: BookingEvent, booking_id: str, caller: Session, dispatch: DispatchService
) -> TransitionResponse:
    return _transition_response(await dispatch.fire(event, booking_id, caller))


@router.patch(
    "/{booking_id}/start-en-route",
    response_model=TransitionResponse,
    summary="Driver sets off to the pickup",
)
@limiter.limit(settings.rate_limit)
async def start_en_route(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await _fire(BookingEvent.START_EN_ROUTE, booking_id, caller, dispatch)


@router.patch(
    "/{booking_id}/arrive",
    response_model=TransitionResponse,
    summary="Driver has reached the pickup",
)
@limiter.limit(settings.rate_limit)
async def arrive(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await _fire(BookingEvent.ARRIVE, booking_id, caller, dispatch)


@router.patch(
    "/{booking_id}/start-trip",
    response_model=TransitionResponse,
    summary="Patient on board, heading to the destination",
)
@limiter.limit(settings.rate_limit)
async def start_trip(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await _fire(BookingEvent.START_TRIP, booking_id, caller, dispatch)


@router.patch(
    "/{booking_id}/complete",
    response_model=TransitionResponse,
    summary="Trip finished",
)
@limiter.limit(settings.rate_limit)
async def complete(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return await _fire(BookingEvent.COMPLETE, booking_id, caller, dispatch)
