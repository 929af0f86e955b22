"""
Driver endpoints
================

GET   /api/v1/drivers/me/candidates   -- pending bookings on offer to me
PATCH /api/v1/drivers/me/availability -- go on / off shift
PUT   /api/v1/drivers/me/position     -- report where the ambulance is
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src.api.dependencies import get_current_session, get_dispatch
from src.api.middleware import limiter
from src.api.schemas import (
    AvailabilityRequest,
    AvailabilityResponse,
    BookingResponse,
    PositionReport,
)
from src.config import settings
from src.domain.entities import DriverPosition, Session, utcnow
from src.services.dispatch import DispatchService

router = APIRouter(prefix="/drivers/me", tags=["drivers"])


@router.get(
    "/candidates",
    response_model=list[BookingResponse],
    summary="Pending bookings on offer, newest first",
)
@limiter.limit(settings.rate_limit)
async def candidates(
    request: Request,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    return [BookingResponse.from_booking(b) for b in await dispatch.candidates(caller)]


@router.patch(
    "/availability",
    response_model=AvailabilityResponse,
    summary="Set my availability",
)
@limiter.limit(settings.rate_limit)
async def set_availability(
    request: Request,
    body: AvailabilityRequest,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    position = None
    if body.lat is not None and body.lng is not None:
        position = DriverPosition(
            driver_id=caller.user_id, latitude=body.lat, longitude=body.lng
        )
    available = await dispatch.set_availability(caller, body.is_available, position)
    return AvailabilityResponse(driver_id=caller.user_id, is_available=available)


@router.put(
    "/position",
    status_code=204,
    summary="Report my current position",
)
@limiter.limit(settings.rate_limit)
async def report_position(
    request: Request,
    body: PositionReport,
    caller: Session = Depends(get_current_session),
    dispatch: DispatchService = Depends(get_dispatch),
):
    await dispatch.report_position(
        caller,
        DriverPosition(
            driver_id=caller.user_id,
            latitude=body.lat,
            longitude=body.lng,
            timestamp=body.timestamp or utcnow(),
        ),
    )
