"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from src.domain.entities import Booking, Location
from src.domain.enums import BookingStatus, Outcome, PositionSource
from src.domain.reconciler import TrackingView


# ── Requests ──────────────────────────────────────────────────────────


class PlaceIn(BaseModel):
    address: str = Field(..., min_length=1, max_length=255)
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(self.address, self.lat, self.lng)


class BookingCreateRequest(BaseModel):
    pickup: PlaceIn
    destination: PlaceIn


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class AvailabilityRequest(BaseModel):
    is_available: bool
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)


class PositionReport(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: Optional[datetime] = None


# ── Responses ─────────────────────────────────────────────────────────


class PlaceOut(BaseModel):
    address: str
    lat: float
    lng: float


class BookingResponse(BaseModel):
    id: str
    requester_id: str
    driver_id: Optional[str] = None
    pickup: PlaceOut
    destination: PlaceOut
    status: BookingStatus
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @classmethod
    def from_booking(cls, booking: Booking) -> "BookingResponse":
        return cls(
            id=booking.id,
            requester_id=booking.requester_id,
            driver_id=booking.driver_id,
            pickup=PlaceOut(
                address=booking.pickup.address,
                lat=booking.pickup.latitude,
                lng=booking.pickup.longitude,
            ),
            destination=PlaceOut(
                address=booking.destination.address,
                lat=booking.destination.latitude,
                lng=booking.destination.longitude,
            ),
            status=booking.status,
            created_at=booking.created_at,
            accepted_at=booking.accepted_at,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            cancelled_at=booking.cancelled_at,
            cancelled_by=booking.cancelled_by,
            cancellation_reason=booking.cancellation_reason,
        )


class TransitionResponse(BaseModel):
    outcome: Outcome
    booking: BookingResponse


class AvailabilityResponse(BaseModel):
    driver_id: str
    is_available: bool


class PointOut(BaseModel):
    lat: float
    lng: float


class TrackingResponse(BaseModel):
    booking_id: str
    status: BookingStatus
    driver_id: Optional[str] = None
    position: Optional[PointOut] = None
    position_source: Optional[PositionSource] = None
    eta: Optional[str] = None
    distance_km: Optional[float] = None
    route_path: list[PointOut] = []
    updated_at: datetime

    @classmethod
    def from_view(cls, view: TrackingView) -> "TrackingResponse":
        return cls(
            booking_id=view.booking_id,
            status=view.status,
            driver_id=view.driver_id,
            position=(
                PointOut(lat=view.position.latitude, lng=view.position.longitude)
                if view.position
                else None
            ),
            position_source=view.position_source,
            eta=view.eta,
            distance_km=view.distance_km,
            route_path=[PointOut(lat=p.latitude, lng=p.longitude) for p in view.route_path],
            updated_at=view.updated_at,
        )


class HealthResponse(BaseModel):
    status: str = "ok"
    message_channel: str = "disconnected"


class ErrorResponse(BaseModel):
    detail: str
    retryable: bool = False
