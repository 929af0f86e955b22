"""
Message-channel event vocabulary.

A closed tagged union: every payload on the channel is one of the models
below, discriminated by ``event``.  Field names use the camelCase wire
aliases the browser clients speak (``driverId``, ``bookingId``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from .entities import utcnow
from .enums import BookingStatus


class ChannelEvent(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    def to_wire(self) -> str:
        return self.model_dump_json(by_alias=True)


class LocationUpdate(ChannelEvent):
    event: Literal["locationUpdate"] = "locationUpdate"

    driver_id: str
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    timestamp: datetime = Field(default_factory=utcnow)


class BookingRequest(ChannelEvent):
    event: Literal["bookingRequest"] = "bookingRequest"

    booking_id: str
    requester_id: str
    pickup_address: str
    pickup_lat: float
    pickup_lng: float
    destination_address: str
    destination_lat: float
    destination_lng: float


class BookingAccept(ChannelEvent):
    event: Literal["bookingAccept"] = "bookingAccept"

    booking_id: str
    driver_id: str


class BookingStatusUpdate(ChannelEvent):
    event: Literal["bookingStatusUpdate"] = "bookingStatusUpdate"

    booking_id: str
    status: BookingStatus


class EmergencyAlert(ChannelEvent):
    event: Literal["emergencyAlert"] = "emergencyAlert"

    user_id: str
    message: str


class DriverAvailabilityChanged(ChannelEvent):
    event: Literal["driverAvailability"] = "driverAvailability"

    driver_id: str
    is_available: bool
    lat: Optional[float] = None
    lng: Optional[float] = None


AnyChannelEvent = Annotated[
    Union[
        LocationUpdate,
        BookingRequest,
        BookingAccept,
        BookingStatusUpdate,
        EmergencyAlert,
        DriverAvailabilityChanged,
    ],
    Field(discriminator="event"),
]

_adapter: TypeAdapter[AnyChannelEvent] = TypeAdapter(AnyChannelEvent)

EVENT_TYPES: dict[str, type[ChannelEvent]] = {
    "locationUpdate": LocationUpdate,
    "bookingRequest": BookingRequest,
    "bookingAccept": BookingAccept,
    "bookingStatusUpdate": BookingStatusUpdate,
    "emergencyAlert": EmergencyAlert,
    "driverAvailability": DriverAvailabilityChanged,
}


def parse_event(raw: str | bytes) -> AnyChannelEvent:
    """Decode one wire payload.  Raises ``pydantic.ValidationError`` on junk."""
    return _adapter.validate_json(raw)
