"""
Domain entities with business logic.

Patterns used
-------------
- **State Pattern** on ``Booking``: enforces valid lifecycle transitions
  (pending -> accepted -> en_route -> [arrived ->] in_progress -> completed,
  with cancelled reachable before the trip starts).
- ``Booking.driver_assignment_consistent`` encodes the driver-id invariant.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional

from .enums import (
    ASSIGNED_STATUSES,
    BOOKING_TRANSITIONS,
    BookingEvent,
    BookingStatus,
    ChangeType,
    Outcome,
    Role,
)
from .exceptions import InvalidStateTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite, sloppy clients) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Location:
    address: str
    latitude: float
    longitude: float

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass(frozen=True)
class Session:
    """The identity of the caller, as issued by the external identity service."""

    user_id: str
    role: Role


# ── Entities ──────────────────────────────────────────────────────────


@dataclass
class Booking:
    id: str
    requester_id: str
    pickup: Location
    destination: Location
    status: BookingStatus = BookingStatus.PENDING
    driver_id: Optional[str] = None
    created_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_open_for_dispatch(self) -> bool:
        return self.status == BookingStatus.PENDING and self.driver_id is None

    def next_status(self, event: BookingEvent) -> BookingStatus:
        """Return the status *event* leads to, else raise."""
        try:
            return BOOKING_TRANSITIONS[(self.status, event)]
        except KeyError:
            raise InvalidStateTransition(
                f"Cannot {event.value} booking {self.id} in status {self.status.value}"
            ) from None

    def driver_assignment_consistent(self) -> bool:
        if self.status == BookingStatus.PENDING:
            return self.driver_id is None
        if self.status in ASSIGNED_STATUSES:
            return self.driver_id is not None
        # Terminal rows keep whatever driver they had, for audit.
        return True

    def with_fields(self, **fields: Any) -> Booking:
        return replace(self, **fields)


@dataclass
class DriverPosition:
    driver_id: str
    latitude: float
    longitude: float
    timestamp: datetime = field(default_factory=utcnow)
    is_live: bool = True

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(self.latitude, self.longitude)


@dataclass
class DriverProfile:
    id: str
    full_name: str = ""
    phone_number: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_plate: Optional[str] = None
    is_available: bool = False
    position: Optional[DriverPosition] = None


@dataclass(frozen=True)
class TransitionResult:
    """What a guarded write did, plus the authoritative row after it."""

    outcome: Outcome
    booking: Booking

    @property
    def applied(self) -> bool:
        return self.outcome == Outcome.APPLIED


@dataclass(frozen=True)
class ChangeNotification:
    """One row-change delivery from the change feed."""

    event: ChangeType
    table: str
    booking: Booking



@dataclass(frozen=True)
class Route:
    path: tuple[Coordinate, ...]
    duration_text: str
    duration_seconds: Optional[int] = None
