"""
Location / ETA Reconciler
=========================

Merges two views of a tracked driver's position into one:

* **snapshot** -- the durable "last known" row, read once when tracking
  starts and refreshed by change notifications (seconds to minutes apart).
* **live**     -- transient ``locationUpdate`` samples pushed by the driver
  over the message channel (every 1-5 s).

Merge policy
------------
Once any live sample has arrived in this tracking session it wins, last
sample first, with no smoothing.  Until then the snapshot is shown so the
map is never empty while the stream ramps up.

Samples are discarded when

1. they come from a driver other than the booking's assigned driver,
2. the booking is already terminal (a late sample after ``completed``), or
3. they are older than the last accepted sample.

ETA
---
Every change of the merged position triggers a routing call: to the pickup
while the ambulance is on its way, to the destination once the trip is in
progress.  A failed call shows ``ETA_UNAVAILABLE`` instead of the previous
value, so a stale ETA never looks fresh.

The reconciler is read-side only; it never writes to the store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol, Union

from .entities import Booking, Coordinate, DriverPosition, Route, as_utc, utcnow
from .enums import PICKUP_LEG_STATUSES, BookingStatus, PositionSource
from .distance import haversine_km
from .events import LocationUpdate
from .exceptions import RoutingError

logger = logging.getLogger(__name__)

ETA_UNAVAILABLE = "unavailable"


class RouteProvider(Protocol):
    async def compute_route(self, origin: Coordinate, destination: Coordinate) -> Route: ...


@dataclass(frozen=True)
class TrackingView:
    booking_id: str
    status: BookingStatus
    driver_id: Optional[str]
    position: Optional[Coordinate]
    position_source: Optional[PositionSource]
    eta: Optional[str]
    distance_km: Optional[float]
    route_path: tuple[Coordinate, ...]
    updated_at: datetime


class LocationReconciler:
    def __init__(self, booking: Booking, routing: RouteProvider):
        self._booking = booking
        self._routing = routing
        self._snapshot: Optional[DriverPosition] = None
        self._sample: Optional[DriverPosition] = None
        self._eta: Optional[str] = None
        self._path: tuple[Coordinate, ...] = ()

    @property
    def booking(self) -> Booking:
        return self._booking

    @property
    def eta(self) -> Optional[str]:
        return self._eta

    # ── Inputs ────────────────────────────────────────────────────────

    def apply_booking(self, booking: Booking) -> bool:
        """
        Fold an authoritative booking row in.  Returns True if the ETA
        target may have changed (status or driver moved).
        """
        if booking.id != self._booking.id:
            return False
        if self._booking.is_terminal:
            return False
        if booking.status.is_behind(self._booking.status):
            logger.debug("Ignoring stale row for booking %s (%s)", booking.id, booking.status.value)
            return False
        previous = self._booking
        self._booking = booking
        if booking.driver_id != previous.driver_id:
            # A different driver means a different position stream.
            self._snapshot = None
            self._sample = None
        if booking.is_terminal:
            self._eta = None
            self._path = ()
        return (
            booking.status != previous.status
            or booking.driver_id != previous.driver_id
        )

    def apply_snapshot(self, position: DriverPosition) -> bool:
        """Returns True if the merged position changed."""
        if not self._tracks(position.driver_id):
            return False
        self._snapshot = position
        return self._sample is None

    def apply_sample(self, sample: Union[LocationUpdate, DriverPosition]) -> bool:
        """Returns True if the merged position changed."""
        if isinstance(sample, LocationUpdate):
            sample = DriverPosition(
                driver_id=sample.driver_id,
                latitude=sample.lat,
                longitude=sample.lng,
                timestamp=sample.timestamp,
            )
        if not self._tracks(sample.driver_id):
            logger.debug(
                "Discarding sample from %s for booking %s",
                sample.driver_id,
                self._booking.id,
            )
            return False
        if self._booking.is_terminal:
            logger.debug("Discarding late sample for closed booking %s", self._booking.id)
            return False
        if self._sample and as_utc(sample.timestamp) < as_utc(self._sample.timestamp):
            return False
        self._sample = sample
        return True

    # ── Outputs ───────────────────────────────────────────────────────

    def current_position(self) -> Optional[DriverPosition]:
        return self._sample or self._snapshot

    def position_source(self) -> Optional[PositionSource]:
        if self._sample:
            return PositionSource.LIVE
        if self._snapshot:
            return PositionSource.SNAPSHOT
        return None

    def eta_target(self) -> Optional[Coordinate]:
        if self._booking.status in PICKUP_LEG_STATUSES:
            return self._booking.pickup.coordinate
        if self._booking.status == BookingStatus.IN_PROGRESS:
            return self._booking.destination.coordinate
        return None

    async def refresh_eta(self) -> Optional[str]:
        """Ask the routing service for a fresh route from the merged position."""
        position = self.current_position()
        target = self.eta_target()
        if position is None or target is None:
            return self._eta

        try:
            route = await self._routing.compute_route(position.coordinate, target)
        except RoutingError as exc:
            if self._booking.is_terminal:
                return self._eta
            logger.warning("ETA unavailable for booking %s: %s", self._booking.id, exc)
            self._eta = ETA_UNAVAILABLE
            self._path = ()
            return self._eta

        if self._booking.is_terminal:
            return self._eta
        self._eta = route.duration_text
        self._path = route.path
        return self._eta

    def view(self) -> TrackingView:
        position = self.current_position()
        target = self.eta_target()
        distance = None
        if position and target:
            distance = round(
                haversine_km(
                    position.latitude, position.longitude,
                    target.latitude, target.longitude,
                ),
                3,
            )
        return TrackingView(
            booking_id=self._booking.id,
            status=self._booking.status,
            driver_id=self._booking.driver_id,
            position=position.coordinate if position else None,
            position_source=self.position_source(),
            eta=self._eta,
            distance_km=distance,
            route_path=self._path,
            updated_at=utcnow(),
        )

    def _tracks(self, driver_id: str) -> bool:
        return self._booking.driver_id is not None and driver_id == self._booking.driver_id
