"""
Reducer-style local booking store.

Local state is the last authoritative row per booking plus a stack of
*optimistic* mutations layered on top.  An optimistic mutation stays tagged
as pending until either

* the action that produced it reports back (``confirm`` / ``revert``), or
* the next authoritative change notification for that booking arrives,
  which settles every pending mutation for it: those the row agrees with are
  confirmed, the rest are reverted.

Applying the same notification twice yields the same state as applying it
once.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .entities import Booking, ChangeNotification, Session
from .enums import ASSIGNED_STATUSES, BookingStatus, Role

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimisticMutation:
    token: str
    booking_id: str
    fields: dict[str, Any] = field(default_factory=dict)


class BookingStore:
    def __init__(self, viewer: Optional[Session] = None):
        self.viewer = viewer
        self._confirmed: dict[str, Booking] = {}
        self._mutations: dict[str, list[OptimisticMutation]] = {}

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, booking_id: str) -> Optional[Booking]:
        booking = self._confirmed.get(booking_id)
        if booking is None:
            return None
        for mutation in self._mutations.get(booking_id, ()):
            booking = booking.with_fields(**mutation.fields)
        return booking

    def confirmed(self, booking_id: str) -> Optional[Booking]:
        return self._confirmed.get(booking_id)

    def is_pending(self, booking_id: str) -> bool:
        return bool(self._mutations.get(booking_id))

    def all(self) -> list[Booking]:
        bookings = [self.get(booking_id) for booking_id in self._confirmed]
        return sorted(
            (b for b in bookings if b is not None),
            key=lambda b: (b.created_at is not None, b.created_at),
            reverse=True,
        )

    def requester_bookings(self) -> list[Booking]:
        if self.viewer is None:
            return []
        return [b for b in self.all() if b.requester_id == self.viewer.user_id]

    def driver_bookings(self) -> list[Booking]:
        if self.viewer is None or self.viewer.role != Role.DRIVER:
            return []
        return [b for b in self.all() if b.driver_id == self.viewer.user_id]

    def active_driver_bookings(self) -> list[Booking]:
        return [b for b in self.driver_bookings() if b.status in ASSIGNED_STATUSES]

    def pending_bookings(self) -> list[Booking]:
        return [b for b in self.all() if b.status == BookingStatus.PENDING and b.driver_id is None]

    # ── Writes ────────────────────────────────────────────────────────

    def load(self, bookings: Iterable[Booking]) -> None:
        for booking in bookings:
            self._confirmed[booking.id] = booking

    def apply_optimistic(self, booking_id: str, **fields: Any) -> str:
        token = uuid.uuid4().hex
        self._mutations.setdefault(booking_id, []).append(
            OptimisticMutation(token=token, booking_id=booking_id, fields=fields)
        )
        return token

    def confirm(self, token: str, booking: Optional[Booking] = None) -> None:
        """The action behind *token* succeeded; *booking* is the row it wrote."""
        self._drop(token)
        if booking is not None:
            self._settle(booking)

    def revert(self, token: str, booking: Optional[Booking] = None) -> None:
        """The action behind *token* failed; *booking* is the current truth."""
        self._drop(token)
        if booking is not None:
            self._settle(booking)

    def apply_notification(self, notification: ChangeNotification) -> Booking:
        row = notification.booking
        self._settle(row)
        for mutation in self._mutations.pop(row.id, []):
            agrees = all(getattr(row, k) == v for k, v in mutation.fields.items())
            if not agrees:
                logger.info(
                    "Reverted optimistic change %s on booking %s", mutation.token, row.id
                )
        return row

    def _settle(self, booking: Booking) -> None:
        current = self._confirmed.get(booking.id)
        if current is not None and booking.status.is_behind(current.status):
            logger.debug("Ignoring stale row for booking %s (%s)", booking.id, booking.status.value)
            return
        self._confirmed[booking.id] = booking

    def _drop(self, token: str) -> None:
        for booking_id, mutations in list(self._mutations.items()):
            remaining = [m for m in mutations if m.token != token]
            if remaining:
                self._mutations[booking_id] = remaining
            else:
                self._mutations.pop(booking_id)
