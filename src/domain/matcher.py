"""
Dispatch Matcher
================

Client-side bookkeeping around the guarded ``accept`` write.  The matcher
holds **no lock**: when N drivers accept the same pending booking, the
store's conditional update picks exactly one winner and the other N-1 see
zero rows affected.  The matcher's job is to keep every driver's
*candidate pool* (pending, unassigned bookings on offer) in step with that
outcome.

Pruning
-------
* **On result**   -- after a driver's own accept attempt, applied or lost.
* **Eagerly**     -- when another driver's accept is observed on the change
  feed or the message channel, before this driver tries.

Eager pruning is an optimisation only; correctness rests on the guarded
write.  Every operation here is idempotent, so replaying a notification
leaves the pools unchanged.

Complexity
----------
Let D = registered drivers, P = pending bookings.

* offer / prune:  O(D)
* candidates:     O(P log P)  -- sorted newest first
"""

from __future__ import annotations

import logging
from typing import Optional

from .entities import Booking, ChangeNotification, TransitionResult
from .enums import BookingStatus
from .events import BookingAccept, BookingStatusUpdate, ChannelEvent

logger = logging.getLogger(__name__)


class DispatchMatcher:
    def __init__(self) -> None:
        self._pending: dict[str, Booking] = {}
        self._available: dict[str, bool] = {}
        self._pools: dict[str, dict[str, Booking]] = {}
        # Bookings seen leaving pending.  Pending is never re-entered, so a
        # late INSERT for one of these must not put it back on offer.
        self._retired: set[str] = set()

    # ── Drivers ───────────────────────────────────────────────────────

    def register_driver(self, driver_id: str, available: bool) -> None:
        self._available[driver_id] = available
        self._pools.setdefault(driver_id, {})
        self._reseed(driver_id)

    def unregister_driver(self, driver_id: str) -> None:
        self._available.pop(driver_id, None)
        self._pools.pop(driver_id, None)

    def set_availability(self, driver_id: str, available: bool) -> None:
        """An unavailable driver is never offered a pending booking."""
        self._available[driver_id] = available
        self._pools.setdefault(driver_id, {})
        self._reseed(driver_id)

    def is_available(self, driver_id: str) -> bool:
        return self._available.get(driver_id, False)

    @property
    def drivers(self) -> list[str]:
        return list(self._pools)

    # ── Pools ─────────────────────────────────────────────────────────

    def offer(self, booking: Booking) -> None:
        """Put a pending, unassigned booking in every available driver's pool."""
        if not booking.is_open_for_dispatch:
            self.withdraw(booking.id)
            return
        if booking.id in self._retired:
            return
        self._pending[booking.id] = booking
        for driver_id, pool in self._pools.items():
            if self._available.get(driver_id):
                pool[booking.id] = booking

    def withdraw(self, booking_id: str) -> None:
        """Remove a booking from every pool for good."""
        self._retired.add(booking_id)
        self._pending.pop(booking_id, None)
        for pool in self._pools.values():
            pool.pop(booking_id, None)

    def candidates(self, driver_id: str) -> list[Booking]:
        pool = self._pools.get(driver_id, {})
        return sorted(
            pool.values(),
            key=lambda b: (b.created_at is not None, b.created_at),
            reverse=True,
        )

    def in_pool(self, driver_id: str, booking_id: str) -> bool:
        return booking_id in self._pools.get(driver_id, {})

    def pending(self, booking_id: str) -> Optional[Booking]:
        return self._pending.get(booking_id)

    # ── Outcomes ──────────────────────────────────────────────────────

    def record_accept_result(self, driver_id: str, result: TransitionResult) -> None:
        """Fold one driver's accept outcome into the pools."""
        booking = result.booking
        if not booking.is_open_for_dispatch:
            self.withdraw(booking.id)
        if not result.applied:
            logger.info(
                "Booking %s already taken (driver %s lost the race)",
                booking.id,
                driver_id,
            )
            self._pools.get(driver_id, {}).pop(booking.id, None)

    def apply_change(self, notification: ChangeNotification) -> None:
        """Eager pruning from a change-feed delivery (INSERT or UPDATE)."""
        self.offer(notification.booking)

    def apply_message(self, event: ChannelEvent) -> None:
        """Eager pruning from the low-latency message channel."""
        if isinstance(event, BookingAccept):
            self.withdraw(event.booking_id)
        elif isinstance(event, BookingStatusUpdate):
            if event.status != BookingStatus.PENDING:
                self.withdraw(event.booking_id)

    def _reseed(self, driver_id: str) -> None:
        pool = self._pools[driver_id]
        pool.clear()
        if self._available.get(driver_id):
            pool.update(self._pending)
