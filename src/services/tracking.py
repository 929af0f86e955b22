"""
Tracking session -- one viewer watching one booking.

Opening a session:

* authorises the viewer (the booking's requester or its assigned driver),
* loads the booking and the driver's durable position snapshot,
* subscribes to the booking's row on the change feed,
* listens for ``locationUpdate`` samples on the message channel,
* optionally drives an ``AmbulanceSimulator`` through a
  ``LocationBroadcaster`` for drivers without a device feed.

Every input goes through the ``LocationReconciler``; each change of the
merged view is pushed to ``on_view``.

``close()`` is synchronous and idempotent.  It releases, in order, the
change-feed subscription, the message-channel listener, then the broadcast
timer, and finally the channel lease.
"""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, Callable, Optional, Protocol, Union

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.entities import (
    Booking,
    ChangeNotification,
    Coordinate,
    Session,
    TransitionResult,
)
from src.domain.enums import BookingEvent, Role
from src.domain.events import LocationUpdate
from src.domain.exceptions import (
    ActorNotPermitted,
    BookingNotFound,
    DispatchError,
    InvalidStateTransition,
    StoreUnavailable,
)
from src.domain.reconciler import LocationReconciler, RouteProvider, TrackingView
from src.domain.simulator import DEFAULT_START, AmbulanceSimulator
from src.domain.store import BookingStore
from src.infrastructure.change_feed import ChangeFeed
from src.infrastructure.message_channel import ChannelLease, MessageChannel
from src.infrastructure.pubsub import Subscription
from src.infrastructure.repositories import BookingRepository, DriverRepository
from src.services.broadcaster import LocationBroadcaster

logger = logging.getLogger(__name__)

ViewCallback = Callable[[TrackingView], Union[None, Awaitable[None]]]


class Actions(Protocol):
    async def fire(
        self,
        event: BookingEvent,
        booking_id: str,
        actor: Session,
        reason: Optional[str] = None,
    ) -> TransitionResult: ...


class TrackingSession:
    def __init__(
        self,
        booking_id: str,
        viewer: Session,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        routing: RouteProvider,
        actions: Optional[Actions] = None,
        change_feed: Optional[ChangeFeed] = None,
        channel: Optional[MessageChannel] = None,
        on_view: Optional[ViewCallback] = None,
        simulate: bool = False,
    ):
        self.booking_id = booking_id
        self.viewer = viewer
        self._session_factory = session_factory
        self._routing = routing
        self._actions = actions
        self._change_feed = change_feed
        self._channel = channel
        self._on_view = on_view
        self._simulate = simulate

        self.store = BookingStore(viewer)
        self.reconciler: Optional[LocationReconciler] = None
        self.simulator: Optional[AmbulanceSimulator] = None
        self.broadcaster: Optional[LocationBroadcaster] = None
        self._lease: Optional[ChannelLease] = None
        self._change_sub: Optional[Subscription] = None
        self._sample_sub: Optional[Subscription] = None
        self._target: Optional[Coordinate] = None
        self.closed = False

    # ── Open / close ──────────────────────────────────────────────────

    async def open(self) -> TrackingView:
        booking = await self._load_booking()
        self._authorise(booking)
        self.store.load([booking])
        self.reconciler = LocationReconciler(booking, self._routing)
        await self._load_snapshot(booking)

        if self._channel is not None:
            self._lease = await self._channel.acquire()
            self._sample_sub = self._channel.on(LocationUpdate, self._on_sample)
        if self._change_feed is not None:
            self._change_sub = await self._change_feed.subscribe(
                self._on_change, row_id=self.booking_id
            )
        if self._simulate and self._is_assigned_driver(booking):
            self._start_simulator(booking)

        await self.reconciler.refresh_eta()
        logger.info("Tracking opened on booking %s by %s", self.booking_id, self.viewer.user_id)
        return self.reconciler.view()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._change_sub is not None:
            self._change_sub.unsubscribe()
        if self._sample_sub is not None:
            self._sample_sub.unsubscribe()
        if self.broadcaster is not None:
            self.broadcaster.stop()
        if self._lease is not None:
            self._lease.release()
        logger.info("Tracking closed on booking %s", self.booking_id)

    async def __aenter__(self) -> "TrackingSession":
        await self.open()
        return self

    async def __aexit__(self, *args) -> None:
        self.close()

    # ── Reads ─────────────────────────────────────────────────────────

    @property
    def booking(self) -> Optional[Booking]:
        return self.store.get(self.booking_id)

    def view(self) -> TrackingView:
        if self.reconciler is None:
            raise RuntimeError("Tracking session is not open")
        return self.reconciler.view()

    # ── Actions ───────────────────────────────────────────────────────

    async def perform(
        self, event: BookingEvent, reason: Optional[str] = None
    ) -> TransitionResult:
        """
        Fire *event* with an optimistic local update.  The update is confirmed
        by an applied write and reverted by a lost race or a failed call.
        """
        if self._actions is None:
            raise RuntimeError("Tracking session has no action handler")
        token = None
        current = self.store.get(self.booking_id)
        if current is not None:
            try:
                token = self.store.apply_optimistic(
                    self.booking_id, status=current.next_status(event)
                )
            except InvalidStateTransition:
                token = None

        try:
            result = await self._actions.fire(event, self.booking_id, self.viewer, reason)
        except DispatchError:
            if token is not None:
                self.store.revert(token)
            raise

        if token is not None:
            if result.applied:
                self.store.confirm(token, result.booking)
            else:
                self.store.revert(token, result.booking)
        await self._fold_booking(result.booking)
        return result

    # ── Inputs ────────────────────────────────────────────────────────

    async def _on_change(self, notification: ChangeNotification) -> None:
        if self.closed or notification.booking.id != self.booking_id:
            return
        self.store.apply_notification(notification)
        await self._fold_booking(notification.booking)

    async def _on_sample(self, sample: LocationUpdate) -> None:
        if self.closed or self.reconciler is None:
            return
        if self.reconciler.apply_sample(sample):
            await self.reconciler.refresh_eta()
            await self._push()

    async def _fold_booking(self, booking: Booking) -> None:
        if self.reconciler is None:
            return
        if not self.reconciler.apply_booking(booking):
            return
        if booking.is_terminal:
            if self.broadcaster is not None:
                self.broadcaster.stop()
        else:
            await self._refresh_snapshot(booking)
            self._retarget()
            await self.reconciler.refresh_eta()
        await self._push()

    # ── Internals ─────────────────────────────────────────────────────

    async def _push(self) -> None:
        if self._on_view is None or self.reconciler is None:
            return
        result = self._on_view(self.reconciler.view())
        if inspect.isawaitable(result):
            await result

    async def _load_booking(self) -> Booking:
        try:
            async with self._session_factory() as session:
                booking = await BookingRepository(session).get_by_id(self.booking_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not load booking") from exc
        if booking is None:
            raise BookingNotFound(f"Booking {self.booking_id} not found")
        return booking

    async def _load_snapshot(self, booking: Booking) -> None:
        if booking.driver_id is None or self.reconciler is None:
            return
        try:
            async with self._session_factory() as session:
                profile = await DriverRepository(session).get_profile(booking.driver_id)
        except SQLAlchemyError as exc:
            raise StoreUnavailable("Could not load driver position") from exc
        if profile is not None and profile.position is not None:
            self.reconciler.apply_snapshot(profile.position)

    async def _refresh_snapshot(self, booking: Booking) -> None:
        # The driver row moves independently of the booking row.
        try:
            await self._load_snapshot(booking)
        except StoreUnavailable:
            logger.warning(
                "Keeping previous position for booking %s, driver row unreadable",
                self.booking_id,
            )

    def _authorise(self, booking: Booking) -> None:
        if self.viewer.role == Role.REQUESTER and booking.requester_id == self.viewer.user_id:
            return
        if self._is_assigned_driver(booking):
            return
        raise ActorNotPermitted(
            f"{self.viewer.user_id} may not track booking {booking.id}"
        )

    def _is_assigned_driver(self, booking: Booking) -> bool:
        return (
            self.viewer.role == Role.DRIVER
            and booking.driver_id is not None
            and booking.driver_id == self.viewer.user_id
        )

    def _start_simulator(self, booking: Booking) -> None:
        assert self.reconciler is not None
        current = self.reconciler.current_position()
        start = current.coordinate if current else DEFAULT_START
        self.simulator = AmbulanceSimulator(
            booking.driver_id, start=start, step_degrees=settings.simulator_step_degrees
        )
        self.broadcaster = LocationBroadcaster(
            booking.driver_id,
            self._channel,
            self._session_factory,
            source=self.simulator.read,
            interval=settings.location_broadcast_interval_seconds,
            snapshot_every=settings.snapshot_every_n_samples,
        )
        self._retarget()
        self.broadcaster.start()

    def _retarget(self) -> None:
        if self.simulator is None or self.reconciler is None:
            return
        target = self.reconciler.eta_target()
        if target is not None and target != self._target:
            self._target = target
            self.simulator.set_target(target)
            logger.debug("Simulator for %s heading to %s", self.simulator.driver_id, target)
