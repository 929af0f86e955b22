"""
Driver Location Broadcaster
===========================

Runs every ``location_broadcast_interval_seconds`` (default 5 s) while a
driver is on shift.

Per tick
--------
1. Read the current position from the position source (device feed or
   ``AmbulanceSimulator``).
2. Emit a transient ``locationUpdate`` on the message channel.
3. Every ``snapshot_every_n_samples`` samples (and on the first one), write
   the durable last-known position to the store, so a tracker that opens
   later has something to show before the live stream reaches it.

``shutdown`` stops the timer and announces ``driverAvailability(false)``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config import settings
from src.domain.entities import DriverPosition
from src.domain.events import DriverAvailabilityChanged, LocationUpdate
from src.infrastructure.message_channel import MessageChannel
from src.infrastructure.repositories import DriverRepository

logger = logging.getLogger(__name__)

PositionSource = Callable[[], Awaitable[DriverPosition]]


class LocationBroadcaster:
    def __init__(
        self,
        driver_id: str,
        channel: Optional[MessageChannel],
        session_factory: async_sessionmaker[AsyncSession],
        source: Optional[PositionSource] = None,
        *,
        interval: float = settings.location_broadcast_interval_seconds,
        snapshot_every: int = settings.snapshot_every_n_samples,
    ):
        self.driver_id = driver_id
        self._channel = channel
        self._session_factory = session_factory
        self._source = source
        self.interval = interval
        self.snapshot_every = max(1, snapshot_every)
        self.samples = 0
        self.last_position: Optional[DriverPosition] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Public API ────────────────────────────────────────────────────

    def start(self) -> None:
        if self._source is None:
            raise ValueError("A position source is required to run the timer")
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "Location broadcaster started for %s (interval=%ss)",
            self.driver_id,
            self.interval,
        )

    def stop(self) -> None:
        """Stop the timer.  Safe to call more than once."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Location broadcaster stopped for %s", self.driver_id)

    async def shutdown(self) -> None:
        self.stop()
        if self._channel is None:
            return
        position = self.last_position
        await self._channel.emit(
            DriverAvailabilityChanged(
                driver_id=self.driver_id,
                is_available=False,
                lat=position.latitude if position else None,
                lng=position.longitude if position else None,
            )
        )

    async def publish(self, position: DriverPosition) -> None:
        """Emit one sample and write the snapshot when it is due."""
        self.samples += 1
        self.last_position = position
        if self._channel is not None:
            await self._channel.emit(
                LocationUpdate(
                    driver_id=self.driver_id,
                    lat=position.latitude,
                    lng=position.longitude,
                    timestamp=position.timestamp,
                )
            )
        if self.samples == 1 or self.samples % self.snapshot_every == 0:
            await self._save_snapshot(position)

    # ── Internals ─────────────────────────────────────────────────────

    async def _loop(self) -> None:
        assert self._stop_event is not None and self._source is not None
        while not self._stop_event.is_set():
            try:
                await self.publish(await self._source())
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Location broadcast failed for %s", self.driver_id)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass  # next tick

    async def _save_snapshot(self, position: DriverPosition) -> None:
        try:
            async with self._session_factory() as session:
                await DriverRepository(session).save_position(position)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("Could not save position snapshot for %s", self.driver_id)
