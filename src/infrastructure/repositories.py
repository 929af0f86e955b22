"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Rows leave this module as domain entities,
never as ORM objects.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import BookingModel, UserModel
from src.domain.entities import (
    Booking,
    DriverPosition,
    DriverProfile,
    Location,
    as_utc,
)
from src.domain.enums import ASSIGNED_STATUSES, BookingStatus, Role


def _ts(value: Optional[datetime]) -> Optional[datetime]:
    return as_utc(value) if value is not None else None


def to_booking(row: BookingModel) -> Booking:
    return Booking(
        id=row.id,
        requester_id=row.requester_id,
        driver_id=row.driver_id,
        pickup=Location(row.pickup_address, row.pickup_lat, row.pickup_lng),
        destination=Location(
            row.destination_address, row.destination_lat, row.destination_lng
        ),
        status=BookingStatus(row.status),
        created_at=_ts(row.created_at),
        accepted_at=_ts(row.accepted_at),
        started_at=_ts(row.started_at),
        completed_at=_ts(row.completed_at),
        cancelled_at=_ts(row.cancelled_at),
        cancelled_by=row.cancelled_by,
        cancellation_reason=row.cancellation_reason,
    )


def to_driver_profile(row: UserModel) -> DriverProfile:
    position = None
    if row.current_lat is not None and row.current_lng is not None:
        position = DriverPosition(
            driver_id=row.id,
            latitude=row.current_lat,
            longitude=row.current_lng,
            timestamp=_ts(row.location_updated_at) or _ts(row.created_at),
            is_live=False,
        )
    return DriverProfile(
        id=row.id,
        full_name=row.full_name,
        phone_number=row.phone_number,
        vehicle_model=row.vehicle_model,
        vehicle_plate=row.vehicle_plate,
        is_available=bool(row.is_available),
        position=position,
    )


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_booking(
        self,
        *,
        requester_id: str,
        pickup: Location,
        destination: Location,
    ) -> Booking:
        row = BookingModel(
            requester_id=requester_id,
            pickup_address=pickup.address,
            pickup_lat=pickup.latitude,
            pickup_lng=pickup.longitude,
            destination_address=destination.address,
            destination_lat=destination.latitude,
            destination_lng=destination.longitude,
            status=BookingStatus.PENDING,
        )
        self.session.add(row)
        await self.session.flush()
        await self.session.refresh(row)
        return to_booking(row)

    async def get_by_id(self, booking_id: str) -> Optional[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.id == booking_id)
            .execution_options(populate_existing=True)
        )
        row = result.scalar_one_or_none()
        return to_booking(row) if row else None

    async def guarded_transition(
        self,
        booking_id: str,
        expected_status: BookingStatus,
        new_fields: dict[str, Any],
        *,
        require_unassigned: bool = False,
        expected_driver_id: Optional[str] = None,
    ) -> int:
        """
        Compare-and-set on one booking row.  Returns rows affected (0 or 1);
        zero means the row no longer matched and someone else got there first.
        """
        stmt = (
            update(BookingModel)
            .where(BookingModel.id == booking_id)
            .where(BookingModel.status == expected_status)
        )
        if require_unassigned:
            stmt = stmt.where(BookingModel.driver_id.is_(None))
        if expected_driver_id is not None:
            stmt = stmt.where(BookingModel.driver_id == expected_driver_id)
        stmt = stmt.values(**new_fields).execution_options(synchronize_session=False)
        result = await self.session.execute(stmt)
        return result.rowcount or 0

    async def list_pending_unassigned(self) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.status == BookingStatus.PENDING)
            .where(BookingModel.driver_id.is_(None))
            .order_by(BookingModel.created_at.desc())
        )
        return [to_booking(r) for r in result.scalars().all()]

    async def list_for_requester(self, requester_id: str) -> list[Booking]:
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.requester_id == requester_id)
            .order_by(BookingModel.created_at.desc())
        )
        return [to_booking(r) for r in result.scalars().all()]

    async def list_for_driver(
        self, driver_id: str, active_only: bool = False
    ) -> list[Booking]:
        query = select(BookingModel).where(BookingModel.driver_id == driver_id)
        if active_only:
            query = query.where(BookingModel.status.in_(sorted(ASSIGNED_STATUSES)))
        result = await self.session.execute(
            query.order_by(BookingModel.created_at.desc())
        )
        return [to_booking(r) for r in result.scalars().all()]

    async def count_active_for_driver(self, driver_id: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(BookingModel)
            .where(BookingModel.driver_id == driver_id)
            .where(BookingModel.status.in_(sorted(ASSIGNED_STATUSES)))
        )
        return result.scalar() or 0


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_profile(self, driver_id: str) -> Optional[DriverProfile]:
        row = await self._get_driver(driver_id)
        return to_driver_profile(row) if row else None

    async def is_available(self, driver_id: str) -> bool:
        row = await self._get_driver(driver_id)
        return bool(row and row.is_available)

    async def set_availability(self, driver_id: str, available: bool) -> bool:
        result = await self.session.execute(
            update(UserModel)
            .where(UserModel.id == driver_id)
            .where(UserModel.role == Role.DRIVER)
            .values(is_available=available)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def save_position(self, position: DriverPosition) -> None:
        """Write the durable last-known snapshot."""
        await self.session.execute(
            update(UserModel)
            .where(UserModel.id == position.driver_id)
            .values(
                current_lat=position.latitude,
                current_lng=position.longitude,
                location_updated_at=position.timestamp,
            )
            .execution_options(synchronize_session=False)
        )

    async def list_drivers(self) -> list[DriverProfile]:
        result = await self.session.execute(
            select(UserModel).where(UserModel.role == Role.DRIVER)
        )
        return [to_driver_profile(r) for r in result.scalars().all()]

    async def _get_driver(self, driver_id: str) -> Optional[UserModel]:
        result = await self.session.execute(
            select(UserModel)
            .where(UserModel.id == driver_id)
            .where(UserModel.role == Role.DRIVER)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

