"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``users``     -- requesters and drivers; drivers carry availability and
  the durable last-known position snapshot
* ``bookings``  -- ambulance ride requests; never deleted

Indexes
-------
* **B-Tree** on ``bookings.status``, ``bookings.driver_id`` and
  ``bookings.requester_id`` for the pending-pool and history queries, and on
  ``users.is_available`` for seeding candidate pools.
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    String,
    Text,
    func,
)

from .database import Base
from src.domain.enums import BookingStatus, Role


def _uuid() -> str:
    return str(uuid.uuid4())


def _values(enum_cls):
    return [member.value for member in enum_cls]


class UserModel(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(120), nullable=False)
    phone_number = Column(String(32), nullable=True)
    role = Column(
        Enum(Role, name="user_role", values_callable=_values),
        default=Role.REQUESTER,
        nullable=False,
    )

    # Driver-only columns
    vehicle_model = Column(String(120), nullable=True)
    vehicle_plate = Column(String(32), nullable=True)
    is_available = Column(Boolean, default=False, nullable=False)
    current_lat = Column(Float, nullable=True)
    current_lng = Column(Float, nullable=True)
    location_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_users_role", "role"),
        Index("idx_users_available", "is_available"),
    )


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=_uuid)
    requester_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    driver_id = Column(String(36), ForeignKey("users.id"), nullable=True)

    pickup_address = Column(Text, nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    destination_address = Column(Text, nullable=False)
    destination_lat = Column(Float, nullable=False)
    destination_lng = Column(Float, nullable=False)

    status = Column(
        Enum(BookingStatus, name="booking_status", values_callable=_values),
        default=BookingStatus.PENDING,
        nullable=False,
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_bookings_status", "status"),
        Index("idx_bookings_driver", "driver_id"),
        Index("idx_bookings_requester", "requester_id"),
    )
