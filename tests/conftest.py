"""
Shared test fixtures.

Uses a file-backed SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models are used as-is; a file
rather than ``:memory:`` lets concurrent sessions see each other's commits.

``FakeRedis`` stands in for a Redis server: it keeps keys in a dict and
loops ``publish`` back to every pub/sub connection subscribed to the
channel, so the real ``RedisListener`` drain loop runs unchanged.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from src.api.middleware import limiter
from src.domain.entities import Booking, Coordinate, Location, Route, Session, utcnow
from src.domain.enums import BookingStatus, Role
from src.domain.exceptions import RoutingError
from src.infrastructure.database import Base
from src.infrastructure.models import BookingModel, UserModel

PICKUP = Location("Connaught Place, New Delhi", 28.6315, 77.2167)
DESTINATION = Location("AIIMS, New Delhi", 28.5672, 77.2100)

limiter.enabled = False


# ── Test DB (SQLite file) ─────────────────────────────────────────────


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create tables, yield a session factory, then drop everything."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'dispatch.db'}",
        echo=False,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


async def add_user(
    session_factory,
    role: Role,
    *,
    available: bool = False,
    lat: Optional[float] = None,
    lng: Optional[float] = None,
    name: str = "Test User",
) -> Session:
    async with session_factory() as session:
        user = UserModel(
            email=f"{role.value}-{uuid.uuid4().hex}@example.com",
            full_name=name,
            role=role,
            is_available=available,
            current_lat=lat,
            current_lng=lng,
            location_updated_at=utcnow() if lat is not None else None,
        )
        session.add(user)
        await session.commit()
        return Session(user_id=user.id, role=role)


async def add_booking(
    session_factory,
    requester: Session,
    *,
    status: BookingStatus = BookingStatus.PENDING,
    driver: Optional[Session] = None,
) -> str:
    async with session_factory() as session:
        row = BookingModel(
            requester_id=requester.user_id,
            driver_id=driver.user_id if driver else None,
            pickup_address=PICKUP.address,
            pickup_lat=PICKUP.latitude,
            pickup_lng=PICKUP.longitude,
            destination_address=DESTINATION.address,
            destination_lat=DESTINATION.latitude,
            destination_lng=DESTINATION.longitude,
            status=status,
        )
        session.add(row)
        await session.commit()
        return row.id


@pytest_asyncio.fixture
async def requester(session_factory) -> Session:
    return await add_user(session_factory, Role.REQUESTER, name="Aarav Sharma")


@pytest_asyncio.fixture
async def driver(session_factory) -> Session:
    return await add_user(
        session_factory, Role.DRIVER, available=True, lat=28.70, lng=77.10, name="Vikram Singh"
    )


# ── Domain builders ───────────────────────────────────────────────────


def make_booking(
    booking_id: str = "b-1",
    status: BookingStatus = BookingStatus.PENDING,
    driver_id: Optional[str] = None,
    requester_id: str = "r-1",
    created_at=None,
) -> Booking:
    return Booking(
        id=booking_id,
        requester_id=requester_id,
        pickup=PICKUP,
        destination=DESTINATION,
        status=status,
        driver_id=driver_id,
        created_at=created_at or utcnow(),
    )


# ── Doubles ───────────────────────────────────────────────────────────


class FakeRouting:
    """Routing double: records calls; set ``fail`` to raise ``RoutingError``."""

    def __init__(self, duration_text: str = "7 mins"):
        self.duration_text = duration_text
        self.fail = False
        self.calls: list[tuple[Coordinate, Coordinate]] = []

    async def compute_route(self, origin: Coordinate, destination: Coordinate) -> Route:
        self.calls.append((origin, destination))
        if self.fail:
            raise RoutingError("OVER_QUERY_LIMIT")
        return Route(path=(origin, destination), duration_text=self.duration_text)


class FakePubSub:
    def __init__(self, server: "FakeRedis"):
        self.server = server
        self.channels: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    @property
    def subscribed(self) -> bool:
        return bool(self.channels)

    async def subscribe(self, *channels: str) -> None:
        self.channels.update(channels)

    async def unsubscribe(self, *channels: str) -> None:
        self.channels.difference_update(channels)

    async def get_message(self, ignore_subscribe_messages: bool = True, timeout: float = 1.0):
        # asyncio.wait (unlike wait_for on Python < 3.12) never swallows a
        # cancellation that lands as the queue read completes.
        getter = asyncio.ensure_future(self.queue.get())
        try:
            done, _ = await asyncio.wait({getter}, timeout=timeout)
        finally:
            if not getter.done():
                getter.cancel()
        return getter.result() if done else None

    async def aclose(self) -> None:
        self.closed = True
        self.server.pubsubs.remove(self)


class FakeRedis:
    def __init__(self):
        self.data: dict[str, str] = {}
        self.pubsubs: list[FakePubSub] = []
        self.published: list[tuple[str, str]] = []

    def pubsub(self) -> FakePubSub:
        ps = FakePubSub(self)
        self.pubsubs.append(ps)
        return ps

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        receivers = [ps for ps in self.pubsubs if channel in ps.channels]
        for ps in receivers:
            ps.queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(receivers)

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.data:
            return None
        self.data[key] = value
        return True

    async def eval(self, script, numkeys, key, token):
        if self.data.get(key) == token:
            del self.data[key]
            return 1
        return 0

    def subscribers(self, channel: str) -> int:
        return sum(1 for ps in self.pubsubs if channel in ps.channels)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def redis_factory(fake_redis):
    async def factory():
        return fake_redis

    return factory


async def settle(rounds: int = 20) -> None:
    """Let listener tasks drain what has been published."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)
