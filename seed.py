"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 5 sample requesters
  - 6 sample ambulance drivers (spread around central Delhi, 4 on shift)
  - 6 sample bookings (mix of pending, accepted, in_progress, completed,
    cancelled)
"""

import asyncio
from datetime import timedelta

from sqlalchemy import text

from src.domain.entities import utcnow
from src.domain.enums import BookingStatus, Role
from src.infrastructure.database import async_session_factory, engine
from src.infrastructure.models import BookingModel, UserModel

REQUESTERS = [
    {"full_name": "Aarav Sharma", "email": "aarav@example.com", "phone": "+91-9810000001"},
    {"full_name": "Priya Patel", "email": "priya@example.com", "phone": "+91-9810000002"},
    {"full_name": "Rohan Mehta", "email": "rohan@example.com", "phone": "+91-9810000003"},
    {"full_name": "Sneha Gupta", "email": "sneha@example.com", "phone": "+91-9810000004"},
    {"full_name": "Meera Nair", "email": "meera@example.com", "phone": "+91-9810000005"},
]

DRIVERS = [
    {"full_name": "Vikram Singh", "email": "vikram@example.com", "vehicle": "Force Traveller", "plate": "DL1CA1001", "lat": 28.7041, "lng": 77.1025, "available": True},
    {"full_name": "Karan Joshi", "email": "karan@example.com", "vehicle": "Tata Winger", "plate": "DL1CA1002", "lat": 28.6139, "lng": 77.2090, "available": True},
    {"full_name": "Arjun Kumar", "email": "arjun@example.com", "vehicle": "Maruti Eeco", "plate": "DL1CA1003", "lat": 28.6280, "lng": 77.2197, "available": True},
    {"full_name": "Diya Iyer", "email": "diya@example.com", "vehicle": "Force Traveller", "plate": "DL1CA1004", "lat": 28.5355, "lng": 77.3910, "available": True},
    {"full_name": "Ananya Reddy", "email": "ananya@example.com", "vehicle": "Tata Winger", "plate": "DL1CA1005", "lat": 28.6692, "lng": 77.4538, "available": False},
    {"full_name": "Kabir Das", "email": "kabir@example.com", "vehicle": "Mahindra Supro", "plate": "DL1CA1006", "lat": 28.4595, "lng": 77.0266, "available": False},
]

AIIMS = ("AIIMS, Ansari Nagar, New Delhi", 28.5672, 77.2100)
SAFDARJUNG = ("Safdarjung Hospital, New Delhi", 28.5686, 77.2066)
MAX_SAKET = ("Max Super Speciality Hospital, Saket", 28.5276, 77.2115)


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        now = utcnow()

        # ── Requesters ────────────────────────────────────────────────
        requesters = []
        for r in REQUESTERS:
            m = UserModel(
                full_name=r["full_name"],
                email=r["email"],
                phone_number=r["phone"],
                role=Role.REQUESTER,
            )
            session.add(m)
            requesters.append(m)
        await session.flush()
        print(f"  Created {len(requesters)} requesters")

        # ── Drivers ───────────────────────────────────────────────────
        drivers = []
        for d in DRIVERS:
            m = UserModel(
                full_name=d["full_name"],
                email=d["email"],
                role=Role.DRIVER,
                vehicle_model=d["vehicle"],
                vehicle_plate=d["plate"],
                is_available=d["available"],
                current_lat=d["lat"],
                current_lng=d["lng"],
                location_updated_at=now,
            )
            session.add(m)
            drivers.append(m)
        await session.flush()
        print(f"  Created {len(drivers)} drivers")

        # ── Bookings ──────────────────────────────────────────────────
        bookings_data = [
            # Waiting for a driver
            {
                "requester": requesters[0],
                "pickup": ("Connaught Place, New Delhi", 28.6315, 77.2167),
                "destination": AIIMS,
                "status": BookingStatus.PENDING,
                "driver": None,
            },
            {
                "requester": requesters[1],
                "pickup": ("Karol Bagh, New Delhi", 28.6519, 77.1909),
                "destination": SAFDARJUNG,
                "status": BookingStatus.PENDING,
                "driver": None,
            },
            # Driver on the way
            {
                "requester": requesters[2],
                "pickup": ("Lajpat Nagar, New Delhi", 28.5677, 77.2433),
                "destination": MAX_SAKET,
                "status": BookingStatus.ACCEPTED,
                "driver": drivers[1],
                "accepted_at": now - timedelta(minutes=4),
            },
            # Patient on board
            {
                "requester": requesters[3],
                "pickup": ("Rajouri Garden, New Delhi", 28.6492, 77.1226),
                "destination": AIIMS,
                "status": BookingStatus.IN_PROGRESS,
                "driver": drivers[2],
                "accepted_at": now - timedelta(minutes=25),
                "started_at": now - timedelta(minutes=10),
            },
            # History
            {
                "requester": requesters[0],
                "pickup": ("Hauz Khas, New Delhi", 28.5494, 77.2001),
                "destination": SAFDARJUNG,
                "status": BookingStatus.COMPLETED,
                "driver": drivers[0],
                "accepted_at": now - timedelta(days=2, minutes=40),
                "started_at": now - timedelta(days=2, minutes=30),
                "completed_at": now - timedelta(days=2, minutes=5),
            },
            {
                "requester": requesters[4],
                "pickup": ("Dwarka Sector 10, New Delhi", 28.5810, 77.0580),
                "destination": MAX_SAKET,
                "status": BookingStatus.CANCELLED,
                "driver": None,
                "cancelled_at": now - timedelta(days=1),
                "cancelled_by": Role.REQUESTER.value,
                "cancellation_reason": "Arranged private transport",
            },
        ]

        for b in bookings_data:
            pickup, destination = b["pickup"], b["destination"]
            booking = BookingModel(
                requester_id=b["requester"].id,
                driver_id=b["driver"].id if b["driver"] else None,
                pickup_address=pickup[0],
                pickup_lat=pickup[1],
                pickup_lng=pickup[2],
                destination_address=destination[0],
                destination_lat=destination[1],
                destination_lng=destination[2],
                status=b["status"],
                accepted_at=b.get("accepted_at"),
                started_at=b.get("started_at"),
                completed_at=b.get("completed_at"),
                cancelled_at=b.get("cancelled_at"),
                cancelled_by=b.get("cancelled_by"),
                cancellation_reason=b.get("cancellation_reason"),
            )
            session.add(booking)
        await session.flush()
        print(f"  Created {len(bookings_data)} bookings")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
