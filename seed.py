"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - 8 sample users (1 admin, 3 drivers, 4 passengers)
  - 5 sample trips (draft, published x2, in_progress, completed)
  - 7 sample bookings with a seat ledger that matches them
  - 1 completed card payment on the completed trip
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import text

from carpool.api.security import issue_token
from carpool.domain.entities import utcnow
from carpool.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    TransactionStatus,
    TripStatus,
)
from carpool.infrastructure.database import async_session_factory, engine
from carpool.infrastructure.models import (
    BookingModel,
    TransactionModel,
    TripModel,
    UserModel,
)


USERS = [
    {"name": "Laura Gómez", "email": "laura.admin@campus.edu", "role": Role.ADMIN},
    {"name": "Andrés Rojas", "email": "andres@campus.edu", "role": Role.DRIVER},
    {"name": "Camila Torres", "email": "camila@campus.edu", "role": Role.DRIVER},
    {"name": "Julián Pardo", "email": "julian@campus.edu", "role": Role.DRIVER},
    {"name": "Valentina Ruiz", "email": "valentina@campus.edu", "role": Role.PASSENGER},
    {"name": "Santiago Díaz", "email": "santiago@campus.edu", "role": Role.PASSENGER},
    {"name": "Mariana López", "email": "mariana@campus.edu", "role": Role.PASSENGER},
    {"name": "Felipe Castro", "email": "felipe@campus.edu", "role": Role.PASSENGER},
]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM users"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Users ─────────────────────────────────────────────────────
        users = []
        for u in USERS:
            m = UserModel(name=u["name"], email=u["email"], role=u["role"])
            session.add(m)
            users.append(m)
        await session.flush()
        print(f"  Created {len(users)} users")

        admin, andres, camila, julian = users[:4]
        valentina, santiago, mariana, felipe = users[4:]
        now = utcnow()

        # ── Trips ─────────────────────────────────────────────────────
        def trip(driver, status, hours, total, allocated, price):
            return TripModel(
                driver_id=driver.id,
                origin="Campus Norte",
                destination="Portal 80",
                departure_at=now + timedelta(hours=hours),
                estimated_arrival_at=now + timedelta(hours=hours, minutes=45),
                price_per_seat=Decimal(price),
                total_seats=total,
                allocated_seats=allocated,
                status=status,
            )

        draft = trip(andres, TripStatus.DRAFT, 48, 3, 0, "6000")
        open_a = trip(andres, TripStatus.PUBLISHED, 20, 3, 2, "7000")
        open_b = trip(camila, TripStatus.PUBLISHED, 26, 4, 1, "5500")
        running = trip(julian, TripStatus.IN_PROGRESS, -0.5, 3, 2, "8000")
        done = trip(camila, TripStatus.COMPLETED, -30, 2, 1, "9000")
        session.add_all([draft, open_a, open_b, running, done])
        await session.flush()
        print("  Created 5 trips")

        # ── Bookings ──────────────────────────────────────────────────
        bookings = [
            BookingModel(trip_id=open_a.id, passenger_id=valentina.id, seats=2,
                         status=BookingStatus.ACCEPTED),
            BookingModel(trip_id=open_a.id, passenger_id=santiago.id, seats=1,
                         status=BookingStatus.PENDING, note="Salgo de la biblioteca"),
            BookingModel(trip_id=open_b.id, passenger_id=mariana.id, seats=1,
                         status=BookingStatus.ACCEPTED),
            BookingModel(trip_id=open_b.id, passenger_id=felipe.id, seats=1,
                         status=BookingStatus.DECLINED),
            BookingModel(trip_id=running.id, passenger_id=santiago.id, seats=1,
                         status=BookingStatus.ACCEPTED,
                         payment_method=PaymentMethod.CASH,
                         payment_status=PaymentStatus.PENDING),
            BookingModel(trip_id=running.id, passenger_id=felipe.id, seats=1,
                         status=BookingStatus.ACCEPTED),
            BookingModel(trip_id=done.id, passenger_id=mariana.id, seats=1,
                         status=BookingStatus.ACCEPTED,
                         payment_method=PaymentMethod.CARD,
                         payment_status=PaymentStatus.COMPLETED),
        ]
        session.add_all(bookings)
        await session.flush()
        print(f"  Created {len(bookings)} bookings")

        # ── Transactions ──────────────────────────────────────────────
        session.add_all([
            TransactionModel(
                booking_id=bookings[4].id,
                method=PaymentMethod.CASH,
                amount=Decimal("8000"),
                currency="cop",
                status=TransactionStatus.PENDING,
            ),
            TransactionModel(
                booking_id=bookings[6].id,
                method=PaymentMethod.CARD,
                amount=Decimal("9000"),
                currency="cop",
                payment_intent_id="pi_seed_completed",
                status=TransactionStatus.SUCCEEDED,
            ),
        ])
        await session.commit()
        print("  Created 2 transactions")

        # Dev tokens so reviewers can call the API straight away.
        print("\nBearer tokens (valid 12h):")
        for u, info in zip(users, USERS):
            token = issue_token(u.id, info["role"], timedelta(hours=12))
            print(f"  {info['role'].value:<9} {u.email:<26} {token}")

        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
