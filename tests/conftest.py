"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  ``StaticPool`` keeps every session on the same
in-memory database; SQLite ignores ``FOR UPDATE`` so row locking is exercised
only through the conditional UPDATEs.  The payment processor and the event
sink are replaced with in-process fakes.
"""

import json
from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from carpool.api.middleware import limiter
from carpool.domain.entities import Actor, PaymentIntent, utcnow
from carpool.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    TransactionStatus,
    TripStatus,
)
from carpool.domain.errors import PaymentProcessorError, ValidationFailed
from carpool.infrastructure.database import Base
from carpool.infrastructure.events import EventSink, TransitionEvent
from carpool.infrastructure.models import (
    BookingModel,
    TransactionModel,
    TripModel,
    UserModel,
)
from carpool.infrastructure.payments import PaymentProcessor

# Rate limits are exercised in production only.
limiter.enabled = False

TEST_DB_URL = "sqlite+aiosqlite://"

ADMIN = Actor(user_id=1, role=Role.ADMIN)
DRIVER = Actor(user_id=2, role=Role.DRIVER)
PASSENGER = Actor(user_id=3, role=Role.PASSENGER)
OTHER_PASSENGER = Actor(user_id=4, role=Role.PASSENGER)
OTHER_DRIVER = Actor(user_id=5, role=Role.DRIVER)


# ── Fakes ─────────────────────────────────────────────────────────────


class RecordingSink(EventSink):
    def __init__(self):
        self.events: list[TransitionEvent] = []

    async def publish(self, event: TransitionEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


class FakeProcessor(PaymentProcessor):
    """Intents start unpaid; tests flip them with ``succeed``."""

    def __init__(self):
        self.intents: dict[str, str] = {}
        self.fail_next = False

    async def create_intent(self, amount, currency, metadata) -> PaymentIntent:
        if self.fail_next:
            self.fail_next = False
            raise PaymentProcessorError("Card network unavailable")
        intent_id = f"pi_test_{len(self.intents) + 1}"
        self.intents[intent_id] = "requires_payment_method"
        return PaymentIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret")

    async def retrieve_status(self, intent_id: str) -> str:
        return self.intents.get(intent_id, "requires_payment_method")

    def succeed(self, intent_id: str) -> None:
        self.intents[intent_id] = "succeeded"

    def parse_webhook(self, payload: bytes, signature: str) -> dict:
        if signature != "valid-signature":
            raise ValidationFailed("Invalid webhook payload")
        data = json.loads(payload)
        return {"type": data["type"], "intent_id": data["intent_id"]}


# ── Data helpers ──────────────────────────────────────────────────────


async def make_trip(
    session: AsyncSession,
    *,
    driver_id: int = DRIVER.user_id,
    status: TripStatus = TripStatus.PUBLISHED,
    total_seats: int = 3,
    price: str = "10000",
    departs_in: timedelta = timedelta(hours=6),
) -> TripModel:
    departure = utcnow() + departs_in
    trip = TripModel(
        driver_id=driver_id,
        origin="Campus Norte",
        destination="Portal 80",
        departure_at=departure,
        estimated_arrival_at=departure + timedelta(minutes=45),
        price_per_seat=Decimal(price),
        total_seats=total_seats,
        allocated_seats=0,
        status=status,
    )
    session.add(trip)
    await session.flush()
    return trip


async def make_booking(
    session: AsyncSession,
    trip: TripModel,
    *,
    passenger_id: int = PASSENGER.user_id,
    seats: int = 1,
    status: BookingStatus = BookingStatus.PENDING,
    payment_method: PaymentMethod = PaymentMethod.NONE,
    payment_status: PaymentStatus = PaymentStatus.NONE,
) -> BookingModel:
    """Insert a booking; accepted ones are charged to the trip's ledger."""
    booking = BookingModel(
        trip_id=trip.id,
        passenger_id=passenger_id,
        seats=seats,
        status=status,
        payment_method=payment_method,
        payment_status=payment_status,
    )
    session.add(booking)
    if status == BookingStatus.ACCEPTED:
        trip.allocated_seats += seats
    await session.flush()
    return booking


async def make_card_payment(
    session: AsyncSession,
    booking: BookingModel,
    amount: str = "10000",
    intent_id: Optional[str] = None,
) -> TransactionModel:
    """A completed card charge for *booking*."""
    txn = TransactionModel(
        booking_id=booking.id,
        method=PaymentMethod.CARD,
        amount=Decimal(amount),
        currency="cop",
        payment_intent_id=intent_id or f"pi_paid_{booking.id}",
        status=TransactionStatus.SUCCEEDED,
    )
    session.add(txn)
    booking.payment_method = PaymentMethod.CARD
    booking.payment_status = PaymentStatus.COMPLETED
    await session.flush()
    return txn


def seed_user(actor: Actor, name: str, email: str) -> UserModel:
    return UserModel(id=actor.user_id, name=name, email=email, role=actor.role)


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add_all(
            [
                seed_user(ADMIN, "Laura Admin", "admin@campus.edu"),
                seed_user(DRIVER, "Andrés Driver", "andres@campus.edu"),
                seed_user(PASSENGER, "Valentina", "valentina@campus.edu"),
                seed_user(OTHER_PASSENGER, "Santiago", "santiago@campus.edu"),
                seed_user(OTHER_DRIVER, "Camila Driver", "camila@campus.edu"),
            ]
        )
        await session.commit()
    return factory


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
