"""
SQLAlchemy ORM models.

Tables
------
* ``users``          -- mirror of the identity service; role, suspension, publish ban
* ``trips``          -- driver offers; ``allocated_seats`` is the seat ledger
* ``bookings``       -- passenger seat requests
* ``transactions``   -- append-only payment and refund records
* ``admin_actions``  -- append-only audit log / moderation notes

Indexes
-------
* **B-Tree** on ``status``, ``driver_id``, ``trip_id``, ``passenger_id``,
  ``payment_intent_id`` and audit filters for the look-ups used by the state
  machines, the expiry sweep and the admin console.
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)

from .database import Base
from carpool.domain.entities import utcnow
from carpool.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    TransactionStatus,
    TripStatus,
)


def _status(enum_cls: type[enum.Enum]) -> Enum:
    """Store enum *values* as plain strings (no native PG enum)."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
        validate_strings=True,
    )


class UserModel(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    role = Column(_status(Role), default=Role.PASSENGER, nullable=False)
    is_suspended = Column(Boolean, default=False, nullable=False)
    suspended_reason = Column(Text, nullable=True)
    publish_ban_until = Column(DateTime(timezone=True), nullable=True)
    publish_ban_reason = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )


class TripModel(Base):
    __tablename__ = "trips"

    id = Column(Integer, primary_key=True, autoincrement=True)
    driver_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    origin = Column(String(255), nullable=False)
    destination = Column(String(255), nullable=False)
    departure_at = Column(DateTime(timezone=True), nullable=False)
    estimated_arrival_at = Column(DateTime(timezone=True), nullable=False)
    price_per_seat = Column(Numeric(12, 2), nullable=False)
    total_seats = Column(Integer, nullable=False)
    allocated_seats = Column(Integer, default=0, nullable=False)
    status = Column(_status(TripStatus), default=TripStatus.DRAFT, nullable=False)
    notes = Column(Text, nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("allocated_seats >= 0", name="ck_trips_allocated_nonneg"),
        CheckConstraint(
            "allocated_seats <= total_seats", name="ck_trips_no_oversell"
        ),
        Index("idx_trips_status", "status"),
        Index("idx_trips_driver", "driver_id"),
        Index("idx_trips_departure", "departure_at"),
    )

    @property
    def remaining_seats(self) -> int:
        return self.total_seats - self.allocated_seats


class BookingModel(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(Integer, ForeignKey("trips.id"), nullable=False)
    passenger_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    seats = Column(Integer, default=1, nullable=False)
    status = Column(
        _status(BookingStatus), default=BookingStatus.PENDING, nullable=False
    )
    note = Column(Text, nullable=True)
    payment_method = Column(
        _status(PaymentMethod), default=PaymentMethod.NONE, nullable=False
    )
    payment_status = Column(
        _status(PaymentStatus), default=PaymentStatus.NONE, nullable=False
    )

    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    __table_args__ = (
        CheckConstraint("seats > 0", name="ck_bookings_seats_positive"),
        Index("idx_bookings_trip", "trip_id"),
        Index("idx_bookings_passenger", "passenger_id"),
        Index("idx_bookings_status", "status"),
    )


class TransactionModel(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False)
    method = Column(_status(PaymentMethod), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    payment_intent_id = Column(String(255), unique=True, nullable=True)
    status = Column(
        _status(TransactionStatus),
        default=TransactionStatus.PENDING,
        nullable=False,
    )
    refund_of_id = Column(Integer, ForeignKey("transactions.id"), nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_transactions_booking", "booking_id"),
        Index("idx_transactions_intent", "payment_intent_id"),
    )


class AdminActionModel(Base):
    __tablename__ = "admin_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String(32), nullable=False)
    entity_id = Column(Integer, nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    action = Column(String(64), nullable=False)
    category = Column(String(64), nullable=True)
    reason = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("idx_admin_actions_entity", "entity_type", "entity_id"),
        Index("idx_admin_actions_actor", "actor_id"),
        Index("idx_admin_actions_created", "created_at"),
    )
