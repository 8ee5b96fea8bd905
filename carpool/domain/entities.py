"""
Domain value objects and lifecycle rules.

Patterns used
-------------
- **State Pattern** via transition tables in ``enums``: ``ensure_*`` guards
  raise the stable conflict error the caller should surface.
- ``effective_state`` centralises how booking status and trip status combine
  into the single state a passenger sees.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .enums import (
    ADMIN_TRIP_TRANSITIONS,
    BOOKING_TRANSITIONS,
    TRIP_TRANSITIONS,
    BookingStatus,
    EffectiveState,
    Role,
    TripStatus,
)
from .errors import (
    BookingNotAccepted,
    BookingNotCancelable,
    BookingNotPending,
    InvalidReason,
    InvalidTripTransition,
    StateConflict,
)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class Actor:
    """Request-scoped identity supplied by the auth collaborator."""

    user_id: int
    role: Role


@dataclass(frozen=True)
class CapacitySnapshot:
    trip_id: int
    total_seats: int
    allocated_seats: int

    @property
    def remaining_seats(self) -> int:
        return self.total_seats - self.allocated_seats


@dataclass(frozen=True)
class RefundRequest:
    amount: Decimal
    reason: str
    currency: Optional[str] = None


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    client_secret: str
    status: str = "requires_payment_method"


# ── Transition guards ─────────────────────────────────────────────────

# Error raised when a booking cannot reach *target*, keyed by target.
_BOOKING_CONFLICTS: dict[BookingStatus, type[StateConflict]] = {
    BookingStatus.ACCEPTED: BookingNotPending,
    BookingStatus.DECLINED: BookingNotPending,
    BookingStatus.DECLINED_AUTO: BookingNotPending,
    BookingStatus.EXPIRED: BookingNotPending,
    BookingStatus.DECLINED_BY_ADMIN: BookingNotPending,
    BookingStatus.CANCELED_BY_PLATFORM: BookingNotAccepted,
    BookingStatus.CANCELED_BY_PASSENGER: BookingNotCancelable,
}


def ensure_booking_transition(
    current: BookingStatus, target: BookingStatus
) -> None:
    """Raise the matching conflict error unless *current* -> *target* is legal."""
    allowed = BOOKING_TRANSITIONS.get(BookingStatus(current), set())
    if target not in allowed:
        error = _BOOKING_CONFLICTS.get(target, StateConflict)
        raise error(f"Cannot move booking from {current.value} to {target.value}")


def ensure_trip_transition(
    current: TripStatus, target: TripStatus, *, admin: bool = False
) -> None:
    table = ADMIN_TRIP_TRANSITIONS if admin else TRIP_TRANSITIONS
    if target not in table.get(TripStatus(current), set()):
        raise InvalidTripTransition(
            f"Cannot move trip from {current.value} to {target.value}"
        )


def effective_state(
    booking_status: BookingStatus, trip_status: TripStatus
) -> EffectiveState:
    """Combine booking and trip status into what the passenger sees."""
    if booking_status == BookingStatus.PENDING:
        return EffectiveState.PENDING
    if booking_status == BookingStatus.ACCEPTED:
        return {
            TripStatus.IN_PROGRESS: EffectiveState.IN_PROGRESS,
            TripStatus.COMPLETED: EffectiveState.COMPLETED,
            TripStatus.CANCELED: EffectiveState.CANCELED,
        }.get(trip_status, EffectiveState.RESERVED)
    if booking_status in (
        BookingStatus.DECLINED,
        BookingStatus.DECLINED_AUTO,
        BookingStatus.DECLINED_BY_ADMIN,
    ):
        return EffectiveState.DECLINED
    if booking_status == BookingStatus.EXPIRED:
        return EffectiveState.EXPIRED
    return EffectiveState.CANCELED


# ── Helpers ───────────────────────────────────────────────────────────


def validate_reason(reason: Optional[str], min_length: int = 5) -> str:
    """Return the stripped reason or raise ``InvalidReason``."""
    cleaned = (reason or "").strip()
    if len(cleaned) < min_length:
        raise InvalidReason(
            f"A reason of at least {min_length} characters is required"
        )
    return cleaned


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (e.g. read back from SQLite) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)
