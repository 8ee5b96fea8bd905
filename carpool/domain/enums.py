"""Domain enumerations and state-transition rules."""

import enum


class Role(str, enum.Enum):
    PASSENGER = "passenger"
    DRIVER = "driver"
    ADMIN = "admin"


class TripStatus(str, enum.Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    IN_PROGRESS = "in_progress"
    CANCELED = "canceled"
    COMPLETED = "completed"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    DECLINED_AUTO = "declined_auto"
    CANCELED_BY_PASSENGER = "canceled_by_passenger"
    CANCELED_BY_PLATFORM = "canceled_by_platform"
    DECLINED_BY_ADMIN = "declined_by_admin"
    EXPIRED = "expired"


class PaymentMethod(str, enum.Enum):
    NONE = "none"
    CASH = "cash"
    CARD = "card"


class PaymentStatus(str, enum.Enum):
    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EffectiveState(str, enum.Enum):
    """What a passenger sees: booking status read together with trip status."""

    PENDING = "pending"
    RESERVED = "reserved"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELED = "canceled"
    EXPIRED = "expired"


# State machine: maps current status -> set of valid next statuses
TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.DRAFT: {TripStatus.PUBLISHED, TripStatus.CANCELED},
    TripStatus.PUBLISHED: {TripStatus.IN_PROGRESS, TripStatus.CANCELED},
    TripStatus.IN_PROGRESS: {TripStatus.COMPLETED},
    TripStatus.COMPLETED: set(),
    TripStatus.CANCELED: set(),
}

# Force-cancel is the only way out of IN_PROGRESS other than completion.
ADMIN_TRIP_TRANSITIONS: dict[TripStatus, set[TripStatus]] = {
    TripStatus.PUBLISHED: {TripStatus.CANCELED},
    TripStatus.IN_PROGRESS: {TripStatus.CANCELED},
}

BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.ACCEPTED,
        BookingStatus.DECLINED,
        BookingStatus.DECLINED_AUTO,
        BookingStatus.EXPIRED,
        BookingStatus.CANCELED_BY_PASSENGER,
        BookingStatus.DECLINED_BY_ADMIN,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.CANCELED_BY_PASSENGER,
        BookingStatus.CANCELED_BY_PLATFORM,
        BookingStatus.DECLINED_BY_ADMIN,
    },
    BookingStatus.DECLINED: set(),
    BookingStatus.DECLINED_AUTO: set(),
    BookingStatus.CANCELED_BY_PASSENGER: set(),
    BookingStatus.CANCELED_BY_PLATFORM: set(),
    BookingStatus.DECLINED_BY_ADMIN: set(),
    BookingStatus.EXPIRED: set(),
}

TERMINAL_BOOKING_STATUSES = frozenset(
    status for status, targets in BOOKING_TRANSITIONS.items() if not targets
)

# Card and cash payments may only complete while the trip is underway or done.
PAYMENT_WINDOW = frozenset({TripStatus.IN_PROGRESS, TripStatus.COMPLETED})

CORRECTION_TARGETS: dict[BookingStatus, BookingStatus] = {
    # target -> required current status
    BookingStatus.DECLINED_BY_ADMIN: BookingStatus.PENDING,
    BookingStatus.CANCELED_BY_PLATFORM: BookingStatus.ACCEPTED,
}
