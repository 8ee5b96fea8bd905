"""
Trip state machine
==================

::

    draft ──> published ──> in_progress ──> completed
      │           │              ┆
      └───────────┴──> canceled <┘  (force-cancel by an admin only)

Driver cancellation and admin force-cancel cascade onto bookings: pending
ones are auto-declined, accepted ones release their seats and become
``canceled_by_platform``.  Completion opens the payment window.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import BookingStateMachine
from .guards import emit, ensure_active_user, ensure_trip_driver, load_trip, load_user
from .payments import PaymentReconciler
from carpool.config import settings
from carpool.domain.entities import Actor, as_utc, ensure_trip_transition, utcnow
from carpool.domain.enums import BookingStatus, TripStatus
from carpool.domain.errors import (
    DriverPublishBanned,
    InvalidSeats,
    InvalidTripTransition,
    TripNotEditable,
    ValidationFailed,
)
from carpool.infrastructure.models import BookingModel, TransactionModel, TripModel
from carpool.infrastructure.repositories import TripRepository

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
    "origin",
    "destination",
    "departure_at",
    "estimated_arrival_at",
    "price_per_seat",
    "total_seats",
    "notes",
)
CLEARABLE_FIELDS = ("notes",)


class TripStateMachine:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.trips = TripRepository(session)
        self.bookings = BookingStateMachine(session)
        self.payments = PaymentReconciler(session)

    # ── Driver actions ────────────────────────────────────────────────

    async def create(
        self,
        actor: Actor,
        *,
        origin: str,
        destination: str,
        departure_at: datetime,
        estimated_arrival_at: datetime,
        price_per_seat: Decimal,
        total_seats: int,
        notes: Optional[str] = None,
    ) -> TripModel:
        await ensure_active_user(self.session, actor.user_id)
        self._validate(departure_at, estimated_arrival_at, price_per_seat, total_seats)

        trip = await self.trips.create(
            TripModel(
                driver_id=actor.user_id,
                origin=origin.strip(),
                destination=destination.strip(),
                departure_at=as_utc(departure_at),
                estimated_arrival_at=as_utc(estimated_arrival_at),
                price_per_seat=price_per_seat,
                total_seats=total_seats,
                allocated_seats=0,
                notes=notes,
                status=TripStatus.DRAFT,
            )
        )
        emit(
            self.session,
            "trip",
            trip.id,
            "trip.created",
            to_status=TripStatus.DRAFT.value,
            actor_id=actor.user_id,
        )
        logger.info("Trip %d drafted by driver %d", trip.id, actor.user_id)
        return trip

    async def update(
        self, actor: Actor, trip_id: int, changes: dict[str, Any]
    ) -> TripModel:
        trip = await load_trip(self.session, trip_id, for_update=True)
        ensure_trip_driver(actor, trip)
        if trip.status != TripStatus.DRAFT:
            raise TripNotEditable()

        values = {k: v for k, v in changes.items() if k in EDITABLE_FIELDS}
        cleared = sorted(
            k for k, v in values.items() if v is None and k not in CLEARABLE_FIELDS
        )
        if cleared:
            raise ValidationFailed(f"Cannot clear {', '.join(cleared)}")
        for key in ("origin", "destination"):
            if key in values:
                values[key] = values[key].strip()
        self._validate(
            values.get("departure_at", trip.departure_at),
            values.get("estimated_arrival_at", trip.estimated_arrival_at),
            values.get("price_per_seat", trip.price_per_seat),
            values.get("total_seats", trip.total_seats),
        )
        for key, value in values.items():
            if isinstance(value, datetime):
                value = as_utc(value)
            setattr(trip, key, value)
        await self.session.flush()
        return trip

    async def publish(self, actor: Actor, trip_id: int) -> TripModel:
        trip = await load_trip(self.session, trip_id, for_update=True)
        ensure_trip_driver(actor, trip)

        driver = await load_user(self.session, trip.driver_id)
        banned_until = as_utc(driver.publish_ban_until)
        if banned_until is not None and banned_until > utcnow():
            raise DriverPublishBanned(
                f"Publishing is blocked until {banned_until.isoformat()}"
            )

        await self._transition(trip, TripStatus.PUBLISHED, actor_id=actor.user_id)
        return trip

    async def start(self, actor: Actor, trip_id: int) -> TripModel:
        trip = await load_trip(self.session, trip_id, for_update=True)
        ensure_trip_driver(actor, trip)
        await self._transition(trip, TripStatus.IN_PROGRESS, actor_id=actor.user_id)
        return trip

    async def complete(self, actor: Actor, trip_id: int) -> TripModel:
        trip = await load_trip(self.session, trip_id, for_update=True)
        ensure_trip_driver(actor, trip)
        await self._transition(trip, TripStatus.COMPLETED, actor_id=actor.user_id)
        await self.payments.open_window(trip)
        return trip

    async def cancel(self, actor: Actor, trip_id: int) -> TripModel:
        trip = await load_trip(self.session, trip_id, for_update=True)
        ensure_trip_driver(actor, trip)
        await self._transition(trip, TripStatus.CANCELED, actor_id=actor.user_id)
        await self.bookings.cascade_trip_cancellation(trip, actor_id=actor.user_id)
        return trip

    # ── Admin ─────────────────────────────────────────────────────────

    async def force_cancel(
        self, actor: Actor, trip_id: int, reason: str
    ) -> tuple[
        TripModel,
        list[tuple[BookingModel, BookingStatus]],
        dict[int, TransactionModel],
    ]:
        """Cancel a published or running trip.

        Returns the trip, the ``(booking, previous_status)`` pairs changed by
        the cascade, and the refunds issued per booking id.
        """
        trip = await load_trip(self.session, trip_id, for_update=True)
        await self._transition(
            trip, TripStatus.CANCELED, actor_id=actor.user_id, admin=True, reason=reason
        )
        changed = await self.bookings.cascade_trip_cancellation(
            trip, actor_id=actor.user_id, reason=reason
        )

        refunds: dict[int, TransactionModel] = {}
        for booking, previous in changed:
            if previous != BookingStatus.ACCEPTED:
                continue
            refund = await self.payments.refund_in_full(booking, actor, reason)
            if refund is not None:
                refunds[booking.id] = refund
        await self.session.refresh(trip)
        return trip, changed, refunds

    # ── Queries ───────────────────────────────────────────────────────

    async def get_for_driver(self, actor: Actor, trip_id: int) -> TripModel:
        trip = await load_trip(self.session, trip_id)
        ensure_trip_driver(actor, trip)
        return trip

    async def list_for_driver(
        self,
        actor: Actor,
        statuses: Optional[list[TripStatus]] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[TripModel], int]:
        """The driver's own trips, optionally limited to a departure window."""
        return await self.trips.list_for_driver(
            actor.user_id,
            statuses,
            departure_from=as_utc(from_date),
            departure_to=as_utc(to_date),
            page=page,
            page_size=page_size,
        )

    # ── Internals ─────────────────────────────────────────────────────

    @staticmethod
    def _validate(
        departure_at: datetime,
        estimated_arrival_at: datetime,
        price_per_seat: Decimal,
        total_seats: int,
    ) -> None:
        if as_utc(estimated_arrival_at) <= as_utc(departure_at):
            raise ValidationFailed("Arrival must be after departure")
        if Decimal(price_per_seat) < 0:
            raise ValidationFailed("Price per seat cannot be negative")
        if not 1 <= total_seats <= settings.max_seats_per_trip:
            raise InvalidSeats(
                f"Total seats must be between 1 and {settings.max_seats_per_trip}"
            )

    async def _transition(
        self,
        trip: TripModel,
        target: TripStatus,
        *,
        actor_id: Optional[int] = None,
        admin: bool = False,
        reason: Optional[str] = None,
    ) -> None:
        previous = TripStatus(trip.status)
        ensure_trip_transition(previous, target, admin=admin)
        if not await self.trips.compare_and_set_status(trip.id, [previous], target):
            await self.session.refresh(trip)
            raise InvalidTripTransition(
                f"Trip is now {TripStatus(trip.status).value}"
            )
        await self.session.refresh(trip)
        emit(
            self.session,
            "trip",
            trip.id,
            f"trip.{target.value}",
            from_status=previous.value,
            to_status=target.value,
            actor_id=actor_id,
            reason=reason,
        )
        logger.info("Trip %d: %s -> %s", trip.id, previous.value, target.value)
