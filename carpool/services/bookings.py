"""
Booking state machine
=====================

::

    pending ──> accepted ──> canceled_by_passenger | canceled_by_platform
       │                     | declined_by_admin
       └──> declined | declined_auto | expired | canceled_by_passenger
            | declined_by_admin

Every other status is terminal.

Concurrency
-----------
Capacity-affecting transitions (accept, cancel of an accepted booking,
platform cancellation) first lock the trip row (``SELECT ... FOR UPDATE``),
re-read the booking, then change status with a compare-and-set UPDATE.  An
accept and a cancel racing on the same booking are therefore serialized;
the loser sees the fresh status and gets ``BookingNotPending`` /
``BookingNotCancelable``.  Creation never reserves capacity.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .guards import (
    emit,
    ensure_active_user,
    ensure_booking_passenger,
    ensure_trip_driver,
    load_booking,
    load_trip,
)
from .ledger import CapacityLedger
from carpool.config import settings
from carpool.domain.entities import (
    Actor,
    as_utc,
    effective_state,
    ensure_booking_transition,
    utcnow,
)
from carpool.domain.enums import (
    BookingStatus,
    EffectiveState,
    TripStatus,
)
from carpool.domain.errors import (
    BookingNotFound,
    BookingNotPending,
    InvalidSeats,
    StateConflict,
    TripAlreadyStarted,
    TripNotPublished,
    WrongActor,
)
from carpool.infrastructure.models import BookingModel, TripModel
from carpool.infrastructure.repositories import BookingRepository

logger = logging.getLogger(__name__)


def booking_effective_state(booking: BookingModel, trip: TripModel) -> EffectiveState:
    return effective_state(BookingStatus(booking.status), TripStatus(trip.status))


class BookingStateMachine:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.bookings = BookingRepository(session)
        self.ledger = CapacityLedger(session)

    # ── Passenger actions ─────────────────────────────────────────────

    async def create(
        self, actor: Actor, trip_id: int, seats: int, note: Optional[str] = None
    ) -> BookingModel:
        await ensure_active_user(self.session, actor.user_id)
        trip = await load_trip(self.session, trip_id)
        if trip.driver_id == actor.user_id:
            raise WrongActor("Drivers cannot book their own trip")
        if trip.status != TripStatus.PUBLISHED:
            raise TripNotPublished()
        if seats < 1 or seats > trip.total_seats:
            raise InvalidSeats(
                f"Seats must be between 1 and {trip.total_seats}"
            )

        booking = await self.bookings.create(
            BookingModel(
                trip_id=trip.id,
                passenger_id=actor.user_id,
                seats=seats,
                note=note,
                status=BookingStatus.PENDING,
            )
        )
        emit(
            self.session,
            "booking",
            booking.id,
            "booking.created",
            to_status=BookingStatus.PENDING.value,
            actor_id=actor.user_id,
            trip_id=trip.id,
            seats=seats,
        )
        logger.info("Booking %d created on trip %d", booking.id, trip.id)
        return booking

    async def cancel(
        self, actor: Actor, booking_id: int, reason: Optional[str] = None
    ) -> BookingModel:
        booking = await load_booking(self.session, booking_id)
        ensure_booking_passenger(actor, booking)

        trip = await load_trip(self.session, booking.trip_id, for_update=True)
        booking = await load_booking(self.session, booking_id, fresh=True)
        ensure_booking_transition(
            BookingStatus(booking.status), BookingStatus.CANCELED_BY_PASSENGER
        )
        if trip.status != TripStatus.PUBLISHED:
            raise TripAlreadyStarted()

        was_accepted = booking.status == BookingStatus.ACCEPTED
        if was_accepted:
            await self.ledger.release(trip.id, booking.seats)
        await self._transition(
            booking,
            BookingStatus.CANCELED_BY_PASSENGER,
            actor_id=actor.user_id,
            reason=reason,
        )
        return booking

    # ── Driver actions ────────────────────────────────────────────────

    async def accept(
        self, actor: Actor, booking_id: int, trip_id: Optional[int] = None
    ) -> BookingModel:
        booking = await load_booking(self.session, booking_id)
        if trip_id is not None and booking.trip_id != trip_id:
            raise BookingNotFound()

        trip = await load_trip(self.session, booking.trip_id, for_update=True)
        ensure_trip_driver(actor, trip)
        booking = await load_booking(self.session, booking_id, fresh=True)
        ensure_booking_transition(BookingStatus(booking.status), BookingStatus.ACCEPTED)

        # Fails with InsufficientCapacity before anything is written.
        await self.ledger.try_reserve(trip.id, booking.seats)
        await self._transition(
            booking, BookingStatus.ACCEPTED, actor_id=actor.user_id
        )
        return booking

    async def decline(
        self,
        actor: Actor,
        booking_id: int,
        trip_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> BookingModel:
        booking = await load_booking(self.session, booking_id)
        if trip_id is not None and booking.trip_id != trip_id:
            raise BookingNotFound()
        trip = await load_trip(self.session, booking.trip_id)
        ensure_trip_driver(actor, trip)

        ensure_booking_transition(BookingStatus(booking.status), BookingStatus.DECLINED)
        await self._transition(
            booking, BookingStatus.DECLINED, actor_id=actor.user_id, reason=reason
        )
        return booking

    # ── System / platform transitions ─────────────────────────────────
    # Callers of these hold the trip lock already.

    async def auto_decline(
        self, booking: BookingModel, actor_id: Optional[int] = None
    ) -> BookingModel:
        ensure_booking_transition(
            BookingStatus(booking.status), BookingStatus.DECLINED_AUTO
        )
        await self._transition(booking, BookingStatus.DECLINED_AUTO, actor_id=actor_id)
        return booking

    async def cancel_by_platform(
        self,
        booking: BookingModel,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> BookingModel:
        ensure_booking_transition(
            BookingStatus(booking.status), BookingStatus.CANCELED_BY_PLATFORM
        )
        await self.ledger.release(booking.trip_id, booking.seats)
        await self._transition(
            booking,
            BookingStatus.CANCELED_BY_PLATFORM,
            actor_id=actor_id,
            reason=reason,
        )
        return booking

    async def decline_by_admin(
        self, booking: BookingModel, actor_id: int, reason: str
    ) -> BookingModel:
        # Accepted bookings are corrected via cancel_by_platform instead.
        if booking.status != BookingStatus.PENDING:
            raise BookingNotPending()
        await self._transition(
            booking,
            BookingStatus.DECLINED_BY_ADMIN,
            actor_id=actor_id,
            reason=reason,
        )
        return booking

    async def cascade_trip_cancellation(
        self,
        trip: TripModel,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> list[tuple[BookingModel, BookingStatus]]:
        """Auto-decline pending and platform-cancel accepted bookings.

        Returns ``(booking, previous_status)`` for every booking changed.
        """
        changed: list[tuple[BookingModel, BookingStatus]] = []
        live = await self.bookings.list_for_trip(
            trip.id, [BookingStatus.PENDING, BookingStatus.ACCEPTED]
        )
        for booking in live:
            previous = BookingStatus(booking.status)
            if previous == BookingStatus.PENDING:
                await self.auto_decline(booking, actor_id=actor_id)
            else:
                await self.cancel_by_platform(booking, actor_id=actor_id, reason=reason)
            changed.append((booking, previous))
        return changed

    async def expire(self, booking: BookingModel) -> bool:
        """Expire a pending booking. Returns False if it already moved on."""
        if not await self.bookings.compare_and_set_status(
            booking.id, [BookingStatus.PENDING], BookingStatus.EXPIRED
        ):
            return False
        await self.session.refresh(booking)
        emit(
            self.session,
            "booking",
            booking.id,
            "booking.expired",
            from_status=BookingStatus.PENDING.value,
            to_status=BookingStatus.EXPIRED.value,
        )
        return True

    async def expire_overdue(
        self, now: Optional[datetime] = None, minutes_before: Optional[int] = None
    ) -> int:
        """Expire pending bookings whose trip departs within the TTL window."""
        now = now or utcnow()
        if minutes_before is None:
            minutes_before = settings.booking_expiry_minutes
        cutoff = now + timedelta(minutes=minutes_before)

        expired = 0
        for booking in await self.bookings.get_overdue_pending(cutoff):
            if await self.expire(booking):
                expired += 1
        if expired:
            logger.info("Expired %d overdue pending booking(s)", expired)
        return expired

    # ── Queries ───────────────────────────────────────────────────────

    async def get_for_passenger(self, actor: Actor, booking_id: int) -> BookingModel:
        booking = await load_booking(self.session, booking_id)
        if booking.passenger_id != actor.user_id:
            raise BookingNotFound()
        return booking

    async def list_for_passenger(
        self,
        actor: Actor,
        statuses: Optional[list[BookingStatus]] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[BookingModel], int]:
        return await self.bookings.list_for_passenger(
            actor.user_id,
            statuses,
            created_from=as_utc(from_date),
            created_to=as_utc(to_date),
            page=page,
            page_size=page_size,
        )

    async def list_for_trip(
        self,
        actor: Actor,
        trip_id: int,
        statuses: Optional[list[BookingStatus]] = None,
    ) -> list[BookingModel]:
        trip = await load_trip(self.session, trip_id)
        ensure_trip_driver(actor, trip)
        return await self.bookings.list_for_trip(trip_id, statuses)

    # ── Internals ─────────────────────────────────────────────────────

    async def _transition(
        self,
        booking: BookingModel,
        target: BookingStatus,
        *,
        actor_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> None:
        previous = BookingStatus(booking.status)
        if not await self.bookings.compare_and_set_status(
            booking.id, [previous], target
        ):
            # Someone else moved it first: surface the fresh status.
            await self.session.refresh(booking)
            ensure_booking_transition(BookingStatus(booking.status), target)
            raise StateConflict()
        await self.session.refresh(booking)
        emit(
            self.session,
            "booking",
            booking.id,
            f"booking.{target.value}",
            from_status=previous.value,
            to_status=target.value,
            actor_id=actor_id,
            trip_id=booking.trip_id,
            reason=reason,
        )
        logger.info(
            "Booking %d: %s -> %s", booking.id, previous.value, target.value
        )
