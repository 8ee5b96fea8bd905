"""Shared look-ups and ownership checks used by the state machines."""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from carpool.domain.entities import Actor
from carpool.domain.errors import (
    BookingNotFound,
    TripNotFound,
    UserNotFound,
    UserSuspended,
    WrongActor,
)
from carpool.infrastructure.events import TransitionEvent, record_event
from carpool.infrastructure.models import BookingModel, TripModel, UserModel
from carpool.infrastructure.repositories import (
    BookingRepository,
    TripRepository,
    UserRepository,
)


async def load_user(session: AsyncSession, user_id: int) -> UserModel:
    user = await UserRepository(session).get_by_id(user_id)
    if user is None:
        raise UserNotFound()
    return user


async def ensure_active_user(session: AsyncSession, user_id: int) -> UserModel:
    user = await load_user(session, user_id)
    if user.is_suspended:
        raise UserSuspended()
    return user


async def load_trip(
    session: AsyncSession, trip_id: int, *, for_update: bool = False
) -> TripModel:
    repo = TripRepository(session)
    trip = await (repo.get_for_update(trip_id) if for_update else repo.get_by_id(trip_id))
    if trip is None:
        raise TripNotFound()
    return trip


async def load_booking(
    session: AsyncSession, booking_id: int, *, fresh: bool = False
) -> BookingModel:
    repo = BookingRepository(session)
    booking = await (repo.get_fresh(booking_id) if fresh else repo.get_by_id(booking_id))
    if booking is None:
        raise BookingNotFound()
    return booking


def ensure_trip_driver(actor: Actor, trip: TripModel) -> None:
    if trip.driver_id != actor.user_id:
        raise WrongActor("Only the trip's driver can do this")


def ensure_booking_passenger(actor: Actor, booking: BookingModel) -> None:
    if booking.passenger_id != actor.user_id:
        raise WrongActor("Only the booking's passenger can do this")


def emit(
    session: AsyncSession,
    entity_type: str,
    entity_id: int,
    action: str,
    *,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    actor_id: Optional[int] = None,
    **payload,
) -> None:
    record_event(
        session,
        TransitionEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            payload=payload,
        ),
    )
