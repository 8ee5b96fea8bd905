"""
Capacity ledger
===============

Seat accounting per trip.  ``trips.allocated_seats`` always equals the sum
of seats of accepted bookings; ``remaining = total - allocated`` never drops
below zero.

Reservation is a single conditional UPDATE::

    UPDATE trips SET allocated_seats = allocated_seats + :n
     WHERE id = :trip AND total_seats - allocated_seats >= :n

so two racing reservations are linearized by the database: the loser
matches zero rows and gets ``InsufficientCapacity`` without mutating
anything.  Callers guarantee ``release`` runs at most once per reservation
(the booking status compare-and-set does that).
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from carpool.domain.entities import CapacitySnapshot
from carpool.domain.errors import (
    InsufficientCapacity,
    LedgerInconsistency,
    TripNotFound,
)
from carpool.infrastructure.repositories import TripRepository

logger = logging.getLogger(__name__)


class CapacityLedger:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.trips = TripRepository(session)

    async def try_reserve(self, trip_id: int, seats: int) -> None:
        if not await self.trips.reserve_seats(trip_id, seats):
            snapshot = await self.snapshot(trip_id)
            raise InsufficientCapacity(
                f"Requested {seats} seat(s), {snapshot.remaining_seats} remaining"
            )
        logger.info("Reserved %d seat(s) on trip %d", seats, trip_id)

    async def release(self, trip_id: int, seats: int) -> None:
        if not await self.trips.release_seats(trip_id, seats):
            raise LedgerInconsistency(
                f"Cannot release {seats} seat(s) on trip {trip_id}"
            )
        logger.info("Released %d seat(s) on trip %d", seats, trip_id)

    async def snapshot(self, trip_id: int) -> CapacitySnapshot:
        trip = await self.trips.get_by_id(trip_id)
        if trip is None:
            raise TripNotFound()
        await self.session.refresh(trip, ["total_seats", "allocated_seats"])
        return CapacitySnapshot(
            trip_id=trip.id,
            total_seats=trip.total_seats,
            allocated_seats=trip.allocated_seats,
        )

    async def verify(self, trip_id: int) -> tuple[CapacitySnapshot, int]:
        """Return the stored snapshot and the seat sum recomputed from bookings."""
        snapshot = await self.snapshot(trip_id)
        derived = await self.trips.sum_accepted_seats(trip_id)
        if derived != snapshot.allocated_seats:
            logger.warning(
                "Ledger drift on trip %d: counter=%d bookings=%d",
                trip_id,
                snapshot.allocated_seats,
                derived,
            )
        return snapshot, derived
