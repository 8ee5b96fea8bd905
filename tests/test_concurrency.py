"""
Concurrency safety tests.

Demonstrates:
1. A booking accepted and expired at the same moment ends in exactly one state.
   The same holds for an accept racing the passenger's own cancel.
2. Seat release never drives the counter below zero.
3. Distributed lock prevents two workers sweeping at once.
"""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from carpool.domain.enums import BookingStatus
from carpool.domain.errors import BookingNotPending, LedgerInconsistency
from carpool.infrastructure.locks import DistributedLock
from carpool.infrastructure.models import BookingModel
from carpool.services.bookings import BookingStateMachine
from carpool.services.ledger import CapacityLedger
from tests.conftest import DRIVER, PASSENGER, make_booking, make_trip


class TestExpiryVersusAccept:
    @pytest.mark.asyncio
    async def test_expiry_loses_to_earlier_accept(self, session_factory):
        async with session_factory() as setup:
            trip = await make_trip(setup, departs_in=timedelta(minutes=-1))
            booking = await make_booking(setup, trip)
            await setup.commit()

        async with session_factory() as sweeper, session_factory() as driver:
            stale = await sweeper.get(BookingModel, booking.id)

            await BookingStateMachine(driver).accept(DRIVER, booking.id, trip.id)
            await driver.commit()

            assert await BookingStateMachine(sweeper).expire(stale) is False
            await sweeper.commit()

        async with session_factory() as check:
            final = await check.get(BookingModel, booking.id)
            assert final.status == BookingStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_accept_loses_to_earlier_expiry(self, session_factory):
        async with session_factory() as setup:
            trip = await make_trip(setup, departs_in=timedelta(minutes=-1))
            booking = await make_booking(setup, trip)
            await setup.commit()

        async with session_factory() as sweeper:
            assert await BookingStateMachine(sweeper).expire_overdue() == 1
            await sweeper.commit()

        async with session_factory() as driver:
            with pytest.raises(BookingNotPending):
                await BookingStateMachine(driver).accept(DRIVER, booking.id, trip.id)
            snap = await CapacityLedger(driver).snapshot(trip.id)
            assert snap.allocated_seats == 0


class TestAcceptVersusCancel:
    @pytest.mark.asyncio
    async def test_accept_loses_to_earlier_cancel(self, session_factory):
        async with session_factory() as setup:
            trip = await make_trip(setup, total_seats=3)
            booking = await make_booking(setup, trip, seats=2)
            await setup.commit()

        async with session_factory() as driver, session_factory() as passenger:
            stale = await driver.get(BookingModel, booking.id)
            assert stale.status == BookingStatus.PENDING

            await BookingStateMachine(passenger).cancel(PASSENGER, booking.id)
            await passenger.commit()

            with pytest.raises(BookingNotPending):
                await BookingStateMachine(driver).accept(DRIVER, booking.id, trip.id)
            await driver.rollback()

        async with session_factory() as check:
            final = await check.get(BookingModel, booking.id)
            assert final.status == BookingStatus.CANCELED_BY_PASSENGER
            snap = await CapacityLedger(check).snapshot(trip.id)
            assert snap.allocated_seats == 0

    @pytest.mark.asyncio
    async def test_cancel_after_accept_releases_reserved_seats(self, session_factory):
        async with session_factory() as setup:
            trip = await make_trip(setup, total_seats=3)
            booking = await make_booking(setup, trip, seats=2)
            await setup.commit()

        async with session_factory() as driver, session_factory() as passenger:
            stale = await passenger.get(BookingModel, booking.id)
            assert stale.status == BookingStatus.PENDING

            await BookingStateMachine(driver).accept(DRIVER, booking.id, trip.id)
            await driver.commit()
            assert (await CapacityLedger(driver).snapshot(trip.id)).allocated_seats == 2

            await BookingStateMachine(passenger).cancel(PASSENGER, booking.id)
            await passenger.commit()

        async with session_factory() as check:
            final = await check.get(BookingModel, booking.id)
            assert final.status == BookingStatus.CANCELED_BY_PASSENGER
            snap = await CapacityLedger(check).snapshot(trip.id)
            assert snap.allocated_seats == 0
            assert snap.remaining_seats == 3


class TestLedgerFloor:
    @pytest.mark.asyncio
    async def test_release_below_zero_is_refused(self, db_session):
        trip = await make_trip(db_session)
        with pytest.raises(LedgerInconsistency):
            await CapacityLedger(db_session).release(trip.id, 1)


class TestDistributedLock:
    """Tests the Redis distributed lock logic (mocked Redis)."""

    @pytest.mark.asyncio
    async def test_acquire_succeeds(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)

        lock = DistributedLock(mock_redis, "booking_expiry", ttl_seconds=10)
        assert await lock.acquire() is True
        mock_redis.set.assert_awaited_once_with(
            "carpool:lock:booking_expiry", lock.token, nx=True, ex=10
        )

    @pytest.mark.asyncio
    async def test_acquire_fails_if_held(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=None)

        lock = DistributedLock(mock_redis, "booking_expiry", ttl_seconds=10)
        assert await lock.acquire() is False

    @pytest.mark.asyncio
    async def test_release_only_deletes_own_token(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=True)
        mock_redis.eval = AsyncMock(return_value=0)

        lock = DistributedLock(mock_redis, "booking_expiry", ttl_seconds=10)
        await lock.acquire()
        assert await lock.release() is False

        args = mock_redis.eval.await_args.args
        assert args[1:] == (1, "carpool:lock:booking_expiry", lock.token)

    @pytest.mark.asyncio
    async def test_context_manager_acquire_fail_raises(self):
        mock_redis = AsyncMock()
        mock_redis.set = AsyncMock(return_value=False)

        lock = DistributedLock(mock_redis, "booking_expiry", ttl_seconds=10)
        with pytest.raises(RuntimeError, match="Could not acquire lock"):
            async with lock:
                pass
