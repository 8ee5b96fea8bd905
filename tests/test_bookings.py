"""Booking state machine tests (service layer, SQLite)."""

from datetime import timedelta

import pytest

from carpool.domain.entities import utcnow
from carpool.domain.enums import (
    TERMINAL_BOOKING_STATUSES,
    BookingStatus,
    TripStatus,
)
from carpool.domain.errors import (
    BookingNotCancelable,
    BookingNotFound,
    BookingNotPending,
    InsufficientCapacity,
    InvalidSeats,
    TripAlreadyStarted,
    TripNotPublished,
    UserSuspended,
    WrongActor,
)
from carpool.infrastructure.events import dispatch_pending
from carpool.infrastructure.models import UserModel
from carpool.services.bookings import BookingStateMachine, booking_effective_state
from carpool.services.ledger import CapacityLedger
from tests.conftest import (
    DRIVER,
    OTHER_DRIVER,
    OTHER_PASSENGER,
    PASSENGER,
    RecordingSink,
    make_booking,
    make_trip,
)


async def remaining(session, trip_id: int) -> int:
    return (await CapacityLedger(session).snapshot(trip_id)).remaining_seats


class TestCreate:
    @pytest.mark.asyncio
    async def test_creates_pending_without_reserving(self, db_session):
        trip = await make_trip(db_session, total_seats=3)
        booking = await BookingStateMachine(db_session).create(PASSENGER, trip.id, 2)

        assert booking.status == BookingStatus.PENDING
        assert booking.passenger_id == PASSENGER.user_id
        assert await remaining(db_session, trip.id) == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status", [TripStatus.DRAFT, TripStatus.IN_PROGRESS, TripStatus.CANCELED]
    )
    async def test_trip_must_be_published(self, db_session, status):
        trip = await make_trip(db_session, status=status)
        with pytest.raises(TripNotPublished):
            await BookingStateMachine(db_session).create(PASSENGER, trip.id, 1)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seats", [0, 4])
    async def test_seat_count_bounds(self, db_session, seats):
        trip = await make_trip(db_session, total_seats=3)
        with pytest.raises(InvalidSeats):
            await BookingStateMachine(db_session).create(PASSENGER, trip.id, seats)

    @pytest.mark.asyncio
    async def test_driver_cannot_book_own_trip(self, db_session):
        trip = await make_trip(db_session)
        with pytest.raises(WrongActor):
            await BookingStateMachine(db_session).create(DRIVER, trip.id, 1)

    @pytest.mark.asyncio
    async def test_suspended_passenger_cannot_book(self, db_session):
        trip = await make_trip(db_session)
        user = await db_session.get(UserModel, PASSENGER.user_id)
        user.is_suspended = True
        await db_session.flush()

        with pytest.raises(UserSuspended):
            await BookingStateMachine(db_session).create(PASSENGER, trip.id, 1)


class TestAcceptDecline:
    @pytest.mark.asyncio
    async def test_scenario_a_second_accept_does_not_fit(self, db_session):
        trip = await make_trip(db_session, total_seats=3)
        first = await make_booking(db_session, trip, seats=2)
        second = await make_booking(
            db_session, trip, passenger_id=OTHER_PASSENGER.user_id, seats=2
        )
        machine = BookingStateMachine(db_session)

        await machine.accept(DRIVER, first.id)
        assert first.status == BookingStatus.ACCEPTED
        assert await remaining(db_session, trip.id) == 1

        with pytest.raises(InsufficientCapacity):
            await machine.accept(DRIVER, second.id)
        await db_session.refresh(second)
        assert second.status == BookingStatus.PENDING
        assert await remaining(db_session, trip.id) == 1

    @pytest.mark.asyncio
    async def test_only_trip_driver_accepts(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)

        with pytest.raises(WrongActor):
            await BookingStateMachine(db_session).accept(OTHER_DRIVER, booking.id)
        assert await remaining(db_session, trip.id) == 3

    @pytest.mark.asyncio
    async def test_booking_must_belong_to_trip_in_path(self, db_session):
        trip = await make_trip(db_session)
        other = await make_trip(db_session)
        booking = await make_booking(db_session, trip)

        with pytest.raises(BookingNotFound):
            await BookingStateMachine(db_session).accept(DRIVER, booking.id, other.id)

    @pytest.mark.asyncio
    async def test_accept_twice_conflicts(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip, seats=1)
        machine = BookingStateMachine(db_session)

        await machine.accept(DRIVER, booking.id)
        with pytest.raises(BookingNotPending):
            await machine.accept(DRIVER, booking.id)
        assert await remaining(db_session, trip.id) == 2

    @pytest.mark.asyncio
    async def test_decline_pending(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)
        machine = BookingStateMachine(db_session)

        await machine.decline(DRIVER, booking.id, reason="car is full")
        assert booking.status == BookingStatus.DECLINED

        with pytest.raises(BookingNotPending):
            await machine.decline(DRIVER, booking.id)


class TestPassengerCancel:
    @pytest.mark.asyncio
    async def test_cancel_pending(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)

        await BookingStateMachine(db_session).cancel(PASSENGER, booking.id)
        assert booking.status == BookingStatus.CANCELED_BY_PASSENGER
        assert await remaining(db_session, trip.id) == 3

    @pytest.mark.asyncio
    async def test_cancel_accepted_releases_seats(self, db_session):
        trip = await make_trip(db_session, total_seats=3)
        booking = await make_booking(
            db_session, trip, seats=2, status=BookingStatus.ACCEPTED
        )
        assert await remaining(db_session, trip.id) == 1

        await BookingStateMachine(db_session).cancel(PASSENGER, booking.id)
        assert booking.status == BookingStatus.CANCELED_BY_PASSENGER
        assert await remaining(db_session, trip.id) == 3

    @pytest.mark.asyncio
    async def test_scenario_d_cannot_cancel_after_start(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(
            db_session, trip, seats=1, status=BookingStatus.ACCEPTED
        )

        with pytest.raises(TripAlreadyStarted):
            await BookingStateMachine(db_session).cancel(PASSENGER, booking.id)
        await db_session.refresh(booking)
        assert booking.status == BookingStatus.ACCEPTED
        assert await remaining(db_session, trip.id) == 2

    @pytest.mark.asyncio
    async def test_only_owner_cancels(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)

        with pytest.raises(WrongActor):
            await BookingStateMachine(db_session).cancel(OTHER_PASSENGER, booking.id)


class TestTerminalStatuses:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", sorted(TERMINAL_BOOKING_STATUSES))
    async def test_terminal_booking_is_immutable(self, db_session, status):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip, status=status)
        machine = BookingStateMachine(db_session)

        with pytest.raises(BookingNotPending):
            await machine.accept(DRIVER, booking.id)
        with pytest.raises(BookingNotPending):
            await machine.decline(DRIVER, booking.id)
        with pytest.raises(BookingNotCancelable):
            await machine.cancel(PASSENGER, booking.id)
        assert not await machine.expire(booking)

        await db_session.refresh(booking)
        assert booking.status == status
        assert await remaining(db_session, trip.id) == 3


class TestExpiry:
    @pytest.mark.asyncio
    async def test_departed_pending_bookings_expire(self, db_session):
        gone = await make_trip(db_session, departs_in=timedelta(minutes=-5))
        later = await make_trip(db_session, departs_in=timedelta(hours=3))
        stale = await make_booking(db_session, gone)
        accepted = await make_booking(
            db_session, gone, passenger_id=OTHER_PASSENGER.user_id,
            status=BookingStatus.ACCEPTED,
        )
        fresh = await make_booking(db_session, later)

        expired = await BookingStateMachine(db_session).expire_overdue(
            minutes_before=0
        )

        assert expired == 1
        await db_session.refresh(stale)
        await db_session.refresh(accepted)
        await db_session.refresh(fresh)
        assert stale.status == BookingStatus.EXPIRED
        assert accepted.status == BookingStatus.ACCEPTED
        assert fresh.status == BookingStatus.PENDING

    @pytest.mark.asyncio
    async def test_ttl_window_before_departure(self, db_session):
        soon = await make_trip(db_session, departs_in=timedelta(minutes=20))
        booking = await make_booking(db_session, soon)

        machine = BookingStateMachine(db_session)
        assert await machine.expire_overdue(minutes_before=10) == 0
        assert await machine.expire_overdue(minutes_before=30) == 1
        await db_session.refresh(booking)
        assert booking.status == BookingStatus.EXPIRED


class TestCascadeAndEvents:
    @pytest.mark.asyncio
    async def test_cascade_declines_pending_and_cancels_accepted(self, db_session):
        trip = await make_trip(db_session, total_seats=3)
        pending = await make_booking(db_session, trip)
        accepted = await make_booking(
            db_session, trip, passenger_id=OTHER_PASSENGER.user_id, seats=2,
            status=BookingStatus.ACCEPTED,
        )

        changed = await BookingStateMachine(db_session).cascade_trip_cancellation(
            trip, actor_id=DRIVER.user_id
        )

        assert {(b.id, prev) for b, prev in changed} == {
            (pending.id, BookingStatus.PENDING),
            (accepted.id, BookingStatus.ACCEPTED),
        }
        assert pending.status == BookingStatus.DECLINED_AUTO
        assert accepted.status == BookingStatus.CANCELED_BY_PLATFORM
        assert await remaining(db_session, trip.id) == 3

    @pytest.mark.asyncio
    async def test_each_transition_emits_one_event(self, db_session):
        trip = await make_trip(db_session)
        machine = BookingStateMachine(db_session)
        booking = await machine.create(PASSENGER, trip.id, 1)
        await machine.accept(DRIVER, booking.id)

        sink = RecordingSink()
        assert await dispatch_pending(db_session, sink) == 2
        assert sink.actions() == ["booking.created", "booking.accepted"]
        accepted = sink.events[1]
        assert (accepted.from_status, accepted.to_status) == ("pending", "accepted")
        assert accepted.actor_id == DRIVER.user_id

    @pytest.mark.asyncio
    async def test_effective_state_reads_trip(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        assert booking_effective_state(booking, trip).value == "in_progress"


class TestListing:
    @pytest.mark.asyncio
    async def test_my_bookings_by_request_date(self, db_session):
        trip = await make_trip(db_session)
        old = await make_booking(db_session, trip, status=BookingStatus.DECLINED)
        old.created_at = utcnow() - timedelta(days=20)
        recent = await make_booking(db_session, trip)
        await make_booking(db_session, trip, passenger_id=OTHER_PASSENGER.user_id)
        await db_session.flush()
        machine = BookingStateMachine(db_session)

        items, total = await machine.list_for_passenger(PASSENGER)
        assert (total, [b.id for b in items]) == (2, [recent.id, old.id])

        items, total = await machine.list_for_passenger(
            PASSENGER, from_date=utcnow() - timedelta(days=7)
        )
        assert (total, [b.id for b in items]) == (1, [recent.id])

        items, total = await machine.list_for_passenger(
            PASSENGER,
            [BookingStatus.DECLINED],
            to_date=utcnow() - timedelta(days=7),
        )
        assert (total, [b.id for b in items]) == (1, [old.id])
