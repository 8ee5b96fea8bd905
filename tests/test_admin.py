"""Admin override tests: force-cancel, corrections, moderation, audit."""

from datetime import timedelta
from decimal import Decimal

import pytest

from carpool.domain.entities import RefundRequest, utcnow
from carpool.domain.enums import BookingStatus, Role, TransactionStatus, TripStatus
from carpool.domain.errors import (
    BookingNotAccepted,
    BookingNotPending,
    DriverPublishBanned,
    InvalidReason,
    InvalidRefund,
    InvalidTarget,
    InvalidTripTransition,
    RefundNotAllowed,
    UserSuspended,
    ValidationFailed,
)
from carpool.infrastructure.models import UserModel
from carpool.infrastructure.repositories import (
    AdminActionRepository,
    TransactionRepository,
)
from carpool.services.admin import AdminOverride
from carpool.services.bookings import BookingStateMachine
from carpool.services.ledger import CapacityLedger
from carpool.services.trips import TripStateMachine
from tests.conftest import (
    ADMIN,
    DRIVER,
    OTHER_DRIVER,
    OTHER_PASSENGER,
    PASSENGER,
    make_booking,
    make_card_payment,
    make_trip,
)

REASON = "Driver reported a vehicle breakdown"


class TestForceCancel:
    @pytest.mark.asyncio
    async def test_in_progress_trip_with_two_passengers(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS, total_seats=4)
        first = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        second = await make_booking(
            db_session,
            trip,
            passenger_id=OTHER_PASSENGER.user_id,
            seats=2,
            status=BookingStatus.ACCEPTED,
        )

        trip, records = await AdminOverride(db_session).force_cancel_trip(
            ADMIN, trip.id, REASON
        )

        assert trip.status == TripStatus.CANCELED
        assert trip.allocated_seats == 0
        assert len(records) == 2
        assert {r.entity_id for r in records} == {first.id, second.id}
        assert all(r.reason == REASON for r in records)
        assert all(r.actor_id == ADMIN.user_id for r in records)
        for booking in (first, second):
            await db_session.refresh(booking)
            assert booking.status == BookingStatus.CANCELED_BY_PLATFORM

    @pytest.mark.asyncio
    async def test_empty_trip_writes_trip_record(self, db_session):
        trip = await make_trip(db_session)

        _, records = await AdminOverride(db_session).force_cancel_trip(
            ADMIN, trip.id, REASON
        )

        assert len(records) == 1
        assert records[0].entity_type == "trip"
        assert records[0].entity_id == trip.id

    @pytest.mark.asyncio
    async def test_pending_bookings_are_auto_declined(self, db_session):
        trip = await make_trip(db_session)
        pending = await make_booking(db_session, trip)

        _, records = await AdminOverride(db_session).force_cancel_trip(
            ADMIN, trip.id, REASON
        )

        await db_session.refresh(pending)
        assert pending.status == BookingStatus.DECLINED_AUTO
        assert records[0].details["to_status"] == BookingStatus.DECLINED_AUTO.value

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [TripStatus.DRAFT, TripStatus.COMPLETED])
    async def test_only_live_trips(self, db_session, status):
        trip = await make_trip(db_session, status=status)
        with pytest.raises(InvalidTripTransition):
            await AdminOverride(db_session).force_cancel_trip(ADMIN, trip.id, REASON)

    @pytest.mark.asyncio
    async def test_paid_booking_is_refunded(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        original = await make_card_payment(db_session, booking)

        _, records = await AdminOverride(db_session).force_cancel_trip(
            ADMIN, trip.id, REASON
        )

        txns = await TransactionRepository(db_session).list_for_booking(booking.id)
        refund = next(t for t in txns if t.refund_of_id == original.id)
        assert refund.amount == Decimal("-10000")
        assert refund.status == TransactionStatus.SUCCEEDED
        assert records[0].details["refund_transaction_id"] == refund.id

    @pytest.mark.asyncio
    async def test_short_reason_rejected_before_any_change(self, db_session):
        trip = await make_trip(db_session)
        with pytest.raises(InvalidReason):
            await AdminOverride(db_session).force_cancel_trip(ADMIN, trip.id, " no ")
        assert trip.status == TripStatus.PUBLISHED


class TestCorrectBookingState:
    @pytest.mark.asyncio
    async def test_decline_pending(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)

        booking, refund, record = await AdminOverride(
            db_session
        ).correct_booking_state(ADMIN, booking.id, "declined_by_admin", REASON)

        assert booking.status == BookingStatus.DECLINED_BY_ADMIN
        assert refund is None
        assert record.action == "correct_booking_state"
        assert record.details["from_status"] == "pending"

    @pytest.mark.asyncio
    async def test_cancel_accepted_releases_seats(self, db_session):
        trip = await make_trip(db_session, total_seats=3)
        booking = await make_booking(
            db_session, trip, seats=2, status=BookingStatus.ACCEPTED
        )

        booking, _, _ = await AdminOverride(db_session).correct_booking_state(
            ADMIN, booking.id, "canceled_by_platform", REASON
        )

        assert booking.status == BookingStatus.CANCELED_BY_PLATFORM
        snap = await CapacityLedger(db_session).snapshot(trip.id)
        assert snap.remaining_seats == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target", ["accepted", "expired", "flying"])
    async def test_unsupported_target(self, db_session, target):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)
        with pytest.raises(InvalidTarget):
            await AdminOverride(db_session).correct_booking_state(
                ADMIN, booking.id, target, REASON
            )

    @pytest.mark.asyncio
    async def test_target_must_match_current_status(self, db_session):
        trip = await make_trip(db_session)
        pending = await make_booking(db_session, trip)
        accepted = await make_booking(
            db_session,
            trip,
            passenger_id=OTHER_PASSENGER.user_id,
            status=BookingStatus.ACCEPTED,
        )
        admin = AdminOverride(db_session)

        with pytest.raises(BookingNotAccepted):
            await admin.correct_booking_state(
                ADMIN, pending.id, "canceled_by_platform", REASON
            )
        with pytest.raises(BookingNotPending):
            await admin.correct_booking_state(
                ADMIN, accepted.id, "declined_by_admin", REASON
            )

    @pytest.mark.asyncio
    async def test_refund_only_with_platform_cancel(self, db_session):
        trip = await make_trip(db_session)
        booking = await make_booking(db_session, trip)
        with pytest.raises(InvalidRefund):
            await AdminOverride(db_session).correct_booking_state(
                ADMIN,
                booking.id,
                "declined_by_admin",
                REASON,
                refund=RefundRequest(amount=Decimal("100"), reason=REASON),
            )

    @pytest.mark.asyncio
    async def test_refund_reason_is_validated(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        await make_card_payment(db_session, booking)

        with pytest.raises(InvalidReason):
            await AdminOverride(db_session).correct_booking_state(
                ADMIN,
                booking.id,
                "canceled_by_platform",
                REASON,
                refund=RefundRequest(amount=Decimal("100"), reason="oops"),
            )

    @pytest.mark.asyncio
    async def test_refund_without_card_payment_changes_nothing(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)

        with pytest.raises(RefundNotAllowed):
            await AdminOverride(db_session).correct_booking_state(
                ADMIN,
                booking.id,
                "canceled_by_platform",
                REASON,
                refund=RefundRequest(amount=Decimal("5000"), reason=REASON),
            )

        assert booking.status == BookingStatus.ACCEPTED
        snap = await CapacityLedger(db_session).snapshot(trip.id)
        assert snap.allocated_seats == 1
        assert await AdminActionRepository(db_session).list_for_entity(
            "booking", booking.id
        ) == []

    @pytest.mark.asyncio
    async def test_over_refund_rejected(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        await make_card_payment(db_session, booking, amount="10000")

        with pytest.raises(InvalidRefund):
            await AdminOverride(db_session).correct_booking_state(
                ADMIN,
                booking.id,
                "canceled_by_platform",
                REASON,
                refund=RefundRequest(amount=Decimal("10000.01"), reason=REASON),
            )

    @pytest.mark.asyncio
    async def test_partial_refund_appends_negative_transaction(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.IN_PROGRESS)
        booking = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        original = await make_card_payment(db_session, booking, amount="10000")

        booking, refund, record = await AdminOverride(
            db_session
        ).correct_booking_state(
            ADMIN,
            booking.id,
            "canceled_by_platform",
            REASON,
            refund=RefundRequest(amount=Decimal("4000"), reason="Partial fare refund"),
        )

        assert refund.amount == Decimal("-4000")
        assert refund.refund_of_id == original.id
        assert refund.reason == "Partial fare refund"
        await db_session.refresh(original)
        assert original.amount == Decimal("10000")
        assert original.status == TransactionStatus.SUCCEEDED
        assert record.details["refund_transaction_id"] == refund.id


class TestUserModeration:
    @pytest.mark.asyncio
    async def test_suspended_passenger_cannot_book(self, db_session):
        trip = await make_trip(db_session)
        admin = AdminOverride(db_session)

        user = await admin.suspend_user(ADMIN, PASSENGER.user_id, "Repeated no-shows")
        assert user.is_suspended
        with pytest.raises(UserSuspended):
            await BookingStateMachine(db_session).create(PASSENGER, trip.id, 1)

        user = await admin.unsuspend_user(ADMIN, PASSENGER.user_id, "Appeal accepted")
        assert not user.is_suspended
        assert user.suspended_reason is None

        actions = await AdminActionRepository(db_session).list_for_entity(
            "user", PASSENGER.user_id
        )
        assert [a.action for a in actions] == ["suspend_user", "unsuspend_user"]

    @pytest.mark.asyncio
    async def test_publish_ban(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.DRAFT)
        admin = AdminOverride(db_session)

        with pytest.raises(ValidationFailed):
            await admin.set_driver_publish_ban(
                ADMIN, DRIVER.user_id, utcnow() - timedelta(hours=1), REASON
            )

        await admin.set_driver_publish_ban(
            ADMIN, DRIVER.user_id, utcnow() + timedelta(days=3), REASON
        )
        with pytest.raises(DriverPublishBanned):
            await TripStateMachine(db_session).publish(DRIVER, trip.id)

        driver = await admin.set_driver_publish_ban(
            ADMIN, DRIVER.user_id, None, "Ban lifted after review"
        )
        assert driver.publish_ban_until is None
        await TripStateMachine(db_session).publish(DRIVER, trip.id)
        assert trip.status == TripStatus.PUBLISHED

    @pytest.mark.asyncio
    async def test_moderation_note(self, db_session):
        record = await AdminOverride(db_session).create_moderation_note(
            ADMIN, "user", OTHER_PASSENGER.user_id, "harassment", "Reported by driver"
        )
        assert record.action == "moderation_note"
        assert record.category == "harassment"
        assert record.details is None


class TestQueries:
    @pytest.mark.asyncio
    async def test_capacity_reports_drift(self, db_session):
        trip = await make_trip(db_session, total_seats=4)
        await make_booking(db_session, trip, seats=2, status=BookingStatus.ACCEPTED)

        snap, derived = await AdminOverride(db_session).capacity(trip.id)
        assert (snap.allocated_seats, derived) == (2, 2)

        trip.allocated_seats = 3
        await db_session.flush()
        snap, derived = await AdminOverride(db_session).capacity(trip.id)
        assert snap.allocated_seats != derived

    @pytest.mark.asyncio
    async def test_audit_search_and_export(self, db_session):
        admin = AdminOverride(db_session)
        await admin.create_moderation_note(ADMIN, "trip", 1, None, "Route is wrong")
        await admin.suspend_user(ADMIN, OTHER_PASSENGER.user_id, "Fraudulent card")

        items, total = await admin.list_audit(entity_type="user")
        assert total == 1
        assert items[0].action == "suspend_user"

        exported = await admin.export_audit(actor_id=ADMIN.user_id)
        assert len(exported) == 2

    @pytest.mark.asyncio
    async def test_booking_search_by_payment(self, db_session):
        trip = await make_trip(db_session, status=TripStatus.COMPLETED)
        paid = await make_booking(db_session, trip, status=BookingStatus.ACCEPTED)
        await make_card_payment(db_session, paid)
        await make_booking(
            db_session,
            trip,
            passenger_id=OTHER_PASSENGER.user_id,
            status=BookingStatus.ACCEPTED,
        )

        items, total = await AdminOverride(db_session).list_bookings(
            trip_id=trip.id, paid=True
        )
        assert total == 1
        assert items[0].id == paid.id

    @pytest.mark.asyncio
    async def test_user_listing_filters(self, db_session):
        admin = AdminOverride(db_session)
        await admin.suspend_user(ADMIN, OTHER_PASSENGER.user_id, "Fraudulent card")

        items, total = await admin.list_users(role=Role.PASSENGER)
        assert total == 2
        assert [u.id for u in items] == [PASSENGER.user_id, OTHER_PASSENGER.user_id]

        items, total = await admin.list_users(role=Role.PASSENGER, suspended=False)
        assert [u.id for u in items] == [PASSENGER.user_id]

        items, total = await admin.list_users(term="CAMILA")
        assert [u.role for u in items] == [Role.DRIVER]

    @pytest.mark.asyncio
    async def test_user_listing_by_signup_date_and_page(self, db_session):
        veteran = await db_session.get(UserModel, DRIVER.user_id)
        veteran.created_at = utcnow() - timedelta(days=400)
        await db_session.flush()
        admin = AdminOverride(db_session)

        items, total = await admin.list_users(
            created_to=utcnow() - timedelta(days=30)
        )
        assert (total, [u.id for u in items]) == (1, [DRIVER.user_id])

        items, total = await admin.list_users(
            created_from=utcnow() - timedelta(days=30), page=2, page_size=3
        )
        assert total == 4
        assert [u.id for u in items] == [OTHER_DRIVER.user_id]
