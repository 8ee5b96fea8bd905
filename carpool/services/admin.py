"""
Admin overrides
===============

Privileged operations that re-enter the trip / booking / payment state
machines with relaxed actor rules.  Every mutation appends to the
``admin_actions`` audit log with the admin's reason stored verbatim; a
reason shorter than the configured minimum is rejected before any state is
read.

Force-cancel writes one audit record per booking the cascade changed (or a
single trip record when there was nothing to cascade); every other override
writes exactly one.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import BookingStateMachine
from .guards import emit, load_booking, load_trip, load_user
from .ledger import CapacityLedger
from .payments import PaymentReconciler
from .trips import TripStateMachine
from carpool.config import settings
from carpool.domain.entities import (
    Actor,
    CapacitySnapshot,
    RefundRequest,
    as_utc,
    utcnow,
    validate_reason,
)
from carpool.domain.enums import CORRECTION_TARGETS, BookingStatus, TripStatus
from carpool.domain.errors import (
    BookingNotAccepted,
    BookingNotPending,
    InvalidRefund,
    InvalidTarget,
    ValidationFailed,
)
from carpool.infrastructure.models import (
    AdminActionModel,
    BookingModel,
    TransactionModel,
    TripModel,
    UserModel,
)
from carpool.infrastructure.repositories import (
    AdminActionRepository,
    BookingRepository,
    TripRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)


class AdminOverride:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AdminActionRepository(session)
        self.trips = TripStateMachine(session)
        self.bookings = BookingStateMachine(session)
        self.payments = PaymentReconciler(session)
        self.ledger = CapacityLedger(session)

    def _reason(self, reason: Optional[str]) -> str:
        return validate_reason(reason, settings.min_reason_length)

    async def _record(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: int,
        action: str,
        reason: str,
        *,
        category: Optional[str] = None,
        **details: Any,
    ) -> AdminActionModel:
        record = await self.audit.append(
            AdminActionModel(
                entity_type=entity_type,
                entity_id=entity_id,
                actor_id=actor.user_id,
                action=action,
                category=category,
                reason=reason,
                details=details or None,
            )
        )
        logger.info(
            "Admin %d: %s on %s#%d", actor.user_id, action, entity_type, entity_id
        )
        return record

    # ── Users ─────────────────────────────────────────────────────────

    async def set_suspension(
        self, actor: Actor, user_id: int, suspend: bool, reason: str
    ) -> UserModel:
        reason = self._reason(reason)
        user = await load_user(self.session, user_id)
        user.is_suspended = suspend
        user.suspended_reason = reason if suspend else None
        await self.session.flush()

        action = "suspend_user" if suspend else "unsuspend_user"
        await self._record(actor, "user", user.id, action, reason)
        emit(self.session, "user", user.id, f"user.{action}", actor_id=actor.user_id)
        return user

    async def suspend_user(self, actor: Actor, user_id: int, reason: str) -> UserModel:
        return await self.set_suspension(actor, user_id, True, reason)

    async def unsuspend_user(self, actor: Actor, user_id: int, reason: str) -> UserModel:
        return await self.set_suspension(actor, user_id, False, reason)

    async def set_driver_publish_ban(
        self,
        actor: Actor,
        driver_id: int,
        ban_until: Optional[datetime],
        reason: str,
    ) -> UserModel:
        reason = self._reason(reason)
        ban_until = as_utc(ban_until)
        if ban_until is not None and ban_until <= utcnow():
            raise ValidationFailed("Ban end must be in the future")

        driver = await load_user(self.session, driver_id)
        driver.publish_ban_until = ban_until
        driver.publish_ban_reason = reason if ban_until else None
        await self.session.flush()

        await self._record(
            actor,
            "user",
            driver.id,
            "set_publish_ban" if ban_until else "lift_publish_ban",
            reason,
            ban_until=ban_until.isoformat() if ban_until else None,
        )
        return driver

    # ── Trips / bookings ──────────────────────────────────────────────

    async def force_cancel_trip(
        self, actor: Actor, trip_id: int, reason: str
    ) -> tuple[TripModel, list[AdminActionModel]]:
        reason = self._reason(reason)
        trip, changed, refunds = await self.trips.force_cancel(actor, trip_id, reason)

        records = []
        for booking, previous in changed:
            refund = refunds.get(booking.id)
            records.append(
                await self._record(
                    actor,
                    "booking",
                    booking.id,
                    "force_cancel_trip",
                    reason,
                    trip_id=trip.id,
                    from_status=previous.value,
                    to_status=BookingStatus(booking.status).value,
                    refund_transaction_id=refund.id if refund else None,
                )
            )
        if not records:
            records.append(
                await self._record(
                    actor,
                    "trip",
                    trip.id,
                    "force_cancel_trip",
                    reason,
                    to_status=TripStatus.CANCELED.value,
                )
            )
        return trip, records

    async def correct_booking_state(
        self,
        actor: Actor,
        booking_id: int,
        target: str,
        reason: str,
        refund: Optional[RefundRequest] = None,
    ) -> tuple[BookingModel, Optional[TransactionModel], AdminActionModel]:
        reason = self._reason(reason)
        try:
            target_status = BookingStatus(target)
        except ValueError:
            raise InvalidTarget(f"Unknown target state {target!r}") from None
        if target_status not in CORRECTION_TARGETS:
            raise InvalidTarget(
                "Target must be declined_by_admin or canceled_by_platform"
            )
        if refund is not None:
            if target_status != BookingStatus.CANCELED_BY_PLATFORM:
                raise InvalidRefund("Refunds accompany canceled_by_platform only")
            refund = RefundRequest(
                amount=refund.amount,
                reason=self._reason(refund.reason),
                currency=refund.currency,
            )

        booking = await load_booking(self.session, booking_id)
        await load_trip(self.session, booking.trip_id, for_update=True)
        booking = await load_booking(self.session, booking_id, fresh=True)

        previous = BookingStatus(booking.status)
        if previous != CORRECTION_TARGETS[target_status]:
            if target_status == BookingStatus.DECLINED_BY_ADMIN:
                raise BookingNotPending()
            raise BookingNotAccepted()
        original = (
            await self.payments.prepare_refund(booking, refund) if refund else None
        )

        if target_status == BookingStatus.DECLINED_BY_ADMIN:
            await self.bookings.decline_by_admin(booking, actor.user_id, reason)
        else:
            await self.bookings.cancel_by_platform(
                booking, actor_id=actor.user_id, reason=reason
            )

        refund_txn = None
        if refund is not None:
            refund_txn = await self.payments.issue_refund(
                booking, original, refund.amount, refund.reason, actor
            )

        record = await self._record(
            actor,
            "booking",
            booking.id,
            "correct_booking_state",
            reason,
            from_status=previous.value,
            to_status=target_status.value,
            refund_transaction_id=refund_txn.id if refund_txn else None,
            refund_amount=str(refund.amount) if refund else None,
        )
        return booking, refund_txn, record

    async def create_moderation_note(
        self,
        actor: Actor,
        entity_type: str,
        entity_id: int,
        category: Optional[str],
        reason: str,
    ) -> AdminActionModel:
        reason = self._reason(reason)
        return await self._record(
            actor, entity_type, entity_id, "moderation_note", reason, category=category
        )

    # ── Queries ───────────────────────────────────────────────────────

    async def capacity(self, trip_id: int) -> tuple[CapacitySnapshot, int]:
        return await self.ledger.verify(trip_id)

    async def list_users(self, **filters: Any) -> tuple[list[UserModel], int]:
        return await UserRepository(self.session).search(**filters)

    async def list_trips(self, **filters: Any) -> tuple[list[TripModel], int]:
        return await TripRepository(self.session).search(**filters)

    async def list_bookings(self, **filters: Any) -> tuple[list[BookingModel], int]:
        return await BookingRepository(self.session).search(**filters)

    async def list_audit(self, **filters: Any) -> tuple[list[AdminActionModel], int]:
        return await self.audit.search(**filters)

    async def export_audit(self, **filters: Any) -> list[AdminActionModel]:
        return await self.audit.all_matching(**filters)
