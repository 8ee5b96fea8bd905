"""
Payment reconciler
==================

Per booking::

    payment_status:  none ──> pending ──> completed
    transaction:     pending ──> succeeded | failed
                     failed ──> succeeded   (processor success only)

Two confirmation authorities:

* **card** -- the passenger creates an intent, the processor charges it, and
  either the passenger's ``confirm`` (verified against the processor) or the
  processor webhook completes it.  Confirming the same intent twice is a
  no-op returning the existing record.
* **cash** -- the passenger selects cash; only the trip's driver can confirm
  it was received.

Choosing one method fails the other method's pending attempts, and settling a
booking fails everything still pending on it.  A processor success for an
attempt that was marked failed locally, or that arrives after the booking was
settled some other way, is still recorded as succeeded (``payment.unreconciled``
when the booking cannot take it) so the charge is never lost.

A payment may only complete while the booking is accepted and the trip is
``in_progress`` or ``completed``.  Refunds append a negative transaction that
references the original; the original row is never modified.

The processor round trip in ``create_intent`` and ``confirm`` happens before
any write and never while a trip row is locked.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .guards import (
    emit,
    ensure_booking_passenger,
    ensure_trip_driver,
    load_booking,
    load_trip,
)
from carpool.config import settings
from carpool.domain.entities import Actor, PaymentIntent, RefundRequest
from carpool.domain.enums import (
    PAYMENT_WINDOW,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    TransactionStatus,
    TripStatus,
)
from carpool.domain.errors import (
    BookingNotAccepted,
    InvalidRefund,
    PaymentAlreadyCompleted,
    PaymentIntentMismatch,
    PaymentMethodMismatch,
    PaymentNotPending,
    PaymentNotSucceeded,
    PaymentWindowClosed,
    RefundNotAllowed,
    TransactionNotFound,
)
from carpool.infrastructure.models import BookingModel, TransactionModel, TripModel
from carpool.infrastructure.payments import PaymentProcessor
from carpool.infrastructure.repositories import (
    BookingRepository,
    TransactionRepository,
)

logger = logging.getLogger(__name__)

INTENT_SUCCEEDED = "succeeded"
INTENT_FAILED_EVENT = "payment_intent.payment_failed"
INTENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


def amount_due(booking: BookingModel, trip: TripModel) -> Decimal:
    return Decimal(trip.price_per_seat) * booking.seats


def _ensure_window(booking: BookingModel, trip: TripModel) -> None:
    if booking.status != BookingStatus.ACCEPTED or trip.status not in PAYMENT_WINDOW:
        raise PaymentWindowClosed()


class PaymentReconciler:
    def __init__(
        self, session: AsyncSession, processor: Optional[PaymentProcessor] = None
    ):
        self.session = session
        self.processor = processor
        self.bookings = BookingRepository(session)
        self.transactions = TransactionRepository(session)

    # ── Card ──────────────────────────────────────────────────────────

    async def create_intent(
        self, actor: Actor, booking_id: int
    ) -> tuple[BookingModel, TransactionModel, PaymentIntent]:
        booking = await load_booking(self.session, booking_id)
        ensure_booking_passenger(actor, booking)
        trip = await load_trip(self.session, booking.trip_id)
        _ensure_window(booking, trip)
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise PaymentAlreadyCompleted()

        amount = amount_due(booking, trip)
        # External call first; a failure leaves the booking untouched.
        intent = await self.processor.create_intent(
            amount,
            settings.currency,
            {"booking_id": str(booking.id), "trip_id": str(trip.id)},
        )

        booking = await load_booking(self.session, booking_id, fresh=True)
        await self.session.refresh(trip)
        _ensure_window(booking, trip)
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise PaymentAlreadyCompleted()

        txn = await self.transactions.create(
            TransactionModel(
                booking_id=booking.id,
                method=PaymentMethod.CARD,
                amount=amount,
                currency=settings.currency,
                payment_intent_id=intent.intent_id,
                status=TransactionStatus.PENDING,
            )
        )
        booking.payment_method = PaymentMethod.CARD
        booking.payment_status = PaymentStatus.PENDING
        await self.session.flush()
        await self._supersede(booking.id, PaymentMethod.CASH, actor.user_id)
        emit(
            self.session,
            "booking",
            booking.id,
            "payment.intent_created",
            to_status=PaymentStatus.PENDING.value,
            actor_id=actor.user_id,
            transaction_id=txn.id,
        )
        return booking, txn, intent

    async def confirm(
        self, actor: Actor, booking_id: int, intent_id: str
    ) -> tuple[BookingModel, TransactionModel]:
        booking = await load_booking(self.session, booking_id)
        ensure_booking_passenger(actor, booking)

        txn = await self.transactions.get_by_intent(intent_id)
        if txn is None:
            raise TransactionNotFound()
        if txn.booking_id != booking.id:
            raise PaymentIntentMismatch()
        if txn.status == TransactionStatus.SUCCEEDED:
            return booking, txn
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise PaymentAlreadyCompleted()
        if txn.status != TransactionStatus.PENDING:
            raise PaymentNotPending("This payment attempt failed; start a new one")

        trip = await load_trip(self.session, booking.trip_id)
        _ensure_window(booking, trip)

        status = await self.processor.retrieve_status(intent_id)
        if status != INTENT_SUCCEEDED:
            raise PaymentNotSucceeded(f"Payment intent status is {status}")
        return await self._settle(booking, txn, actor.user_id)

    async def handle_processor_event(
        self, event: dict[str, Any]
    ) -> Optional[TransactionModel]:
        """Apply a verified processor webhook event. Unknown intents are ignored."""
        txn = await self.transactions.get_by_intent(event["intent_id"])
        if txn is None:
            logger.warning("Webhook for unknown intent %s", event["intent_id"])
            return None

        if event["type"] == INTENT_FAILED_EVENT:
            if await self.transactions.compare_and_set_status(
                txn.id, TransactionStatus.PENDING, TransactionStatus.FAILED
            ):
                await self.session.refresh(txn)
                emit(
                    self.session,
                    "transaction",
                    txn.id,
                    "payment.failed",
                    from_status=TransactionStatus.PENDING.value,
                    to_status=TransactionStatus.FAILED.value,
                    booking_id=txn.booking_id,
                )
            return txn

        if event["type"] != INTENT_SUCCEEDED_EVENT:
            return txn
        if txn.status == TransactionStatus.SUCCEEDED:
            return txn

        # A processor success stands even over a local failed mark.
        booking = await load_booking(self.session, txn.booking_id, fresh=True)
        trip = await load_trip(self.session, booking.trip_id)
        if (
            booking.status == BookingStatus.ACCEPTED
            and trip.status in PAYMENT_WINDOW
            and booking.payment_status != PaymentStatus.COMPLETED
        ):
            _, txn = await self._settle(
                booking, txn, None, expected=TransactionStatus(txn.status)
            )
            return txn
        return await self._record_unreconciled(booking, trip, txn)

    # ── Cash ──────────────────────────────────────────────────────────

    async def select_cash(self, actor: Actor, booking_id: int) -> BookingModel:
        booking = await load_booking(self.session, booking_id)
        ensure_booking_passenger(actor, booking)
        trip = await load_trip(self.session, booking.trip_id)
        if booking.status != BookingStatus.ACCEPTED or trip.status == TripStatus.CANCELED:
            raise PaymentWindowClosed()
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise PaymentAlreadyCompleted()

        txn = await self.transactions.get_pending(booking.id, PaymentMethod.CASH)
        if txn is None:
            txn = await self.transactions.create(
                TransactionModel(
                    booking_id=booking.id,
                    method=PaymentMethod.CASH,
                    amount=amount_due(booking, trip),
                    currency=settings.currency,
                    status=TransactionStatus.PENDING,
                )
            )
        booking.payment_method = PaymentMethod.CASH
        booking.payment_status = PaymentStatus.PENDING
        await self.session.flush()
        await self._supersede(booking.id, PaymentMethod.CARD, actor.user_id)
        emit(
            self.session,
            "booking",
            booking.id,
            "payment.cash_selected",
            to_status=PaymentStatus.PENDING.value,
            actor_id=actor.user_id,
            transaction_id=txn.id,
        )
        return booking

    async def confirm_cash(
        self, actor: Actor, booking_id: int
    ) -> tuple[BookingModel, TransactionModel]:
        booking = await load_booking(self.session, booking_id)
        trip = await load_trip(self.session, booking.trip_id)
        # The passenger can never self-confirm cash.
        ensure_trip_driver(actor, trip)

        if booking.status != BookingStatus.ACCEPTED:
            raise BookingNotAccepted()
        if booking.payment_method != PaymentMethod.CASH:
            raise PaymentMethodMismatch()
        if booking.payment_status == PaymentStatus.COMPLETED:
            raise PaymentAlreadyCompleted()
        if booking.payment_status != PaymentStatus.PENDING:
            raise PaymentNotPending()
        _ensure_window(booking, trip)

        txn = await self.transactions.get_pending(booking.id, PaymentMethod.CASH)
        if txn is None:
            raise PaymentNotPending()
        return await self._settle(booking, txn, actor.user_id)

    # ── Window / refunds ──────────────────────────────────────────────

    async def open_window(self, trip: TripModel) -> list[int]:
        """Mark accepted, unpaid bookings as payment due once a trip completes."""
        opened = await self.bookings.open_payment_window(trip.id)
        for booking_id in opened:
            emit(
                self.session,
                "booking",
                booking_id,
                "payment.window_opened",
                from_status=PaymentStatus.NONE.value,
                to_status=PaymentStatus.PENDING.value,
                trip_id=trip.id,
            )
        return opened

    async def prepare_refund(
        self, booking: BookingModel, request: RefundRequest
    ) -> TransactionModel:
        """Validate a refund without writing anything; returns the original charge."""
        original = await self.transactions.get_succeeded_card_payment(booking.id)
        if original is None:
            raise RefundNotAllowed()
        if request.currency and request.currency.lower() != original.currency.lower():
            raise InvalidRefund("Refund currency must match the original payment")
        if request.amount <= 0:
            raise InvalidRefund("Refund amount must be positive")
        refundable = Decimal(original.amount) - await self.transactions.refunded_total(
            original.id
        )
        if request.amount > refundable:
            raise InvalidRefund(f"At most {refundable} can be refunded")
        return original

    async def issue_refund(
        self,
        booking: BookingModel,
        original: TransactionModel,
        amount: Decimal,
        reason: str,
        actor: Actor,
    ) -> TransactionModel:
        refund = await self.transactions.create(
            TransactionModel(
                booking_id=booking.id,
                method=original.method,
                amount=-amount,
                currency=original.currency,
                payment_intent_id=None,
                status=TransactionStatus.SUCCEEDED,
                refund_of_id=original.id,
                reason=reason,
            )
        )
        emit(
            self.session,
            "transaction",
            refund.id,
            "payment.refunded",
            to_status=TransactionStatus.SUCCEEDED.value,
            actor_id=actor.user_id,
            booking_id=booking.id,
            refund_of_id=original.id,
            amount=str(amount),
        )
        logger.info(
            "Refunded %s %s on booking %d (original txn %d)",
            amount,
            original.currency,
            booking.id,
            original.id,
        )
        return refund

    async def refund_in_full(
        self, booking: BookingModel, actor: Actor, reason: str
    ) -> Optional[TransactionModel]:
        """Refund whatever is left of a completed card payment, if any."""
        original = await self.transactions.get_succeeded_card_payment(booking.id)
        if original is None:
            return None
        remaining = Decimal(original.amount) - await self.transactions.refunded_total(
            original.id
        )
        if remaining <= 0:
            return None
        return await self.issue_refund(booking, original, remaining, reason, actor)

    # ── Queries ───────────────────────────────────────────────────────

    async def pending_payments(self, actor: Actor) -> list[BookingModel]:
        return await self.bookings.pending_payments(actor.user_id)

    # ── Internals ─────────────────────────────────────────────────────

    async def _settle(
        self,
        booking: BookingModel,
        txn: TransactionModel,
        actor_id: Optional[int],
        expected: TransactionStatus = TransactionStatus.PENDING,
    ) -> tuple[BookingModel, TransactionModel]:
        if not await self.transactions.compare_and_set_status(
            txn.id, expected, TransactionStatus.SUCCEEDED
        ):
            await self.session.refresh(txn)
            if txn.status == TransactionStatus.SUCCEEDED:
                return booking, txn
            raise PaymentNotPending()

        if not await self.bookings.complete_payment(booking.id, PaymentMethod(txn.method)):
            await self.session.refresh(booking)
            if booking.payment_status == PaymentStatus.COMPLETED:
                raise PaymentAlreadyCompleted()
            raise PaymentWindowClosed()

        # Whatever else was still open on this booking can no longer be paid.
        await self._supersede(booking.id, None, actor_id)
        await self.session.refresh(txn)
        await self.session.refresh(booking)
        emit(
            self.session,
            "booking",
            booking.id,
            "payment.completed",
            from_status=PaymentStatus.PENDING.value,
            to_status=PaymentStatus.COMPLETED.value,
            actor_id=actor_id,
            transaction_id=txn.id,
            method=PaymentMethod(txn.method).value,
        )
        logger.info("Booking %d paid (txn %d)", booking.id, txn.id)
        return booking, txn

    async def _supersede(
        self,
        booking_id: int,
        method: Optional[PaymentMethod],
        actor_id: Optional[int],
    ) -> list[int]:
        failed = await self.transactions.fail_pending(booking_id, method)
        for txn_id in failed:
            emit(
                self.session,
                "transaction",
                txn_id,
                "payment.failed",
                from_status=TransactionStatus.PENDING.value,
                to_status=TransactionStatus.FAILED.value,
                actor_id=actor_id,
                booking_id=booking_id,
                reason="superseded",
            )
        return failed

    async def _record_unreconciled(
        self, booking: BookingModel, trip: TripModel, txn: TransactionModel
    ) -> TransactionModel:
        """Keep a charge the booking can no longer absorb so it can be refunded."""
        previous = TransactionStatus(txn.status)
        if not await self.transactions.compare_and_set_status(
            txn.id, previous, TransactionStatus.SUCCEEDED
        ):
            await self.session.refresh(txn)
            return txn
        await self.session.refresh(txn)
        emit(
            self.session,
            "transaction",
            txn.id,
            "payment.unreconciled",
            from_status=previous.value,
            to_status=TransactionStatus.SUCCEEDED.value,
            booking_id=booking.id,
            booking_status=BookingStatus(booking.status).value,
            payment_status=PaymentStatus(booking.payment_status).value,
            trip_status=TripStatus(trip.status).value,
        )
        logger.warning(
            "Intent %s succeeded but booking %d cannot take it (%s / %s / %s); "
            "refund required",
            txn.payment_intent_id,
            booking.id,
            BookingStatus(booking.status).value,
            PaymentStatus(booking.payment_status).value,
            TripStatus(trip.status).value,
        )
        return txn
