"""
Payment endpoints
=================

POST /api/v1/bookings/{booking_id}/payment-intent        -- passenger, card
POST /api/v1/bookings/{booking_id}/confirm-payment       -- passenger, card
POST /api/v1/bookings/{booking_id}/set-cash-payment      -- passenger, cash
POST /api/v1/bookings/{booking_id}/confirm-cash-payment  -- driver, cash
GET  /api/v1/bookings/pending-payments                   -- passenger
POST /api/v1/payments/webhook                            -- payment processor
"""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.dependencies import get_db, get_payment_processor, require_role
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    BookingResponse,
    ConfirmPaymentRequest,
    PaymentIntentResponse,
    PaymentResponse,
    TransactionResponse,
)
from carpool.config import settings
from carpool.domain.entities import Actor
from carpool.domain.enums import Role
from carpool.infrastructure.payments import PaymentProcessor
from carpool.services.guards import load_trip
from carpool.services.payments import PaymentReconciler

router = APIRouter(tags=["payments"])

passenger_only = require_role(Role.PASSENGER)
driver_only = require_role(Role.DRIVER)


@router.get(
    "/bookings/pending-payments",
    response_model=list[BookingResponse],
    summary="Accepted bookings on completed trips that still need paying",
)
@limiter.limit(settings.rate_limit)
async def pending_payments(
    request: Request,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    bookings = await PaymentReconciler(db).pending_payments(actor)
    return [BookingResponse.build(b, await load_trip(db, b.trip_id)) for b in bookings]


@router.post(
    "/bookings/{booking_id}/payment-intent",
    response_model=PaymentIntentResponse,
    summary="Create a card payment intent",
    responses={502: {"description": "Payment processor unavailable."}},
)
@limiter.limit(settings.rate_limit)
async def create_payment_intent(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    _, txn, intent = await PaymentReconciler(db, processor).create_intent(
        actor, booking_id
    )
    return PaymentIntentResponse(
        booking_id=txn.booking_id,
        payment_intent_id=intent.intent_id,
        client_secret=intent.client_secret,
        amount=txn.amount,
        currency=txn.currency,
    )


@router.post(
    "/bookings/{booking_id}/confirm-payment",
    response_model=PaymentResponse,
    summary="Confirm a card payment",
    description="Idempotent: confirming an already succeeded intent is a no-op.",
)
@limiter.limit(settings.rate_limit)
async def confirm_payment(
    request: Request,
    booking_id: int,
    body: ConfirmPaymentRequest,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    booking, txn = await PaymentReconciler(db, processor).confirm(
        actor, booking_id, body.payment_intent_id
    )
    return PaymentResponse(
        booking=BookingResponse.build(booking, await load_trip(db, booking.trip_id)),
        transaction=TransactionResponse.model_validate(txn),
    )


@router.post(
    "/bookings/{booking_id}/set-cash-payment",
    response_model=PaymentResponse,
    summary="Pay this booking in cash",
)
@limiter.limit(settings.rate_limit)
async def set_cash_payment(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await PaymentReconciler(db).select_cash(actor, booking_id)
    return PaymentResponse(
        booking=BookingResponse.build(booking, await load_trip(db, booking.trip_id))
    )


@router.post(
    "/bookings/{booking_id}/confirm-cash-payment",
    response_model=PaymentResponse,
    summary="Driver confirms cash was received",
)
@limiter.limit(settings.rate_limit)
async def confirm_cash_payment(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    booking, txn = await PaymentReconciler(db).confirm_cash(actor, booking_id)
    return PaymentResponse(
        booking=BookingResponse.build(booking, await load_trip(db, booking.trip_id)),
        transaction=TransactionResponse.model_validate(txn),
    )


@router.post("/payments/webhook", summary="Payment processor webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: str = Header("", alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
):
    event = processor.parse_webhook(await request.body(), stripe_signature)
    txn = await PaymentReconciler(db, processor).handle_processor_event(event)
    return {"received": True, "transaction_id": txn.id if txn else None}
