"""
Payment processor adapter (Stripe).

The lifecycle only needs the intent/confirm contract: create an intent for
an amount, read back its status, and parse signed webhook events.  Stripe's
SDK is synchronous, so calls run in a worker thread to keep the event loop
free.  Amounts are passed in minor units.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe

from carpool.domain.entities import PaymentIntent
from carpool.domain.errors import PaymentProcessorError, ValidationFailed


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessor(ABC):
    @abstractmethod
    async def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntent: ...

    @abstractmethod
    async def retrieve_status(self, intent_id: str) -> str: ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: str) -> dict[str, Any]: ...


class StripePaymentProcessor(PaymentProcessor):
    def __init__(self, api_key: str, webhook_secret: str = ""):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def create_intent(
        self, amount: Decimal, currency: str, metadata: dict[str, str]
    ) -> PaymentIntent:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=to_minor_units(amount),
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise PaymentProcessorError(str(exc.user_message or exc)) from exc
        return PaymentIntent(
            intent_id=intent["id"],
            client_secret=intent["client_secret"],
            status=intent["status"],
        )

    async def retrieve_status(self, intent_id: str) -> str:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.retrieve, intent_id, api_key=self.api_key
            )
        except stripe.StripeError as exc:
            raise PaymentProcessorError(str(exc.user_message or exc)) from exc
        return intent["status"]

    def parse_webhook(self, payload: bytes, signature: str) -> dict[str, Any]:
        try:
            event = stripe.Webhook.construct_event(
                payload, signature, self.webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            raise ValidationFailed("Invalid webhook payload") from exc
        return {
            "type": event["type"],
            "intent_id": event["data"]["object"]["id"],
        }
