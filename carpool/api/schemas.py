"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, model_validator

from carpool.domain.entities import effective_state
from carpool.domain.enums import (
    BookingStatus,
    EffectiveState,
    PaymentMethod,
    PaymentStatus,
    Role,
    TransactionStatus,
    TripStatus,
)


# ── Requests ──────────────────────────────────────────────────────────


class TripCreateRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=255)
    destination: str = Field(..., min_length=1, max_length=255)
    departure_at: datetime
    estimated_arrival_at: datetime
    price_per_seat: Decimal = Field(..., ge=0, max_digits=12, decimal_places=2)
    total_seats: int = Field(..., ge=1)
    notes: Optional[str] = None


class TripUpdateRequest(BaseModel):
    """Edit a draft trip, or move it with ``status`` (publish / cancel)."""

    origin: Optional[str] = Field(None, min_length=1, max_length=255)
    destination: Optional[str] = Field(None, min_length=1, max_length=255)
    departure_at: Optional[datetime] = None
    estimated_arrival_at: Optional[datetime] = None
    price_per_seat: Optional[Decimal] = Field(
        None, ge=0, max_digits=12, decimal_places=2
    )
    total_seats: Optional[int] = Field(None, ge=1)
    notes: Optional[str] = None
    status: Optional[Literal["published", "canceled"]] = None


class BookingCreateRequest(BaseModel):
    trip_id: int
    seats: int = Field(1, ge=1)
    note: Optional[str] = Field(None, max_length=500)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1, max_length=255)


class SuspensionRequest(BaseModel):
    """Either ``suspended`` or ``action`` ("suspend" / "unsuspend")."""

    suspended: Optional[bool] = None
    action: Optional[Literal["suspend", "unsuspend"]] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _resolve_action(self) -> SuspensionRequest:
        if self.action is not None:
            wanted = self.action == "suspend"
            if self.suspended is not None and self.suspended != wanted:
                raise ValueError("'suspended' and 'action' disagree")
            self.suspended = wanted
        if self.suspended is None:
            raise ValueError("Provide 'suspended' or 'action'")
        return self


class RefundPayload(BaseModel):
    amount: Decimal
    reason: Optional[str] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class CorrectStateRequest(BaseModel):
    target: str = Field(..., validation_alias=AliasChoices("target", "targetState"))
    reason: Optional[str] = None
    refund: Optional[RefundPayload] = None


class PublishBanRequest(BaseModel):
    ban_until: Optional[datetime] = Field(
        None,
        validation_alias=AliasChoices("ban_until", "banUntil"),
        description="Omit or null to lift an existing ban.",
    )
    reason: Optional[str] = None


class ModerationNoteRequest(BaseModel):
    entity_type: Literal["user", "trip", "booking"]
    entity_id: int
    category: Optional[str] = Field(None, max_length=64)
    reason: Optional[str] = None


# ── Responses ─────────────────────────────────────────────────────────


class TripResponse(BaseModel):
    id: int
    driver_id: int
    origin: str
    destination: str
    departure_at: datetime
    estimated_arrival_at: datetime
    price_per_seat: Decimal
    total_seats: int
    allocated_seats: int
    remaining_seats: int
    status: TripStatus
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    trip_id: int
    passenger_id: int
    seats: int
    status: BookingStatus
    note: Optional[str] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    trip_status: TripStatus
    effective_state: EffectiveState
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def build(cls, booking: Any, trip: Any) -> "BookingResponse":
        return cls(
            id=booking.id,
            trip_id=booking.trip_id,
            passenger_id=booking.passenger_id,
            seats=booking.seats,
            status=booking.status,
            note=booking.note,
            payment_method=booking.payment_method,
            payment_status=booking.payment_status,
            trip_status=trip.status,
            effective_state=effective_state(
                BookingStatus(booking.status), TripStatus(trip.status)
            ),
            created_at=booking.created_at,
            updated_at=booking.updated_at,
        )


class TransactionResponse(BaseModel):
    id: int
    booking_id: int
    method: PaymentMethod
    amount: Decimal
    currency: str
    payment_intent_id: Optional[str] = None
    status: TransactionStatus
    refund_of_id: Optional[int] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class PaymentIntentResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    client_secret: str
    amount: Decimal
    currency: str


class PaymentResponse(BaseModel):
    booking: BookingResponse
    transaction: Optional[TransactionResponse] = None


class UserResponse(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    is_suspended: bool
    suspended_reason: Optional[str] = None
    publish_ban_until: Optional[datetime] = None
    publish_ban_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AdminActionResponse(BaseModel):
    id: int
    entity_type: str
    entity_id: int
    actor_id: int
    action: str
    category: Optional[str] = None
    reason: str
    details: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ForceCancelResponse(BaseModel):
    trip: TripResponse
    audit: list[AdminActionResponse]


class CorrectStateResponse(BaseModel):
    booking: BookingResponse
    refund: Optional[TransactionResponse] = None
    audit: AdminActionResponse


class CapacityResponse(BaseModel):
    trip_id: int
    total_seats: int
    allocated_seats: int
    remaining_seats: int
    accepted_seats: int = Field(
        ..., description="Seats held by accepted bookings, recomputed from rows."
    )
    consistent: bool


class UserPage(BaseModel):
    items: list[UserResponse]
    total: int
    page: int
    page_size: int


class TripPage(BaseModel):
    items: list[TripResponse]
    total: int
    page: int
    page_size: int


class BookingPage(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    page_size: int


class AuditPage(BaseModel):
    items: list[AdminActionResponse]
    total: int
    page: int
    page_size: int


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    code: str
    detail: str
