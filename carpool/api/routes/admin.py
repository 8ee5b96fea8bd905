"""
Admin / observability endpoints
===============================

GET   /api/v1/admin/users                          -- filtered user listing
PATCH /api/v1/admin/users/{user_id}/suspension     -- suspend / unsuspend
PATCH /api/v1/admin/drivers/{driver_id}/publish-ban -- set / lift publish ban
POST  /api/v1/admin/trips/{trip_id}/force-cancel   -- cancel + cascade + refunds
POST  /api/v1/admin/bookings/{booking_id}/correct-state
POST  /api/v1/admin/moderation/notes               -- standalone audit note
GET   /api/v1/admin/trips                          -- filtered trip listing
GET   /api/v1/admin/bookings                       -- filtered booking listing
GET   /api/v1/admin/trips/{trip_id}/capacity       -- ledger snapshot + check
GET   /api/v1/admin/audit                          -- audit log page
GET   /api/v1/admin/audit/export                   -- audit log as NDJSON
GET   /api/v1/admin/health                         -- simple health check

Every mutation requires a reason and writes to the audit log.
"""

import json
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.dependencies import get_db, require_role
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    AdminActionResponse,
    AuditPage,
    BookingPage,
    BookingResponse,
    CapacityResponse,
    CorrectStateRequest,
    CorrectStateResponse,
    ForceCancelResponse,
    HealthResponse,
    ModerationNoteRequest,
    PublishBanRequest,
    ReasonRequest,
    SuspensionRequest,
    TransactionResponse,
    TripPage,
    TripResponse,
    UserPage,
    UserResponse,
)
from carpool.config import settings
from carpool.domain.entities import Actor, RefundRequest
from carpool.domain.enums import BookingStatus, Role, TripStatus
from carpool.domain.errors import SelfActionForbidden
from carpool.services.admin import AdminOverride
from carpool.services.guards import load_trip

router = APIRouter(prefix="/admin", tags=["admin"])

admin_only = require_role(Role.ADMIN)


# ── Users ─────────────────────────────────────────────────────────────


@router.get("/users", response_model=UserPage, summary="List users")
@limiter.limit(settings.rate_limit)
async def list_users(
    request: Request,
    role: Optional[Role] = None,
    status: Optional[Literal["active", "suspended"]] = None,
    search: Optional[str] = Query(None, max_length=120, description="Name or email"),
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await AdminOverride(db).list_users(
        role=role,
        suspended=None if status is None else status == "suspended",
        term=search,
        created_from=created_from,
        created_to=created_to,
        page=page,
        page_size=page_size,
    )
    return UserPage(
        items=[UserResponse.model_validate(u) for u in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.patch(
    "/users/{user_id}/suspension",
    response_model=UserResponse,
    summary="Suspend or unsuspend a user",
)
@limiter.limit(settings.rate_limit)
async def set_suspension(
    request: Request,
    user_id: int,
    body: SuspensionRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    if user_id == actor.user_id:
        raise SelfActionForbidden()
    return await AdminOverride(db).set_suspension(
        actor, user_id, body.suspended, body.reason
    )


@router.patch(
    "/drivers/{driver_id}/publish-ban",
    response_model=UserResponse,
    summary="Ban a driver from publishing trips until a date",
)
@limiter.limit(settings.rate_limit)
async def set_publish_ban(
    request: Request,
    driver_id: int,
    body: PublishBanRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await AdminOverride(db).set_driver_publish_ban(
        actor, driver_id, body.ban_until, body.reason
    )


# ── Trips / bookings ──────────────────────────────────────────────────


@router.post(
    "/trips/{trip_id}/force-cancel",
    response_model=ForceCancelResponse,
    summary="Force-cancel a published or running trip",
    description=(
        "Pending bookings are auto-declined; accepted bookings release their "
        "seats, become canceled_by_platform and have completed card payments "
        "refunded in full."
    ),
)
@limiter.limit(settings.rate_limit)
async def force_cancel_trip(
    request: Request,
    trip_id: int,
    body: ReasonRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    trip, records = await AdminOverride(db).force_cancel_trip(
        actor, trip_id, body.reason
    )
    return ForceCancelResponse(
        trip=TripResponse.model_validate(trip),
        audit=[AdminActionResponse.model_validate(r) for r in records],
    )


@router.post(
    "/bookings/{booking_id}/correct-state",
    response_model=CorrectStateResponse,
    summary="Correct a booking's state, optionally with a refund",
)
@limiter.limit(settings.rate_limit)
async def correct_booking_state(
    request: Request,
    booking_id: int,
    body: CorrectStateRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    refund = None
    if body.refund is not None:
        refund = RefundRequest(
            amount=body.refund.amount,
            reason=body.refund.reason,
            currency=body.refund.currency,
        )
    booking, refund_txn, record = await AdminOverride(db).correct_booking_state(
        actor, booking_id, body.target, body.reason, refund
    )
    return CorrectStateResponse(
        booking=BookingResponse.build(booking, await load_trip(db, booking.trip_id)),
        refund=TransactionResponse.model_validate(refund_txn) if refund_txn else None,
        audit=AdminActionResponse.model_validate(record),
    )


@router.post(
    "/moderation/notes",
    status_code=201,
    response_model=AdminActionResponse,
    summary="Record a moderation note",
)
@limiter.limit(settings.rate_limit)
async def create_moderation_note(
    request: Request,
    body: ModerationNoteRequest,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    return await AdminOverride(db).create_moderation_note(
        actor, body.entity_type, body.entity_id, body.category, body.reason
    )


# ── Queries ───────────────────────────────────────────────────────────


@router.get("/trips", response_model=TripPage, summary="List trips")
@limiter.limit(settings.rate_limit)
async def list_trips(
    request: Request,
    status: Optional[list[TripStatus]] = Query(None),
    driver_id: Optional[int] = None,
    departure_from: Optional[datetime] = None,
    departure_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await AdminOverride(db).list_trips(
        statuses=status,
        driver_id=driver_id,
        departure_from=departure_from,
        departure_to=departure_to,
        page=page,
        page_size=page_size,
    )
    return TripPage(
        items=[TripResponse.model_validate(t) for t in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/bookings", response_model=BookingPage, summary="List bookings")
@limiter.limit(settings.rate_limit)
async def list_bookings(
    request: Request,
    status: Optional[list[BookingStatus]] = Query(None),
    trip_id: Optional[int] = None,
    passenger_id: Optional[int] = None,
    paid: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await AdminOverride(db).list_bookings(
        trip_id=trip_id,
        passenger_id=passenger_id,
        statuses=status,
        paid=paid,
        page=page,
        page_size=page_size,
    )
    return BookingPage(
        items=[BookingResponse.build(b, await load_trip(db, b.trip_id)) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/trips/{trip_id}/capacity",
    response_model=CapacityResponse,
    summary="Seat ledger snapshot and consistency check",
)
@limiter.limit(settings.rate_limit)
async def trip_capacity(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    snapshot, accepted = await AdminOverride(db).capacity(trip_id)
    return CapacityResponse(
        trip_id=snapshot.trip_id,
        total_seats=snapshot.total_seats,
        allocated_seats=snapshot.allocated_seats,
        remaining_seats=snapshot.remaining_seats,
        accepted_seats=accepted,
        consistent=accepted == snapshot.allocated_seats,
    )


@router.get("/audit", response_model=AuditPage, summary="Browse the audit log")
@limiter.limit(settings.rate_limit)
async def list_audit(
    request: Request,
    actor_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await AdminOverride(db).list_audit(
        actor_id=actor_id,
        entity_type=entity_type,
        created_from=created_from,
        created_to=created_to,
        page=page,
        page_size=page_size,
    )
    return AuditPage(
        items=[AdminActionResponse.model_validate(r) for r in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/audit/export",
    summary="Export the audit log as newline-delimited JSON",
    response_class=Response,
)
@limiter.limit(settings.rate_limit)
async def export_audit(
    request: Request,
    actor_id: Optional[int] = None,
    entity_type: Optional[str] = None,
    created_from: Optional[datetime] = None,
    created_to: Optional[datetime] = None,
    actor: Actor = Depends(admin_only),
    db: AsyncSession = Depends(get_db),
):
    records = await AdminOverride(db).export_audit(
        actor_id=actor_id,
        entity_type=entity_type,
        created_from=created_from,
        created_to=created_to,
    )
    lines = [
        json.dumps(AdminActionResponse.model_validate(r).model_dump(mode="json"))
        for r in records
    ]
    return Response(
        content="\n".join(lines) + ("\n" if lines else ""),
        media_type="application/x-ndjson",
        headers={"Content-Disposition": "attachment; filename=audit.ndjson"},
    )


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health():
    return HealthResponse()
