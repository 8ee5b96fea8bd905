"""
Driver endpoints
================

POST  /api/v1/drivers/trips                              -- draft a trip
GET   /api/v1/drivers/trips                              -- my trips
GET   /api/v1/drivers/trips/{trip_id}                    -- one of my trips
PATCH /api/v1/drivers/trips/{trip_id}                    -- edit / publish / cancel
POST  /api/v1/drivers/trips/{trip_id}/start              -- published -> in_progress
POST  /api/v1/drivers/trips/{trip_id}/complete           -- in_progress -> completed
GET   /api/v1/drivers/trips/{trip_id}/bookings           -- bookings on my trip
POST  /api/v1/drivers/trips/{trip_id}/bookings/{id}/accept
POST  /api/v1/drivers/trips/{trip_id}/bookings/{id}/decline
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.dependencies import get_db, require_role
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    BookingResponse,
    ReasonRequest,
    TripCreateRequest,
    TripPage,
    TripResponse,
    TripUpdateRequest,
)
from carpool.config import settings
from carpool.domain.entities import Actor
from carpool.domain.enums import BookingStatus, Role, TripStatus
from carpool.services.bookings import BookingStateMachine
from carpool.services.guards import load_trip
from carpool.services.trips import TripStateMachine

router = APIRouter(prefix="/drivers", tags=["drivers"])

driver_only = require_role(Role.DRIVER)


@router.post(
    "/trips",
    status_code=201,
    response_model=TripResponse,
    summary="Draft a new trip",
)
@limiter.limit(settings.rate_limit)
async def create_trip(
    request: Request,
    body: TripCreateRequest,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    return await TripStateMachine(db).create(actor, **body.model_dump())


@router.get("/trips", response_model=TripPage, summary="List my trips")
@limiter.limit(settings.rate_limit)
async def list_trips(
    request: Request,
    status: Optional[list[TripStatus]] = Query(None),
    from_date: Optional[datetime] = Query(None, description="Departing at or after"),
    to_date: Optional[datetime] = Query(None, description="Departing at or before"),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await TripStateMachine(db).list_for_driver(
        actor, status, from_date, to_date, page, page_size
    )
    return TripPage(
        items=[TripResponse.model_validate(t) for t in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/trips/{trip_id}", response_model=TripResponse, summary="Get my trip")
@limiter.limit(settings.rate_limit)
async def get_trip(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    return await TripStateMachine(db).get_for_driver(actor, trip_id)


@router.patch(
    "/trips/{trip_id}",
    response_model=TripResponse,
    summary="Edit, publish or cancel a trip",
    description=(
        "Field changes are only accepted while the trip is a draft.  "
        "``status=published`` publishes it; ``status=canceled`` cancels a "
        "draft or published trip and cascades onto its bookings."
    ),
)
@limiter.limit(settings.rate_limit)
async def update_trip(
    request: Request,
    trip_id: int,
    body: TripUpdateRequest,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    machine = TripStateMachine(db)
    changes = body.model_dump(exclude_unset=True, exclude={"status"})

    trip = None
    if changes:
        trip = await machine.update(actor, trip_id, changes)
    if body.status == TripStatus.PUBLISHED.value:
        trip = await machine.publish(actor, trip_id)
    elif body.status == TripStatus.CANCELED.value:
        trip = await machine.cancel(actor, trip_id)
    return trip or await machine.get_for_driver(actor, trip_id)


@router.post(
    "/trips/{trip_id}/start", response_model=TripResponse, summary="Start a trip"
)
@limiter.limit(settings.rate_limit)
async def start_trip(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    return await TripStateMachine(db).start(actor, trip_id)


@router.post(
    "/trips/{trip_id}/complete",
    response_model=TripResponse,
    summary="Complete a trip and open the payment window",
)
@limiter.limit(settings.rate_limit)
async def complete_trip(
    request: Request,
    trip_id: int,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    return await TripStateMachine(db).complete(actor, trip_id)


@router.get(
    "/trips/{trip_id}/bookings",
    response_model=list[BookingResponse],
    summary="List bookings on my trip",
)
@limiter.limit(settings.rate_limit)
async def trip_bookings(
    request: Request,
    trip_id: int,
    status: Optional[list[BookingStatus]] = Query(None),
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    bookings = await BookingStateMachine(db).list_for_trip(actor, trip_id, status)
    trip = await load_trip(db, trip_id)
    return [BookingResponse.build(b, trip) for b in bookings]


@router.post(
    "/trips/{trip_id}/bookings/{booking_id}/accept",
    response_model=BookingResponse,
    summary="Accept a pending booking",
    description="Reserves the booking's seats; fails with 409 when they no longer fit.",
)
@limiter.limit(settings.rate_limit)
async def accept_booking(
    request: Request,
    trip_id: int,
    booking_id: int,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingStateMachine(db).accept(actor, booking_id, trip_id)
    return BookingResponse.build(booking, await load_trip(db, trip_id))


@router.post(
    "/trips/{trip_id}/bookings/{booking_id}/decline",
    response_model=BookingResponse,
    summary="Decline a pending booking",
)
@limiter.limit(settings.rate_limit)
async def decline_booking(
    request: Request,
    trip_id: int,
    booking_id: int,
    body: Optional[ReasonRequest] = None,
    actor: Actor = Depends(driver_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingStateMachine(db).decline(
        actor, booking_id, trip_id, reason=body.reason if body else None
    )
    return BookingResponse.build(booking, await load_trip(db, trip_id))
