"""
Passenger endpoints
===================

POST /api/v1/passengers/bookings                    -- request seats (pending)
GET  /api/v1/passengers/bookings                    -- my bookings
GET  /api/v1/passengers/bookings/{booking_id}       -- one of my bookings
POST /api/v1/passengers/bookings/{booking_id}/cancel
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.dependencies import get_db, require_role
from carpool.api.middleware import limiter
from carpool.api.schemas import (
    BookingCreateRequest,
    BookingPage,
    BookingResponse,
    ReasonRequest,
)
from carpool.config import settings
from carpool.domain.entities import Actor
from carpool.domain.enums import BookingStatus, Role
from carpool.services.bookings import BookingStateMachine
from carpool.services.guards import load_trip

router = APIRouter(prefix="/passengers", tags=["passengers"])

passenger_only = require_role(Role.PASSENGER)


@router.post(
    "/bookings",
    status_code=201,
    response_model=BookingResponse,
    summary="Request seats on a published trip",
    description="Creates a pending booking; seats are only reserved on accept.",
)
@limiter.limit(settings.rate_limit)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingStateMachine(db).create(
        actor, body.trip_id, body.seats, body.note
    )
    return BookingResponse.build(booking, await load_trip(db, booking.trip_id))


@router.get("/bookings", response_model=BookingPage, summary="List my bookings")
@limiter.limit(settings.rate_limit)
async def my_bookings(
    request: Request,
    status: Optional[list[BookingStatus]] = Query(None),
    from_date: Optional[datetime] = Query(None, description="Requested at or after"),
    to_date: Optional[datetime] = Query(None, description="Requested at or before"),
    page: int = Query(1, ge=1),
    page_size: int = Query(25, ge=1, le=100),
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    items, total = await BookingStateMachine(db).list_for_passenger(
        actor, status, from_date, to_date, page, page_size
    )
    return BookingPage(
        items=[BookingResponse.build(b, await load_trip(db, b.trip_id)) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/bookings/{booking_id}", response_model=BookingResponse, summary="Get my booking"
)
@limiter.limit(settings.rate_limit)
async def get_booking(
    request: Request,
    booking_id: int,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingStateMachine(db).get_for_passenger(actor, booking_id)
    return BookingResponse.build(booking, await load_trip(db, booking.trip_id))


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel my booking",
    description=(
        "Allowed while the booking is pending or accepted and the trip has not "
        "started.  Cancelling an accepted booking frees its seats."
    ),
)
@limiter.limit(settings.rate_limit)
async def cancel_booking(
    request: Request,
    booking_id: int,
    body: Optional[ReasonRequest] = None,
    actor: Actor = Depends(passenger_only),
    db: AsyncSession = Depends(get_db),
):
    booking = await BookingStateMachine(db).cancel(
        actor, booking_id, reason=body.reason if body else None
    )
    return BookingResponse.build(booking, await load_trip(db, booking.trip_id))
