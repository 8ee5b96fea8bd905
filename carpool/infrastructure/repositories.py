"""
Repository Pattern -- abstracts DB access so lifecycle logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work) and exposes
domain-relevant queries only.  Status changes that can race are expressed as
conditional UPDATEs (compare-and-set) returning whether a row was changed.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import Select, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AdminActionModel,
    BookingModel,
    TransactionModel,
    TripModel,
    UserModel,
)
from carpool.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    Role,
    TransactionStatus,
    TripStatus,
)


async def _paginate(
    session: AsyncSession, query: Select, page: int, page_size: int
) -> tuple[list[Any], int]:
    total = await session.scalar(
        select(func.count()).select_from(query.order_by(None).subquery())
    )
    result = await session.execute(
        query.offset((page - 1) * page_size).limit(page_size)
    )
    return list(result.scalars().all()), total or 0


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[UserModel]:
        return await self.session.get(UserModel, user_id)

    async def search(
        self,
        *,
        role: Optional[Role] = None,
        suspended: Optional[bool] = None,
        term: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[UserModel], int]:
        query = select(UserModel)
        if role is not None:
            query = query.where(UserModel.role == role)
        if suspended is not None:
            query = query.where(UserModel.is_suspended == suspended)
        if term:
            pattern = f"%{term.strip()}%"
            query = query.where(
                or_(UserModel.name.ilike(pattern), UserModel.email.ilike(pattern))
            )
        if created_from is not None:
            query = query.where(UserModel.created_at >= created_from)
        if created_to is not None:
            query = query.where(UserModel.created_at <= created_to)
        query = query.order_by(UserModel.id)
        return await _paginate(self.session, query, page, page_size)


class TripRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, trip: TripModel) -> TripModel:
        self.session.add(trip)
        await self.session.flush()
        return trip

    async def get_by_id(self, trip_id: int) -> Optional[TripModel]:
        return await self.session.get(TripModel, trip_id)

    async def get_for_update(self, trip_id: int) -> Optional[TripModel]:
        """SELECT ... FOR UPDATE: the per-trip critical section."""
        result = await self.session.execute(
            select(TripModel)
            .where(TripModel.id == trip_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set_status(
        self, trip_id: int, expected: Iterable[TripStatus], target: TripStatus
    ) -> bool:
        result = await self.session.execute(
            update(TripModel)
            .where(TripModel.id == trip_id, TripModel.status.in_(list(expected)))
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reserve_seats(self, trip_id: int, seats: int) -> bool:
        """Atomically allocate *seats* only if enough remain."""
        result = await self.session.execute(
            update(TripModel)
            .where(
                TripModel.id == trip_id,
                TripModel.total_seats - TripModel.allocated_seats >= seats,
            )
            .values(allocated_seats=TripModel.allocated_seats + seats)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_seats(self, trip_id: int, seats: int) -> bool:
        result = await self.session.execute(
            update(TripModel)
            .where(TripModel.id == trip_id, TripModel.allocated_seats >= seats)
            .values(allocated_seats=TripModel.allocated_seats - seats)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def sum_accepted_seats(self, trip_id: int) -> int:
        result = await self.session.scalar(
            select(func.coalesce(func.sum(BookingModel.seats), 0)).where(
                BookingModel.trip_id == trip_id,
                BookingModel.status == BookingStatus.ACCEPTED,
            )
        )
        return int(result or 0)

    async def list_for_driver(
        self,
        driver_id: int,
        statuses: Optional[list[TripStatus]] = None,
        departure_from: Optional[datetime] = None,
        departure_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[TripModel], int]:
        query = select(TripModel).where(TripModel.driver_id == driver_id)
        if statuses:
            query = query.where(TripModel.status.in_(statuses))
        if departure_from is not None:
            query = query.where(TripModel.departure_at >= departure_from)
        if departure_to is not None:
            query = query.where(TripModel.departure_at <= departure_to)
        query = query.order_by(TripModel.departure_at.desc(), TripModel.id.desc())
        return await _paginate(self.session, query, page, page_size)

    async def search(
        self,
        *,
        statuses: Optional[list[TripStatus]] = None,
        driver_id: Optional[int] = None,
        departure_from: Optional[datetime] = None,
        departure_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[TripModel], int]:
        query = select(TripModel)
        if statuses:
            query = query.where(TripModel.status.in_(statuses))
        if driver_id is not None:
            query = query.where(TripModel.driver_id == driver_id)
        if departure_from is not None:
            query = query.where(TripModel.departure_at >= departure_from)
        if departure_to is not None:
            query = query.where(TripModel.departure_at <= departure_to)
        query = query.order_by(TripModel.id.desc())
        return await _paginate(self.session, query, page, page_size)


class BookingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, booking: BookingModel) -> BookingModel:
        self.session.add(booking)
        await self.session.flush()
        return booking

    async def get_by_id(self, booking_id: int) -> Optional[BookingModel]:
        return await self.session.get(BookingModel, booking_id)

    async def get_fresh(self, booking_id: int) -> Optional[BookingModel]:
        """Re-read the row, overwriting whatever the identity map holds."""
        result = await self.session.execute(
            select(BookingModel)
            .where(BookingModel.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def compare_and_set_status(
        self,
        booking_id: int,
        expected: Iterable[BookingStatus],
        target: BookingStatus,
    ) -> bool:
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status.in_(list(expected)),
            )
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def complete_payment(
        self, booking_id: int, method: PaymentMethod
    ) -> bool:
        """Mark paid only while the booking is still accepted and unpaid."""
        result = await self.session.execute(
            update(BookingModel)
            .where(
                BookingModel.id == booking_id,
                BookingModel.status == BookingStatus.ACCEPTED,
                BookingModel.payment_status != PaymentStatus.COMPLETED,
            )
            .values(payment_status=PaymentStatus.COMPLETED, payment_method=method)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def open_payment_window(self, trip_id: int) -> list[int]:
        """Flag every accepted, unpaid booking on the trip as payment due."""
        result = await self.session.execute(
            select(BookingModel.id).where(
                BookingModel.trip_id == trip_id,
                BookingModel.status == BookingStatus.ACCEPTED,
                BookingModel.payment_status == PaymentStatus.NONE,
            )
        )
        ids = list(result.scalars().all())
        if ids:
            await self.session.execute(
                update(BookingModel)
                .where(BookingModel.id.in_(ids))
                .values(payment_status=PaymentStatus.PENDING)
                .execution_options(synchronize_session="fetch")
            )
        return ids

    async def list_for_trip(
        self, trip_id: int, statuses: Optional[list[BookingStatus]] = None
    ) -> list[BookingModel]:
        query = select(BookingModel).where(BookingModel.trip_id == trip_id)
        if statuses:
            query = query.where(BookingModel.status.in_(statuses))
        result = await self.session.execute(
            query.order_by(BookingModel.created_at, BookingModel.id).execution_options(
                populate_existing=True
            )
        )
        return list(result.scalars().all())

    async def list_for_passenger(
        self,
        passenger_id: int,
        statuses: Optional[list[BookingStatus]] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[BookingModel], int]:
        query = select(BookingModel).where(BookingModel.passenger_id == passenger_id)
        if statuses:
            query = query.where(BookingModel.status.in_(statuses))
        if created_from is not None:
            query = query.where(BookingModel.created_at >= created_from)
        if created_to is not None:
            query = query.where(BookingModel.created_at <= created_to)
        query = query.order_by(BookingModel.created_at.desc(), BookingModel.id.desc())
        return await _paginate(self.session, query, page, page_size)

    async def search(
        self,
        *,
        trip_id: Optional[int] = None,
        passenger_id: Optional[int] = None,
        statuses: Optional[list[BookingStatus]] = None,
        paid: Optional[bool] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[BookingModel], int]:
        query = select(BookingModel)
        if trip_id is not None:
            query = query.where(BookingModel.trip_id == trip_id)
        if passenger_id is not None:
            query = query.where(BookingModel.passenger_id == passenger_id)
        if statuses:
            query = query.where(BookingModel.status.in_(statuses))
        if paid is True:
            query = query.where(BookingModel.payment_status == PaymentStatus.COMPLETED)
        elif paid is False:
            query = query.where(BookingModel.payment_status != PaymentStatus.COMPLETED)
        query = query.order_by(BookingModel.id.desc())
        return await _paginate(self.session, query, page, page_size)

    async def get_overdue_pending(self, cutoff: datetime) -> list[BookingModel]:
        """Pending bookings whose trip departs at or before *cutoff*."""
        result = await self.session.execute(
            select(BookingModel)
            .join(TripModel, TripModel.id == BookingModel.trip_id)
            .where(
                BookingModel.status == BookingStatus.PENDING,
                TripModel.departure_at <= cutoff,
            )
            .order_by(BookingModel.id)
        )
        return list(result.scalars().all())

    async def pending_payments(self, passenger_id: int) -> list[BookingModel]:
        result = await self.session.execute(
            select(BookingModel)
            .join(TripModel, TripModel.id == BookingModel.trip_id)
            .where(
                BookingModel.passenger_id == passenger_id,
                BookingModel.status == BookingStatus.ACCEPTED,
                BookingModel.payment_status != PaymentStatus.COMPLETED,
                TripModel.status == TripStatus.COMPLETED,
            )
            .order_by(BookingModel.id)
        )
        return list(result.scalars().all())


class TransactionRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, txn: TransactionModel) -> TransactionModel:
        self.session.add(txn)
        await self.session.flush()
        return txn

    async def get_by_intent(self, intent_id: str) -> Optional[TransactionModel]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.payment_intent_id == intent_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_booking(self, booking_id: int) -> list[TransactionModel]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.booking_id == booking_id)
            .order_by(TransactionModel.id)
        )
        return list(result.scalars().all())

    async def get_pending(
        self, booking_id: int, method: PaymentMethod
    ) -> Optional[TransactionModel]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(
                TransactionModel.booking_id == booking_id,
                TransactionModel.method == method,
                TransactionModel.status == TransactionStatus.PENDING,
                TransactionModel.refund_of_id.is_(None),
            )
            .order_by(TransactionModel.id.desc())
        )
        return result.scalars().first()

    async def fail_pending(
        self, booking_id: int, method: Optional[PaymentMethod] = None
    ) -> list[int]:
        """Mark the booking's pending attempts failed, optionally for one *method*.

        Returns the ids that actually moved; rows already settled elsewhere
        are left alone.
        """
        query = select(TransactionModel.id).where(
            TransactionModel.booking_id == booking_id,
            TransactionModel.status == TransactionStatus.PENDING,
            TransactionModel.refund_of_id.is_(None),
        )
        if method is not None:
            query = query.where(TransactionModel.method == method)
        result = await self.session.execute(query.order_by(TransactionModel.id))
        failed = []
        for txn_id in result.scalars().all():
            if await self.compare_and_set_status(
                txn_id, TransactionStatus.PENDING, TransactionStatus.FAILED
            ):
                failed.append(txn_id)
        return failed

    async def get_succeeded_card_payment(
        self, booking_id: int
    ) -> Optional[TransactionModel]:
        result = await self.session.execute(
            select(TransactionModel).where(
                TransactionModel.booking_id == booking_id,
                TransactionModel.method == PaymentMethod.CARD,
                TransactionModel.status == TransactionStatus.SUCCEEDED,
                TransactionModel.refund_of_id.is_(None),
            )
        )
        return result.scalars().first()

    async def refunded_total(self, original_id: int) -> Decimal:
        """Sum of refunds already issued against *original_id* (positive)."""
        result = await self.session.scalar(
            select(func.coalesce(func.sum(TransactionModel.amount), 0)).where(
                TransactionModel.refund_of_id == original_id
            )
        )
        return -Decimal(str(result or 0))

    async def compare_and_set_status(
        self,
        txn_id: int,
        expected: TransactionStatus,
        target: TransactionStatus,
    ) -> bool:
        result = await self.session.execute(
            update(TransactionModel)
            .where(TransactionModel.id == txn_id, TransactionModel.status == expected)
            .values(status=target)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class AdminActionRepository:
    """Append-only audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, action: AdminActionModel) -> AdminActionModel:
        self.session.add(action)
        await self.session.flush()
        return action

    def _filtered(
        self,
        actor_id: Optional[int],
        entity_type: Optional[str],
        created_from: Optional[datetime],
        created_to: Optional[datetime],
    ) -> Select:
        query = select(AdminActionModel)
        if actor_id is not None:
            query = query.where(AdminActionModel.actor_id == actor_id)
        if entity_type:
            query = query.where(AdminActionModel.entity_type == entity_type)
        if created_from is not None:
            query = query.where(AdminActionModel.created_at >= created_from)
        if created_to is not None:
            query = query.where(AdminActionModel.created_at <= created_to)
        return query.order_by(AdminActionModel.id.desc())

    async def search(
        self,
        *,
        actor_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> tuple[list[AdminActionModel], int]:
        query = self._filtered(actor_id, entity_type, created_from, created_to)
        return await _paginate(self.session, query, page, page_size)

    async def all_matching(
        self,
        *,
        actor_id: Optional[int] = None,
        entity_type: Optional[str] = None,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> list[AdminActionModel]:
        query = self._filtered(actor_id, entity_type, created_from, created_to)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_for_entity(
        self, entity_type: str, entity_id: int
    ) -> list[AdminActionModel]:
        result = await self.session.execute(
            select(AdminActionModel)
            .where(
                AdminActionModel.entity_type == entity_type,
                AdminActionModel.entity_id == entity_id,
            )
            .order_by(AdminActionModel.id)
        )
        return list(result.scalars().all())
