"""FastAPI dependency injection helpers."""

from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.api.security import decode_actor
from carpool.config import settings
from carpool.domain.entities import Actor
from carpool.domain.enums import Role
from carpool.domain.errors import Forbidden, Unauthenticated
from carpool.infrastructure.database import async_session_factory
from carpool.infrastructure.events import (
    EventSink,
    RedisEventSink,
    discard_pending,
    dispatch_pending,
)
from carpool.infrastructure.payments import PaymentProcessor, StripePaymentProcessor
from carpool.infrastructure.redis_client import get_redis

bearer_scheme = HTTPBearer(auto_error=False)


async def get_event_sink() -> EventSink:
    return RedisEventSink(await get_redis(), settings.event_channel)


def get_payment_processor() -> PaymentProcessor:
    return StripePaymentProcessor(settings.stripe_api_key, settings.stripe_webhook_secret)


async def get_db(
    sink: EventSink = Depends(get_event_sink),
) -> AsyncIterator[AsyncSession]:
    """Yield an async DB session; commit on success, rollback on error.

    Transition events recorded during the request are published only once
    the commit went through.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            discard_pending(session)
            raise
        await dispatch_pending(session, sink)


def get_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or not credentials.credentials:
        raise Unauthenticated("Missing authentication token")
    return decode_actor(credentials.credentials)


def require_role(*roles: Role):
    allowed = set(roles)

    def role_checker(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in allowed:
            raise Forbidden()
        return actor

    return role_checker
