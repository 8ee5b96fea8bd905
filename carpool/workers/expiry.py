"""
Background Expiry Worker
========================

Runs every ``EXPIRY_INTERVAL_SECONDS`` (default 60 s).

Pending bookings whose trip departs within ``BOOKING_EXPIRY_MINUTES`` (or has
already departed) are moved to ``expired``.  Expiry never touches the seat
ledger: a pending booking holds no seats.

Concurrency safety
------------------
* **Redis distributed lock** ensures only one API process sweeps per cycle.
* Each booking moves with a ``status = 'pending'`` compare-and-set, so a
  driver accepting at the same moment either wins (booking stays accepted)
  or loses cleanly with ``BookingNotPending``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from carpool.config import settings
from carpool.infrastructure.database import async_session_factory
from carpool.infrastructure.events import EventSink, RedisEventSink, dispatch_pending
from carpool.infrastructure.locks import DistributedLock
from carpool.infrastructure.redis_client import get_redis
from carpool.services.bookings import BookingStateMachine

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


# ── Public API ────────────────────────────────────────────────────────


async def start_expiry_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Expiry worker started (interval=%ds)", settings.expiry_interval_seconds
    )


async def stop_expiry_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Expiry worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run an expiry cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_expiry_cycle()
        except Exception:
            logger.exception("Unhandled error in expiry cycle")
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.expiry_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass


async def run_expiry_cycle(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    sink: Optional[EventSink] = None,
) -> int:
    """Execute one sweep.  Returns the number of bookings expired."""
    redis = await get_redis()
    lock = DistributedLock(redis, "booking_expiry", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0

    expired = 0
    try:
        async with session_factory() as session:
            expired = await BookingStateMachine(session).expire_overdue()
            await session.commit()
            await dispatch_pending(
                session, sink or RedisEventSink(redis, settings.event_channel)
            )
    except Exception:
        logger.exception("Error in expiry cycle")
        expired = 0
    finally:
        await lock.release()

    return expired
