"""
Transition events for the notification / audit sink.

State machines call ``record_event`` while they work; the events wait in
``session.info`` and are handed to the sink by ``dispatch_pending`` only after
the unit of work commits.  Publishing is fire-and-forget: a failing sink is
logged and never rolls back or fails the request.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession

from carpool.domain.entities import utcnow

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_events"


@dataclass(frozen=True)
class TransitionEvent:
    entity_type: str
    entity_id: int
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    actor_id: Optional[int] = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)

    def to_json(self) -> str:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        return json.dumps(data, default=str)


def record_event(session: AsyncSession, event: TransitionEvent) -> None:
    session.info.setdefault(_PENDING_KEY, []).append(event)


def discard_pending(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)


# ── Sinks ─────────────────────────────────────────────────────────────


class EventSink(ABC):
    @abstractmethod
    async def publish(self, event: TransitionEvent) -> None: ...


class RedisEventSink(EventSink):
    """Publishes each event as JSON on a Redis pub/sub channel."""

    def __init__(self, client: aioredis.Redis, channel: str):
        self.redis = client
        self.channel = channel

    async def publish(self, event: TransitionEvent) -> None:
        await self.redis.publish(self.channel, event.to_json())


async def dispatch_pending(session: AsyncSession, sink: EventSink) -> int:
    """Publish and clear the session's committed events. Returns the count sent."""
    events: list[TransitionEvent] = session.info.pop(_PENDING_KEY, [])
    sent = 0
    for event in events:
        try:
            await sink.publish(event)
            sent += 1
        except Exception:
            logger.exception(
                "Failed to publish %s for %s#%s",
                event.action,
                event.entity_type,
                event.entity_id,
            )
    return sent
