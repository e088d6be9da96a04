"""Domain events for the notification dispatcher.

Events are written to the ``domain_events`` outbox inside the business
transaction, so they exist if and only if the change committed. After
commit, ``EventRelay`` pushes unpublished rows to a Redis stream (XADD)
and stamps ``published_at``.
"""

import json
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from arena_economy.logging_config import get_logger
from arena_economy.models.audit import DomainEvent
from arena_economy.utils.timeutil import utcnow

logger = get_logger(__name__)


class EventRecorder:
    """Writes outbox rows in the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        event_type: str,
        *,
        aggregate_id: str,
        recipient_ids: list[str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> DomainEvent:
        event = DomainEvent(
            event_type=event_type,
            aggregate_id=aggregate_id,
            recipient_ids=list(recipient_ids or []),
            payload=payload or {},
        )
        self.session.add(event)
        await self.session.flush()

        logger.debug(
            "domain_event_recorded",
            event_id=event.id,
            event_type=event_type,
            aggregate_id=aggregate_id,
            recipients=len(event.recipient_ids),
        )
        return event


class EventRelay:
    """Publishes committed outbox rows to a Redis stream."""

    BATCH_SIZE = 100

    def __init__(
        self,
        redis_client: Redis,
        stream_key: str = "economy:events",
        max_len: int = 100_000,
    ):
        self.redis = redis_client
        self.stream_key = stream_key
        self.max_len = max_len

    async def publish_pending(self, session: AsyncSession) -> int:
        """Publish unpublished events, oldest first.

        Flushes ``published_at`` stamps; the caller commits.

        Returns:
            Number of events published
        """
        result = await session.execute(
            select(DomainEvent)
            .where(DomainEvent.published_at.is_(None))
            .order_by(DomainEvent.created_at, DomainEvent.id)
            .limit(self.BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        events = list(result.scalars().all())
        if not events:
            return 0

        async with self.redis.pipeline(transaction=False) as pipe:
            for event in events:
                pipe.xadd(
                    self.stream_key,
                    self._to_fields(event),
                    maxlen=self.max_len,
                    approximate=True,
                )
            await pipe.execute()

        published_at = utcnow()
        for event in events:
            event.published_at = published_at
        await session.flush()

        logger.info("domain_events_published", count=len(events), stream=self.stream_key)
        return len(events)

    @staticmethod
    def _to_fields(event: DomainEvent) -> dict[str, str]:
        return {
            "event_id": event.id,
            "event_type": event.event_type,
            "aggregate_id": event.aggregate_id,
            "recipients": json.dumps(event.recipient_ids),
            "payload": json.dumps(event.payload),
            "created_at": event.created_at.isoformat(),
        }
