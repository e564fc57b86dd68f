"""
Transactional outbox for subscription and payment events.

Events are added to the session that changes the subscription, so they
commit or roll back together. A worker later pushes them to a Redis stream.
"""
import asyncio
import json
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from database.connection import get_session_factory
from database.models import OutboxEvent, utcnow
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EVENT_STREAM = "subscription_events"


def record_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
) -> OutboxEvent:
    """Add an outbox event to the caller's transaction (no flush, no commit)."""
    event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        payload=payload,
    )
    db.add(event)
    return event


class RedisStreamPublisher:
    """Publishes event dicts to a Redis stream with XADD."""

    def __init__(
        self, redis_client: Optional[aioredis.Redis] = None, stream: str = EVENT_STREAM
    ) -> None:
        self.redis_client = redis_client
        self.stream = stream

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                get_settings().redis_url, decode_responses=True
            )
        await self.redis_client.xadd(
            self.stream,
            {
                "event_type": event_data["event_type"],
                "aggregate_id": event_data["aggregate_id"],
                "data": json.dumps(event_data, ensure_ascii=False, default=str),
            },
        )

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()


class OutboxPublisher:
    """
    Polls unpublished outbox rows and hands them to a publisher function.

    A row is marked published only after the publisher accepted it, so a
    crash between the two re-sends the event (at-least-once).
    """

    def __init__(
        self,
        publisher_func: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine receiving one event dict
            batch_size: Number of events to process per batch
            poll_interval_seconds: Sleep between empty polls
            session_factory: Optional session factory (defaults to the app's)
        """
        self.publisher_func = publisher_func or RedisStreamPublisher()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.session_factory = session_factory
        self._running = False

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    @staticmethod
    def _serialize(event: OutboxEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }

    async def process_batch(self) -> int:
        """
        Publish one batch of events.

        Returns:
            int: Number of events published
        """
        async with self._sessions()() as db:
            result = await db.execute(
                select(OutboxEvent)
                .where(OutboxEvent.published == False)  # noqa: E712
                .order_by(OutboxEvent.id)
                .limit(self.batch_size)
            )
            events: List[OutboxEvent] = list(result.scalars().all())
            if not events:
                return 0

            published_ids = []
            for event in events:
                try:
                    await self.publisher_func(self._serialize(event))
                except Exception as e:
                    logger.error(
                        "outbox_event_publish_failed",
                        event_id=event.id,
                        event_type=event.event_type,
                        error=str(e),
                    )
                    # Keep ordering per stream: stop at the first failure
                    break
                published_ids.append(event.id)
                metrics.record_outbox_event_published(event.event_type)

            if published_ids:
                await db.execute(
                    update(OutboxEvent)
                    .where(OutboxEvent.id.in_(published_ids))
                    .values(published=True, published_at=utcnow())
                )
                await db.commit()

            logger.info(
                "outbox_batch_processed",
                total=len(events),
                published=len(published_ids),
            )
            return len(published_ids)

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._sessions()() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published == False  # noqa: E712
                )
            )
            return int(result.scalar() or 0)

    async def start(self) -> None:
        """Poll and publish until ``stop`` is called."""
        self._running = True
        logger.info(
            "outbox_publisher_started",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                # Drain quickly while there is backlog
                await asyncio.sleep(0.1 if published_count else self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")
