"""
Transactional outbox for customer notifications.

Order transitions insert an ``OutboxEvent`` in the same transaction as the
order update. This module delivers those rows afterwards. A failed delivery
leaves the row unpublished with its error recorded; it never rolls back the
transition that queued it. After ``max_attempts`` failures a row is
abandoned and stays in the table for manual follow-up.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.connection import get_session_factory
from database.models import OutboxEvent
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Deliver = Callable[[Dict[str, Any]], Awaitable[None]]


def _event_data(event: OutboxEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "aggregate_id": str(event.aggregate_id),
        "aggregate_type": event.aggregate_type,
        "event_type": event.event_type,
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


def _order_number(event: OutboxEvent) -> Optional[str]:
    order = (event.payload or {}).get("order") or {}
    return order.get("order_number")


class OutboxPublisher:
    """
    Polls the outbox and hands each pending event to ``publisher_func``.

    Args:
        publisher_func: Coroutine delivering one event; raising marks the
            attempt as failed
        batch_size: Events read per poll, oldest first
        poll_interval_seconds: Sleep when a poll finds nothing to deliver
        max_attempts: Failed deliveries before an event is abandoned
        session_factory: Session factory (defaults to the app's)
    """

    def __init__(
        self,
        publisher_func: Deliver,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 5,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.publisher_func = publisher_func
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._session_factory = session_factory
        self._running = False

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def _deliverable(self) -> Any:
        return (
            OutboxEvent.published == False,  # noqa: E712
            OutboxEvent.attempts < self.max_attempts,
        )

    async def _fetch_pending(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(*self._deliverable())
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _deliver(self, event: OutboxEvent) -> Optional[str]:
        """Deliver one event. Returns None on success, otherwise the error text."""
        log = logger.bind(
            event_id=event.id,
            event_type=event.event_type,
            order_id=str(event.aggregate_id),
            order_number=_order_number(event),
        )
        start_time = time.time()
        try:
            await self.publisher_func(_event_data(event))
        except Exception as e:
            attempt = event.attempts + 1
            if attempt >= self.max_attempts:
                log.warning("notification_abandoned", attempt=attempt, error=str(e))
            else:
                log.error("notification_delivery_failed", attempt=attempt, error=str(e))
            return str(e) or e.__class__.__name__

        metrics.record_outbox_event_published(event.event_type, time.time() - start_time)
        log.info("notification_delivered")
        return None

    async def _mark_delivered(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(
                published=True,
                published_at=datetime.now(timezone.utc),
                attempts=OutboxEvent.attempts + 1,
            )
        )

    async def _record_failure(self, db: AsyncSession, event_id: int, error: str) -> None:
        await db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .values(attempts=OutboxEvent.attempts + 1, last_error=error[:1000])
        )

    async def process_batch(self) -> int:
        """
        Deliver one batch of pending events.

        Returns:
            int: Number of events delivered
        """
        async with self.session_factory() as db:
            try:
                events = await self._fetch_pending(db)
                if not events:
                    return 0

                delivered: List[int] = []
                for event in events:
                    error = await self._deliver(event)
                    if error is None:
                        delivered.append(event.id)
                    else:
                        await self._record_failure(db, event.id, error)

                await self._mark_delivered(db, delivered)
                await db.commit()

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    delivered=len(delivered),
                    failed=len(events) - len(delivered),
                )
                return len(delivered)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """Poll until ``stop`` is called."""
        self._running = True
        logger.info(
            "outbox_publisher_started",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
            max_attempts=self.max_attempts,
        )

        try:
            while self._running:
                try:
                    delivered = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                    # A full batch usually means more is waiting
                    await asyncio.sleep(0.1 if delivered else self.poll_interval_seconds)
                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Events still eligible for delivery; abandoned ones are not counted."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(*self._deliverable())
            )
            return result.scalar_one()
