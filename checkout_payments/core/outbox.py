"""
Transactional outbox dispatch.

Events are written to the database in the same transaction as the order
change, then handed to the completion dispatcher by a worker or by a
single batch kicked after the API commits.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout_payments.core.clock import utcnow
from checkout_payments.database.models import OutboxEvent
from checkout_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, str]]]


class OutboxDispatcher:
    """
    Delivers outbox events to a handler.

    A handler that returns normally marks the event published, with any
    isolated side-effect failures written to last_error. A handler that
    raises leaves the event for the next poll until max_attempts, after
    which it is parked.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handler: EventHandler,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 5,
    ):
        """
        Initialize outbox dispatcher.

        Args:
            session_factory: Session factory for outbox reads and writes
            handler: Async callable that processes one event
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
            max_attempts: Crashed dispatches allowed before an event is parked
        """
        self.session_factory = session_factory
        self.handler = handler
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.max_attempts = max_attempts
        self._running = False

        logger.info(
            "outbox_dispatcher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
            max_attempts=max_attempts,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(
                OutboxEvent.published == False,  # noqa: E712
                OutboxEvent.attempts < self.max_attempts,
            )
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
            .with_for_update(skip_locked=True)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    def _event_data(event: OutboxEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "aggregate_id": str(event.aggregate_id),
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }

    async def _dispatch_event(self, event: OutboxEvent) -> bool:
        """
        Hand one event to the handler and record the result on the row.

        Returns:
            bool: True if the event is now published
        """
        try:
            failures = await self.handler(self._event_data(event))
        except Exception as e:
            event.attempts = event.attempts + 1
            event.last_error = str(e) or type(e).__name__
            if event.attempts >= self.max_attempts:
                logger.error(
                    "outbox_event_parked",
                    event_id=event.id,
                    event_type=event.event_type,
                    attempts=event.attempts,
                    error=str(e),
                )
            else:
                logger.error(
                    "outbox_event_dispatch_failed",
                    event_id=event.id,
                    attempts=event.attempts,
                    error=str(e),
                )
            return False

        event.published = True
        event.published_at = utcnow()
        event.last_error = (
            "; ".join(f"{name}: {error}" for name, error in sorted(failures.items()))
            if failures
            else None
        )

        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=str(event.aggregate_id),
            side_effect_failures=len(failures),
        )
        return True

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        start_time = time.time()
        async with self.session_factory() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published: Dict[str, int] = {}
                for event in events:
                    if await self._dispatch_event(event):
                        published[event.event_type] = published.get(event.event_type, 0) + 1
                await db.commit()

                total = sum(published.values())
                metrics.record_outbox_batch(published, time.time() - start_time)
                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=total,
                    failed=len(events) - total,
                )
                return total

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the dispatcher loop.

        Continuously polls for unpublished events until stopped.
        """
        self._running = True
        logger.info("outbox_dispatcher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_dispatcher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_dispatcher_stopped")

    def stop(self) -> None:
        """Stop the dispatcher loop."""
        self._running = False
        logger.info("outbox_dispatcher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of events still awaiting dispatch.

        Returns:
            int: Number of unpublished, unparked events
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published == False,  # noqa: E712
                    OutboxEvent.attempts < self.max_attempts,
                )
            )
            return int(result.scalar_one())
