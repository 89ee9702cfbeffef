"""
Transactional outbox publisher.

Order notifications are written to the outbox in the same database
transaction as the status change that causes them, then delivered here.
Delivery is at-least-once; the order update is a full overwrite, so a
repeated delivery is harmless.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront_payments.database.connection import get_session_factory
from storefront_payments.database.models import OutboxEvent, utcnow
from storefront_payments.integrations.order_client import OrderServiceError
from storefront_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[None]]


class OutboxPublisher:
    """
    Delivers outbox events to the order service.

    1. Read unpublished events, oldest first
    2. Deliver each one
    3. Mark delivered events published; bump attempts on the rest
    """

    def __init__(
        self,
        publisher_func: PublisherFunc,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine that delivers one event
            session_factory: Optional session factory (defaults to the app engine)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval
        """
        self.publisher_func = publisher_func
        self.session_factory = session_factory or get_session_factory()
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=batch_size,
            poll_interval=poll_interval_seconds,
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        """
        Fetch unpublished events from outbox.

        Args:
            db: Database session

        Returns:
            List[OutboxEvent]: Unpublished events
        """
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published.is_(False))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Args:
            event: Outbox event to publish

        Returns:
            bool: True if published successfully, False otherwise
        """
        event_data = {
            "id": event.id,
            "aggregate_id": event.aggregate_id,
            "aggregate_type": event.aggregate_type,
            "event_type": event.event_type,
            "payload": event.payload,
            "created_at": event.created_at.isoformat(),
        }

        try:
            await self.publisher_func(event_data)
        except (OrderServiceError, httpx.HTTPError) as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                attempts=event.attempts + 1,
                error=str(e),
            )
            return False

        metrics.record_outbox_event_published(event.event_type)
        logger.info(
            "outbox_event_published",
            event_id=event.id,
            event_type=event.event_type,
            aggregate_id=event.aggregate_id,
        )
        return True

    async def _mark_results(
        self, db: AsyncSession, published_ids: List[int], failed_ids: List[int]
    ) -> None:
        """
        Mark delivered events published and count failed attempts.

        Args:
            db: Database session
            published_ids: Delivered event IDs
            failed_ids: Undelivered event IDs
        """
        if published_ids:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id.in_(published_ids))
                .values(
                    published=True,
                    published_at=utcnow(),
                    attempts=OutboxEvent.attempts + 1,
                )
            )
        if failed_ids:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id.in_(failed_ids))
                .values(attempts=OutboxEvent.attempts + 1)
            )
        await db.commit()

        logger.info(
            "outbox_events_marked",
            published=len(published_ids),
            failed=len(failed_ids),
        )

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
                # Release the read transaction before any network call
                await db.commit()

                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids: List[int] = []
                failed_ids: List[int] = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)
                    else:
                        failed_ids.append(event.id)

                await self._mark_results(db, published_ids, failed_ids)

                metrics.record_outbox_batch(time.time() - start_time)
                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(failed_ids),
                )
                return len(published_ids)

            except SQLAlchemyError as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the outbox publisher background worker.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())
                except SQLAlchemyError as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    published_count = 0

                if published_count == 0:
                    await asyncio.sleep(self.poll_interval_seconds)
                else:
                    # Events were processed, check immediately for more
                    await asyncio.sleep(0.1)
        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Get count of pending unpublished events.

        Returns:
            int: Number of unpublished events
        """
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published.is_(False))
            )
            return int(result.scalar_one())
