"""
Outbox publisher background worker.

Continuously polls the outbox table and delivers order updates to the
order service.
"""
import argparse
import asyncio
import signal
from typing import Optional

import httpx
import structlog

from storefront_payments.config import get_settings
from storefront_payments.core.outbox import OutboxPublisher
from storefront_payments.database.connection import close_db, init_db
from storefront_payments.integrations.order_client import OrderServiceClient
from storefront_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher(batch_size: Optional[int] = None, once: bool = False) -> None:
    """
    Start the outbox publisher worker.

    Runs until SIGINT/SIGTERM, or for a single batch when once is set.

    Args:
        batch_size: Events per batch (defaults to settings.outbox_batch_size)
        once: Process one batch and exit
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting", order_service_url=settings.order_service_url)

    await init_db()

    async with httpx.AsyncClient() as http_client:
        order_client = OrderServiceClient(
            settings.order_service_url,
            timeout_seconds=settings.order_service_timeout_seconds,
            http_client=http_client,
        )
        publisher = OutboxPublisher(
            publisher_func=order_client.publish,
            batch_size=batch_size or settings.outbox_batch_size,
            poll_interval_seconds=settings.outbox_poll_interval_seconds,
        )

        try:
            if once:
                published = await publisher.process_batch()
                logger.info("outbox_publisher_single_batch", published=published)
                return

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, publisher.stop)

            await publisher.start()
        finally:
            await close_db()
            logger.info("outbox_publisher_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Outbox publisher worker")
    parser.add_argument("--batch-size", type=int, default=None, help="Events per batch")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    args = parser.parse_args()

    asyncio.run(start_outbox_publisher(batch_size=args.batch_size, once=args.once))


if __name__ == "__main__":
    main()
