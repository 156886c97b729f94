"""
Notification outbox worker.

Delivers the emails queued by order transitions. Runs as its own process
(``order-outbox-worker``) unless the API is configured to host it.

Usage:
    order-outbox-worker            # poll until SIGINT/SIGTERM
    order-outbox-worker --drain    # deliver everything pending, then exit
"""
import asyncio
import signal
from typing import Any

import structlog

from config import get_settings
from core.notifications import NotificationDispatcher
from core.outbox import OutboxPublisher
from database.connection import close_db
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


def build_outbox_publisher() -> OutboxPublisher:
    """Publisher wired to the email dispatcher with configured batching."""
    settings = get_settings()
    return OutboxPublisher(
        publisher_func=NotificationDispatcher(settings=settings),
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
        max_attempts=settings.outbox_max_attempts,
    )


async def drain_outbox(publisher: OutboxPublisher) -> int:
    """Publish batches until one comes back empty; returns emails delivered."""
    delivered = 0
    while True:
        published = await publisher.process_batch()
        if published == 0:
            break
        delivered += published
    logger.info(
        "outbox_drained",
        delivered=delivered,
        still_pending=await publisher.get_pending_count(),
    )
    return delivered


async def start_outbox_publisher(drain: bool = False) -> None:
    setup_logging()
    publisher = build_outbox_publisher()
    logger.info("outbox_worker_starting", drain=drain)

    def request_stop(sig: int, frame: Any) -> None:
        logger.info("outbox_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        if drain:
            await drain_outbox(publisher)
        else:
            await publisher.start()
    finally:
        await close_db()
        logger.info("outbox_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Notification outbox worker")
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Deliver all pending notifications and exit",
    )
    args = parser.parse_args()
    asyncio.run(start_outbox_publisher(drain=args.drain))


if __name__ == "__main__":
    main()
