"""
Gateway sync background worker.

Periodically asks the gateway about orders that have been awaiting payment
for a while. An order whose payment was captured but whose client callback
and webhook were both lost is moved to (success, confirmed) through the
same transition a webhook would apply.
"""
import asyncio
import signal
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.exceptions import GatewayUnavailable, NotFound
from core.reconciliation import ReconciliationEngine
from database.connection import close_db, get_session_factory
from database.repository import OrderRepository
from integrations.razorpay_client import RazorpayClient
from monitoring.logging import setup_logging
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


async def run_gateway_sync(
    engine: ReconciliationEngine,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Run one sweep over stale unpaid (pending or failed) orders.

    Args:
        engine: Reconciliation engine
        session_factory: Optional session factory (defaults to the app's)
        settings: Optional settings override
        now: Reference time (defaults to current UTC time)

    Returns:
        Dict[str, int]: Orders checked, recovered and skipped on errors
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    now = now or datetime.now(timezone.utc)

    created_before = now - timedelta(minutes=settings.pending_sync_after_minutes)
    created_after = now - timedelta(hours=settings.pending_sync_window_hours)

    logger.info(
        "gateway_sync_started",
        created_after=created_after.isoformat(),
        created_before=created_before.isoformat(),
    )

    checked = recovered = errors = 0
    async with session_factory() as db:
        orders = await OrderRepository(db).unpaid_between(created_after, created_before)

        for order in orders:
            checked += 1
            order_id = order.id
            try:
                result = await engine.sync_with_gateway(order, db)
            except (GatewayUnavailable, NotFound) as e:
                errors += 1
                logger.warning("gateway_sync_order_failed", order_id=str(order_id), error=str(e))
                continue

            if result.applied:
                recovered += 1
                logger.warning(
                    "gateway_sync_recovered_payment",
                    order_id=str(order_id),
                    payment_id=result.order.gateway_payment_id,
                )

    metrics.record_gateway_sync(recovered)
    summary = {"checked": checked, "recovered": recovered, "errors": errors}
    logger.info("gateway_sync_completed", **summary)
    return summary


async def start_reconciliation_worker(interval_seconds: Optional[int] = None) -> None:
    """
    Start the gateway sync worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to settings)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.pending_sync_interval_seconds

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    gateway = RazorpayClient(settings)
    engine = ReconciliationEngine(gateway, settings)
    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            started = time.time()
            try:
                await run_gateway_sync(engine, settings=settings)
            except Exception as e:
                logger.error("gateway_sync_execution_error", error=str(e))
                # Continue running even if one sweep fails

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval - (time.time() - started)
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step

    finally:
        await gateway.close()
        await close_db()
        logger.info("reconciliation_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Gateway sync worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_reconciliation_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
