"""
Tests for the background workers and health checks.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings
from core.commands import PlaceOrder
from core.exceptions import GatewayUnavailable
from core.reconciliation import ReconciliationEngine
from core.state import CONFIRMED, FAILED, PENDING
from database.models import Order, OutboxEvent
from monitoring.health import HealthCheck, HealthCheckError
from workers.reconciliation_worker import run_gateway_sync


def _later() -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=1)


class TestGatewaySync:
    """Sweep over stale pending orders."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recovers_missed_capture(
        self,
        engine: ReconciliationEngine,
        place_order_command: PlaceOrder,
        session_factory: async_sessionmaker[AsyncSession],
        test_db: AsyncSession,
        test_settings: Settings,
        capture_payment: Callable[..., Dict[str, Any]],
    ) -> None:
        paid = await engine.place_order(place_order_command, test_db)
        unpaid = await engine.place_order(place_order_command, test_db)
        capture_payment(paid.gateway_order_id, "pay_missed")

        summary = await run_gateway_sync(engine, session_factory, test_settings, now=_later())

        assert summary == {"checked": 2, "recovered": 1, "errors": 0}
        async with session_factory() as db:
            orders = {o.id: o for o in (await db.execute(select(Order))).scalars().all()}
        assert orders[paid.id].state == CONFIRMED
        assert orders[paid.id].gateway_payment_id == "pay_missed"
        assert orders[unpaid.id].state == PENDING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_orders_left_alone(
        self,
        engine: ReconciliationEngine,
        gateway: AsyncMock,
        place_order_command: PlaceOrder,
        session_factory: async_sessionmaker[AsyncSession],
        test_db: AsyncSession,
        test_settings: Settings,
    ) -> None:
        await engine.place_order(place_order_command, test_db)

        summary = await run_gateway_sync(engine, session_factory, test_settings)

        assert summary["checked"] == 0
        gateway.fetch_order_payments.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recovers_capture_after_declined_attempt(
        self,
        engine: ReconciliationEngine,
        place_order_command: PlaceOrder,
        session_factory: async_sessionmaker[AsyncSession],
        test_db: AsyncSession,
        test_settings: Settings,
        capture_payment: Callable[..., Dict[str, Any]],
    ) -> None:
        order = await engine.place_order(place_order_command, test_db)
        failed = await engine.apply_payment_failed(
            capture_payment(order.gateway_order_id, "pay_declined", status="failed"), test_db
        )
        assert failed.order.state == FAILED
        capture_payment(order.gateway_order_id, "pay_retry")

        summary = await run_gateway_sync(engine, session_factory, test_settings, now=_later())

        assert summary == {"checked": 1, "recovered": 1, "errors": 0}
        async with session_factory() as db:
            recovered = await db.get(Order, order.id)
        assert recovered.state == CONFIRMED
        assert recovered.gateway_payment_id == "pay_retry"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_errors_counted(
        self,
        engine: ReconciliationEngine,
        gateway: AsyncMock,
        place_order_command: PlaceOrder,
        session_factory: async_sessionmaker[AsyncSession],
        test_db: AsyncSession,
        test_settings: Settings,
    ) -> None:
        await engine.place_order(place_order_command, test_db)
        gateway.fetch_order_payments.side_effect = GatewayUnavailable("down")

        summary = await run_gateway_sync(engine, session_factory, test_settings, now=_later())

        assert summary == {"checked": 1, "recovered": 0, "errors": 1}


class TestHealthCheck:
    """Dependency checks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_healthy(
        self, gateway: AsyncMock, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        gateway.circuit_breaker = MagicMock(state="closed")
        health = HealthCheck(gateway, session_factory=session_factory)

        result = await health.check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert result["checks"]["gateway"]["circuit_breaker"] == "closed"
        gateway.ping.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_down(
        self, gateway: AsyncMock, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        gateway.ping.side_effect = GatewayUnavailable("timed out")
        health = HealthCheck(gateway, session_factory=session_factory)

        result = await health.readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert "timed out" in result["checks"]["gateway"]["error"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_not_configured(
        self, session_factory: async_sessionmaker[AsyncSession]
    ) -> None:
        health = HealthCheck(session_factory=session_factory)

        with pytest.raises(HealthCheckError):
            await health.check_gateway()
        assert (await health.liveness())["status"] == "alive"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_outbox_backlog_reported(
        self,
        gateway: AsyncMock,
        session_factory: async_sessionmaker[AsyncSession],
        test_settings: Settings,
    ) -> None:
        gateway.circuit_breaker = MagicMock(state="closed")
        order_id = uuid.uuid4()
        async with session_factory() as db:
            for attempts in (0, 1, test_settings.outbox_max_attempts):
                db.add(
                    OutboxEvent(
                        aggregate_id=order_id,
                        aggregate_type="order",
                        event_type="notification.payment_success",
                        payload={},
                        attempts=attempts,
                    )
                )
            await db.commit()
        health = HealthCheck(gateway, session_factory=session_factory)

        result = await health.check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["outbox"]["pending"] == 2
        assert result["checks"]["outbox"]["abandoned"] == 1
        assert result["checks"]["outbox"]["status"] == "degraded"
