"""
Readiness and liveness checks for the reconciliation service.

Readiness needs the order store and the payment gateway. The notification
outbox is reported alongside them but never fails readiness: emails are
allowed to lag behind orders.
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import get_settings
from database.connection import get_session_factory
from database.models import OutboxEvent
from integrations.razorpay_client import RazorpayClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when a required dependency is unavailable."""

    pass


class HealthCheck:
    """
    Probes the dependencies the order flows cannot run without.

    Args:
        gateway: Gateway client to probe; the gateway check fails when None
        session_factory: Session factory (defaults to the app's)
    """

    def __init__(
        self,
        gateway: Optional[RazorpayClient] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ) -> None:
        self.settings = get_settings()
        self.gateway = gateway
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    async def check_database(self) -> Dict[str, Any]:
        try:
            async with self.session_factory() as db:
                (await db.execute(text("SELECT 1"))).scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Order store unreachable: {e}") from e

        return {"status": "healthy", "service": "database"}

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Ping the gateway API with the configured credentials.

        The circuit breaker state is included so an open breaker is visible
        before the next checkout fails.
        """
        if self.gateway is None:
            raise HealthCheckError("Gateway client not configured")
        try:
            await self.gateway.ping()
        except Exception as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Payment gateway unreachable: {e}") from e

        return {
            "status": "healthy",
            "service": "gateway",
            "test_mode": self.settings.is_test_mode,
            "circuit_breaker": self.gateway.circuit_breaker.state,
        }

    async def check_outbox(self) -> Dict[str, Any]:
        """Count notifications waiting for delivery and those abandoned."""
        max_attempts = self.settings.outbox_max_attempts
        async with self.session_factory() as db:
            pending = await db.scalar(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.attempts < max_attempts,
                )
            )
            abandoned = await db.scalar(
                select(func.count(OutboxEvent.id)).where(
                    OutboxEvent.published.is_(False),
                    OutboxEvent.attempts >= max_attempts,
                )
            )

        return {
            "status": "degraded" if abandoned else "healthy",
            "service": "outbox",
            "pending": pending or 0,
            "abandoned": abandoned or 0,
        }

    async def check_all(self) -> Dict[str, Any]:
        required: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "gateway": self.check_gateway,
        }
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in required.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        if checks["database"]["status"] == "healthy":
            checks["outbox"] = await self.check_outbox()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """The process is up; dependencies are not consulted."""
        return {"status": "alive", "service": self.settings.app_name}

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
