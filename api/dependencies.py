"""
Service accessors for route handlers.

The gateway client, reconciliation engine, webhook handler and health check
are built once in the application lifespan and stored on app.state.
"""
from fastapi import HTTPException, Request, status

from core.reconciliation import ReconciliationEngine
from integrations.razorpay_client import RazorpayClient
from integrations.webhook_handler import WebhookHandler
from monitoring.health import HealthCheck


def _service(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def get_gateway(request: Request) -> RazorpayClient:
    return _service(request, "gateway", "Payment gateway")


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    return _service(request, "engine", "Reconciliation engine")


def get_webhook_handler(request: Request) -> WebhookHandler:
    return _service(request, "webhook_handler", "Webhook handler")


def get_health_check(request: Request) -> HealthCheck:
    return _service(request, "health_check", "Health check")
