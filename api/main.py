"""
Main FastAPI application.

Order placement and payment reconciliation API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import get_settings
from core.exceptions import OrderServiceError
from core.outbox import OutboxPublisher
from core.reconciliation import ReconciliationEngine
from database.connection import close_db, init_db
from integrations.razorpay_client import RazorpayClient
from integrations.webhook_handler import WebhookHandler
from monitoring.health import HealthCheck
from monitoring.logging import setup_logging
from workers.outbox_publisher import build_outbox_publisher

from .routes import (
    admin_router,
    monitoring_router,
    order_router,
    payment_router,
    product_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the gateway client, reconciliation engine and webhook handler
    once and stores them on app.state.
    """
    # Startup
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    # Initialize database
    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    gateway = RazorpayClient(settings)
    engine = ReconciliationEngine(gateway, settings)
    app.state.gateway = gateway
    app.state.engine = engine
    app.state.webhook_handler = WebhookHandler(engine, settings)
    app.state.health_check = HealthCheck(gateway)

    publisher: Optional[OutboxPublisher] = None
    publisher_task: Optional[asyncio.Task] = None
    if settings.outbox_run_in_api:
        publisher = build_outbox_publisher()
        publisher_task = asyncio.create_task(publisher.start())
        logger.info("outbox_publisher_task_started")

    yield

    # Shutdown
    logger.info("application_shutdown")
    if publisher is not None and publisher_task is not None:
        publisher.stop()
        publisher_task.cancel()
        try:
            await publisher_task
        except asyncio.CancelledError:
            pass

    await gateway.close()
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


# Create FastAPI application
app = FastAPI(
    title="Order Reconciliation Service",
    description=(
        "E-commerce order placement with Razorpay payments. Client verification, "
        "gateway webhooks and admin actions are reconciled into one consistent "
        "order state with at-most-once notifications."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Probe and scrape paths are hit every few seconds; their access logs are noise
QUIET_PATHS = frozenset({"/health", "/health/live", "/health/ready", "/metrics"})


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind a request id (and the gateway's event id on webhook deliveries)
    into the log context, and echo the request id back.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()
    quiet = request.url.path in QUIET_PATHS

    context = {"request_id": request_id, "method": request.method, "path": request.url.path}
    gateway_event_id = request.headers.get("X-Razorpay-Event-Id")
    if gateway_event_id:
        context["gateway_event_id"] = gateway_event_id
    structlog.contextvars.bind_contextvars(**context)

    if not quiet:
        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        if not quiet:
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(OrderServiceError)
async def order_service_exception_handler(request: Request, exc: OrderServiceError) -> JSONResponse:
    """Render domain errors as structured JSON with their mapped status."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "order_service_error",
        error=exc.message,
        error_code=exc.error_code,
        status_code=exc.http_status,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Malformed input is a 400 with field-level detail."""
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    logger.info("request_validation_failed", path=request.url.path, errors=len(errors))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "message": "Validation failed",
            "error_code": "validation_error",
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "message": "Internal server error",
        },
    )


# Include routers
app.include_router(payment_router)
app.include_router(order_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(product_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )
