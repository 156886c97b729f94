"""
API routes for order placement, payment reconciliation and administration.
"""
import math
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from core.catalog import CatalogService, ListingStatus, ProductCategory
from core.exceptions import NotFound, SignatureInvalid, ValidationError
from core.pricing import to_minor_units
from core.reconciliation import ReconciliationEngine
from database.connection import get_db
from database.models import Order, Product
from database.repository import OrderFilters, OrderRepository, ProductFilters
from integrations.razorpay_client import RazorpayClient
from integrations.webhook_handler import SIGNATURE_HEADER, WebhookHandler
from monitoring.health import HealthCheck

from .auth import require_admin
from .dependencies import (
    get_gateway,
    get_health_check,
    get_reconciliation_engine,
    get_webhook_handler,
)
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    HealthCheckResponse,
    OrderListResponse,
    OrderNoteOut,
    OrderOut,
    Pagination,
    PaymentDetailsResponse,
    PaymentStatusResponse,
    ProductCreateRequest,
    ProductListResponse,
    ProductOut,
    ProductUpdateRequest,
    RefundRequest,
    RefundResponse,
    UpdateOrderStatusRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
    WebhookAnomalyOut,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/api/payment", tags=["payments"])
order_router = APIRouter(prefix="/api/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
product_router = APIRouter(prefix="/api/admin/products", tags=["products"])
monitoring_router = APIRouter(tags=["monitoring"])


def _client_info(request: Request) -> Dict[str, Any]:
    forwarded = request.headers.get("X-Forwarded-For")
    ip = forwarded.split(",")[0].strip() if forwarded else None
    if ip is None and request.client:
        ip = request.client.host
    return {"ip_address": ip, "user_agent": request.headers.get("User-Agent")}


async def _get_order_or_404(db: AsyncSession, order_id: uuid.UUID) -> Order:
    order = await OrderRepository(db).get(order_id)
    if order is None:
        raise NotFound(f"Order {order_id} not found")
    return order


# ----------------------------------------------------------------------
# Payments
# ----------------------------------------------------------------------


@payment_router.post(
    "/create-order",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Create the gateway order and persist the order awaiting payment",
)
async def create_order(
    payload: CreateOrderRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    """Place an order. Totals are computed server-side from the items."""
    logger.info(
        "api_create_order_request",
        amount=str(payload.amount),
        items=len(payload.items),
        customer_email=payload.user_details.email,
    )

    order = await engine.place_order(payload.to_command(_client_info(request)), db)

    return {
        "remote_order_ref": order.gateway_order_id,
        "internal_order_id": order.id,
        "order_number": order.order_number,
        "total_amount": order.total_amount,
        "amount_minor": to_minor_units(order.total_amount),
        "currency": order.currency,
        "receipt": order.receipt,
        "key_id": engine.settings.razorpay_key_id,
    }


@payment_router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    summary="Verify a checkout payment",
    description="Client callback after checkout; confirms the order once",
)
async def verify_payment(
    payload: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
) -> Dict[str, Any]:
    result = await engine.verify_payment(payload.to_command(), db)
    order = result.order

    logger.info(
        "api_verify_payment_success",
        order_id=str(order.id),
        applied=result.applied,
    )
    return {
        "internal_order_id": order.id,
        "payment_id": order.gateway_payment_id,
        "order_number": order.order_number,
    }


@payment_router.get(
    "/status/{remote_order_id}",
    response_model=PaymentStatusResponse,
    summary="Get payment status by gateway order id",
)
async def get_payment_status(
    remote_order_id: str,
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    order = await OrderRepository(db).get_by_gateway_order_id(remote_order_id)
    if order is None:
        raise NotFound(f"Order not found for gateway order {remote_order_id}")
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_status": order.payment_status,
        "status": order.status,
        "total_amount": order.total_amount,
        "currency": order.currency,
    }


@payment_router.get(
    "/details/{order_id}",
    response_model=PaymentDetailsResponse,
    summary="Get payment details",
    description="Local order state next to the gateway's view of its payment",
)
async def get_payment_details(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayClient = Depends(get_gateway),
) -> Dict[str, Any]:
    order = await _get_order_or_404(db, order_id)
    details: Dict[str, Any] = {
        "order_id": order.id,
        "order_number": order.order_number,
        "payment_status": order.payment_status,
        "status": order.status,
        "payment_id": order.gateway_payment_id,
    }

    if order.gateway_payment_id:
        snapshot = await gateway.fetch_remote_payment(order.gateway_payment_id)
        details.update(
            gateway_status=snapshot.status,
            gateway_amount_minor=snapshot.amount,
            method=snapshot.method,
            error_description=snapshot.error_description,
        )
    return details


@payment_router.post(
    "/refund/{payment_id}",
    response_model=RefundResponse,
    summary="Refund a payment",
    description="Full or partial refund of a paid order (admin)",
)
async def refund_payment(
    payment_id: str,
    payload: RefundRequest,
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_request",
        payment_id=payment_id,
        amount=str(payload.amount) if payload.amount is not None else None,
        admin=admin,
    )

    outcome = await engine.refund(payment_id, payload.to_command(), admin, db)

    return {
        "refund_id": outcome.refund_id,
        "amount": outcome.amount,
        "order_id": outcome.order.id,
        "status": outcome.status,
    }


# ----------------------------------------------------------------------
# Orders
# ----------------------------------------------------------------------


@order_router.get(
    "",
    response_model=OrderListResponse,
    summary="List orders (admin)",
)
async def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    payment_status: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    filters = OrderFilters(
        status=status_filter,
        payment_status=payment_status,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    repo = OrderRepository(db)
    orders, total = await repo.list_orders(filters, page=page, limit=limit)
    summary = await repo.summarize(filters)

    return {
        "orders": [OrderOut.model_validate(order) for order in orders],
        "pagination": Pagination(
            page=page, limit=limit, total=total, pages=math.ceil(total / limit) if total else 0
        ),
        "summary": summary,
    }


@order_router.get(
    "/stats",
    summary="Order statistics (admin)",
)
async def order_stats(
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    return await OrderRepository(db).summarize(OrderFilters())


@order_router.get(
    "/recent",
    response_model=List[OrderOut],
    summary="Most recent orders (admin)",
)
async def recent_orders(
    limit: int = Query(default=10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> List[Order]:
    return await OrderRepository(db).recent(limit)


@order_router.get(
    "/user/{email}",
    response_model=List[OrderOut],
    summary="A customer's orders, newest first",
)
async def user_orders(
    email: str,
    db: AsyncSession = Depends(get_db),
) -> List[Order]:
    return await OrderRepository(db).list_by_email(email)


@order_router.put(
    "/update-status/{order_id}",
    response_model=OrderOut,
    summary="Update fulfillment status (admin)",
)
async def update_order_status(
    order_id: uuid.UUID,
    payload: UpdateOrderStatusRequest,
    db: AsyncSession = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    admin: str = Depends(require_admin),
) -> Order:
    result = await engine.update_status(order_id, payload.to_command(), admin, db)
    logger.info(
        "api_order_status_updated",
        order_id=str(order_id),
        status=payload.status.value,
        applied=result.applied,
        admin=admin,
    )
    return result.order


@order_router.get(
    "/{order_id}/notes",
    response_model=List[OrderNoteOut],
    summary="Order audit log (admin)",
)
async def order_notes(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> List[Any]:
    await _get_order_or_404(db, order_id)
    return await OrderRepository(db).list_notes(order_id)


@order_router.get(
    "/{order_id}",
    response_model=OrderOut,
    summary="Get an order",
)
async def get_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> Order:
    return await _get_order_or_404(db, order_id)


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


@webhook_router.post(
    "/razorpay",
    summary="Razorpay webhook endpoint",
    description="Verify and apply gateway webhook events",
)
async def razorpay_webhook(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    db: AsyncSession = Depends(get_db),
    handler: WebhookHandler = Depends(get_webhook_handler),
) -> JSONResponse:
    """
    Handle gateway webhook events.

    The gateway only ever sees 200, 400 or 500. Lookup misses and unknown
    event types are acknowledged with 200; internal failures answer 500 so
    the event is redelivered.
    """
    start_time = time.time()

    # Signature covers the exact bytes received
    body = await request.body()

    try:
        result = await handler.handle(body, signature, db)

    except (SignatureInvalid, ValidationError) as e:
        logger.warning("api_webhook_rejected", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"status": "invalid_signature"},
        )

    except Exception as e:
        await db.rollback()
        logger.error("api_webhook_unexpected_error", error=str(e), exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "error"},
        )

    logger.info(
        "api_webhook_processed",
        event_type=result.get("event_type"),
        outcome=result.get("status"),
        duration_seconds=time.time() - start_time,
    )
    return JSONResponse(status_code=status.HTTP_200_OK, content={"status": "ok"})


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.get(
    "/webhook-anomalies",
    response_model=List[WebhookAnomalyOut],
    summary="Recorded webhook anomalies",
    description="Webhook events that matched no order or could not be applied",
)
async def webhook_anomalies(
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> List[Any]:
    return await OrderRepository(db).list_anomalies(limit)


# ----------------------------------------------------------------------
# Product catalog
# ----------------------------------------------------------------------


@product_router.get(
    "",
    response_model=ProductListResponse,
    summary="List products (admin)",
)
async def list_products(
    search: Optional[str] = Query(default=None, max_length=100),
    category: Optional[ProductCategory] = Query(default=None),
    status_filter: Optional[ListingStatus] = Query(default=None, alias="status"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    filters = ProductFilters(
        search=search,
        category=category.value if category else None,
        status=status_filter.value if status_filter else None,
    )
    listing = await CatalogService(db).list_products(filters, page=page, limit=limit)
    return {
        "products": [ProductOut.model_validate(product) for product in listing.products],
        "pagination": Pagination(
            page=listing.page, limit=listing.limit, total=listing.total, pages=listing.pages
        ),
    }


@product_router.post(
    "",
    response_model=ProductOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a product (admin)",
)
async def create_product(
    payload: ProductCreateRequest,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Product:
    return await CatalogService(db).create_product(payload.to_details(), admin)


@product_router.get(
    "/{product_id}",
    response_model=ProductOut,
    summary="Get a product (admin)",
)
async def get_product(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Product:
    return await CatalogService(db).get_product(product_id)


@product_router.put(
    "/{product_id}",
    response_model=ProductOut,
    summary="Update a product (admin)",
    description="Partial update; slug, stock and variant SKUs are recomputed as needed",
)
async def update_product(
    product_id: uuid.UUID,
    payload: ProductUpdateRequest,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Product:
    return await CatalogService(db).update_product(product_id, payload.changes(), admin)


@product_router.delete(
    "/{product_id}",
    summary="Delete a product (admin)",
)
async def delete_product(
    product_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: str = Depends(require_admin),
) -> Dict[str, Any]:
    await CatalogService(db).delete_product(product_id, admin)
    return {"success": True, "message": "Product deleted successfully"}


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
