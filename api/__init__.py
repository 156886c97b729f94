"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateOrderRequest,
    CreateOrderResponse,
    RefundRequest,
    RefundResponse,
    UpdateOrderStatusRequest,
    VerifyPaymentRequest,
)

__all__ = [
    "app",
    "CreateOrderRequest",
    "CreateOrderResponse",
    "RefundRequest",
    "RefundResponse",
    "UpdateOrderStatusRequest",
    "VerifyPaymentRequest",
]
