"""Core order reconciliation logic."""
from .exceptions import (
    ConcurrentUpdate,
    GatewayUnavailable,
    InvalidStateTransition,
    NotFound,
    OrderServiceError,
    RefundRejected,
    SignatureInvalid,
    ValidationError,
)
from .state import FulfillmentStatus, OrderState, PaymentStatus

__all__ = [
    "OrderServiceError",
    "ConcurrentUpdate",
    "ValidationError",
    "SignatureInvalid",
    "NotFound",
    "InvalidStateTransition",
    "GatewayUnavailable",
    "RefundRejected",
    "PaymentStatus",
    "FulfillmentStatus",
    "OrderState",
]
