"""External integrations: payment gateway client, signatures and webhooks."""
from .razorpay_client import (
    CircuitBreaker,
    PaymentSnapshot,
    RazorpayClient,
    RefundResult,
    RemoteOrder,
)
from .signatures import verify_payment_signature, verify_webhook_signature

__all__ = [
    "CircuitBreaker",
    "PaymentSnapshot",
    "RazorpayClient",
    "RefundResult",
    "RemoteOrder",
    "verify_payment_signature",
    "verify_webhook_signature",
]
