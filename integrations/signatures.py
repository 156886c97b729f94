"""
HMAC-SHA256 signature helpers for gateway callbacks.

Both checks are pure: no I/O, no state, constant-time comparison.
"""
import hashlib
import hmac
from typing import Optional


def compute_signature(message: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of message keyed by secret."""
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _matches(expected: str, provided: Optional[str]) -> bool:
    if not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.strip().encode("utf-8"))


def payment_signature_message(order_id: str, payment_id: str) -> bytes:
    return f"{order_id}|{payment_id}".encode("utf-8")


def verify_payment_signature(
    order_id: str, payment_id: str, signature: Optional[str], secret: str
) -> bool:
    """
    Verify the checkout signature returned to the client.

    Args:
        order_id: Remote (gateway) order id
        payment_id: Remote payment id
        signature: Hex signature supplied by the client
        secret: Gateway key secret

    Returns:
        bool: True if the signature matches
    """
    expected = compute_signature(payment_signature_message(order_id, payment_id), secret)
    return _matches(expected, signature)


def verify_webhook_signature(
    raw_body: bytes, signature_header: Optional[str], webhook_secret: str
) -> bool:
    """
    Verify a webhook signature over the exact raw request body.

    The body must be the bytes as received. Parsing and re-serializing the
    JSON changes the bytes and invalidates the signature.
    """
    expected = compute_signature(raw_body, webhook_secret)
    return _matches(expected, signature_header)
