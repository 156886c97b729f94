"""
Error taxonomy for the order reconciliation service.

Every error carries the HTTP status it maps to at the API boundary and a
stable error code. The webhook endpoint does not use these mappings: the
gateway only ever sees 200, 400 or 500.
"""
from typing import Any, Dict, List, Optional


class OrderServiceError(Exception):
    """Base exception for all order and payment errors."""

    http_status = 500
    error_code = "internal_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the structured JSON body returned to API callers."""
        return {
            "success": False,
            "message": self.message,
            "error_code": self.error_code,
        }


class ValidationError(OrderServiceError):
    """Malformed caller input, rejected before the engine is reached."""

    http_status = 400
    error_code = "validation_error"

    def __init__(
        self,
        message: str,
        errors: Optional[List[Dict[str, str]]] = None,
        **context: Any,
    ):
        super().__init__(message, **context)
        self.errors = errors or []

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors=[{"field": field, "message": message}])

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class SignatureInvalid(OrderServiceError):
    """Gateway or webhook HMAC signature did not verify."""

    http_status = 400
    error_code = "signature_invalid"


class NotFound(OrderServiceError):
    """No matching order, product or gateway entity."""

    http_status = 404
    error_code = "not_found"


class InvalidStateTransition(OrderServiceError):
    """Precondition of a transition not met, or target state not a valid pair."""

    http_status = 400
    error_code = "invalid_state_transition"


class GatewayUnavailable(OrderServiceError):
    """Upstream timeout, outage or authentication failure. Safe to retry."""

    http_status = 502
    error_code = "gateway_unavailable"


class RefundRejected(OrderServiceError):
    """Refund refused by a business rule or by the gateway."""

    http_status = 400
    error_code = "refund_rejected"


class AuthenticationError(OrderServiceError):
    """Missing, malformed or expired admin token."""

    http_status = 401
    error_code = "authentication_failed"


class PermissionDenied(OrderServiceError):
    """Authenticated caller lacks the admin role."""

    http_status = 403
    error_code = "permission_denied"


class ConcurrentUpdate(OrderServiceError):
    """The order kept changing underneath a transition; the caller may retry."""

    http_status = 409
    error_code = "concurrent_update"
