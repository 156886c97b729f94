"""
Razorpay API client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Bounded timeout on every call
- Snapshot dataclasses for orders, payments and refunds
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from core.exceptions import GatewayUnavailable, NotFound, RefundRejected, ValidationError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayRequestRejected(Exception):
    """The gateway refused a request (HTTP 400)."""

    def __init__(self, description: str, code: Optional[str] = None):
        super().__init__(description)
        self.description = description
        self.code = code


@dataclass(frozen=True)
class RemoteOrder:
    remote_order_id: str
    amount: int
    currency: str
    receipt: Optional[str]
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_entity(cls, entity: Dict[str, Any]) -> "RemoteOrder":
        return cls(
            remote_order_id=entity["id"],
            amount=int(entity["amount"]),
            currency=entity.get("currency", "INR"),
            receipt=entity.get("receipt"),
            status=entity.get("status", "created"),
            raw=entity,
        )


@dataclass(frozen=True)
class PaymentSnapshot:
    """Read-only view of a gateway payment. Amounts in minor units."""

    payment_id: str
    order_id: Optional[str]
    status: str
    amount: int
    currency: str
    method: Optional[str] = None
    error_description: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"

    @classmethod
    def from_entity(cls, entity: Dict[str, Any]) -> "PaymentSnapshot":
        return cls(
            payment_id=entity["id"],
            order_id=entity.get("order_id"),
            status=entity.get("status", "unknown"),
            amount=int(entity.get("amount", 0)),
            currency=entity.get("currency", "INR"),
            method=entity.get("method"),
            error_description=entity.get("error_description"),
            raw=entity,
        )


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    payment_id: str
    amount: int
    status: str
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_entity(cls, entity: Dict[str, Any]) -> "RefundResult":
        return cls(
            refund_id=entity["id"],
            payment_id=entity.get("payment_id", ""),
            amount=int(entity.get("amount", 0)),
            status=entity.get("status", "pending"),
            raw=entity,
        )


class CircuitBreaker:
    """
    Circuit breaker for gateway API calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute coroutine function with circuit breaker protection.

        Args:
            func: Zero-argument coroutine function to execute

        Returns:
            Function result

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayUnavailable("Payment gateway circuit breaker is open")

        try:
            result = await func()
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class RazorpayClient:
    """
    Wrapper for the Razorpay REST API with production-grade error handling.

    All amounts are integer minor units (paise). The client never converts
    money and never touches the order store: it is called with values and
    returns snapshots.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Razorpay client.

        Args:
            settings: Optional settings override
            http_client: Optional preconfigured httpx client
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings or get_settings()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.settings.razorpay_api_base_url,
            auth=(self.settings.razorpay_key_id, self.settings.razorpay_key_secret),
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds),
            headers={"Content-Type": "application/json"},
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "razorpay_client_initialized",
            base_url=self.settings.razorpay_api_base_url,
            test_mode=self.settings.is_test_mode,
            timeout_seconds=self.settings.gateway_timeout_seconds,
        )

    @staticmethod
    def _classify_status(status_code: int) -> Optional[GatewayErrorType]:
        """
        Classify an HTTP status for retry logic.

        Args:
            status_code: Gateway response status

        Returns:
            GatewayErrorType or None for a usable response
        """
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500 or status_code in (401, 403):
            return GatewayErrorType.TRANSIENT
        if status_code >= 400:
            return GatewayErrorType.PERMANENT
        return None

    @staticmethod
    def _error_description(response: httpx.Response) -> Dict[str, Optional[str]]:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        return {
            "code": error.get("code"),
            "description": error.get("description") or response.text[:200],
        }

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send one request through the circuit breaker.

        Raises:
            GatewayUnavailable: Timeout, transport failure, auth failure,
                rate limiting or 5xx
            NotFound: 404
            GatewayRequestRejected: Any other 4xx
        """
        start_time = time.time()

        async def _send() -> httpx.Response:
            try:
                response = await self.http_client.request(method, path, json=json, params=params)
            except httpx.TimeoutException as e:
                metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
                logger.error("gateway_timeout", operation=operation, error=str(e))
                raise GatewayUnavailable(f"Payment gateway timed out during {operation}") from e
            except httpx.TransportError as e:
                metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
                logger.error("gateway_transport_error", operation=operation, error=str(e))
                raise GatewayUnavailable(f"Payment gateway unreachable during {operation}") from e

            error_type = self._classify_status(response.status_code)
            if error_type in (GatewayErrorType.TRANSIENT, GatewayErrorType.RATE_LIMIT):
                metrics.record_gateway_error(error_type.value)
                logger.error(
                    "gateway_api_error",
                    operation=operation,
                    status_code=response.status_code,
                    error_type=error_type.value,
                    **self._error_description(response),
                )
                raise GatewayUnavailable(
                    f"Payment gateway returned {response.status_code} during {operation}",
                    status_code=response.status_code,
                )
            return response

        try:
            response = await self.circuit_breaker.call(_send)
        except GatewayUnavailable:
            metrics.record_gateway_call(operation, "unavailable", time.time() - start_time)
            raise

        duration = time.time() - start_time
        if response.status_code == 404:
            metrics.record_gateway_call(operation, "not_found", duration)
            raise NotFound(f"Gateway resource not found for {operation}")
        if response.status_code >= 400:
            metrics.record_gateway_error(GatewayErrorType.PERMANENT.value)
            metrics.record_gateway_call(operation, "rejected", duration)
            error = self._error_description(response)
            logger.warning(
                "gateway_request_rejected",
                operation=operation,
                status_code=response.status_code,
                **error,
            )
            raise GatewayRequestRejected(error["description"] or "Request rejected", error["code"])

        metrics.record_gateway_call(operation, "success", duration)
        return response.json()

    @retry(
        retry=retry_if_exception_type(GatewayUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    async def create_remote_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> RemoteOrder:
        """
        Create a gateway order that the customer will pay against.

        Args:
            amount_minor: Amount in minor units
            currency: Currency code (e.g., 'INR')
            receipt: Merchant receipt, unique per logical order
            notes: Optional key/value notes stored with the order

        Returns:
            RemoteOrder: Created remote order

        Raises:
            GatewayUnavailable: Network, auth or upstream failure
            ValidationError: Gateway rejected the order parameters
        """
        logger.info(
            "creating_remote_order",
            amount_minor=amount_minor,
            currency=currency,
            receipt=receipt,
        )

        try:
            entity = await self._request(
                "POST",
                "/orders",
                "create_order",
                json={
                    "amount": amount_minor,
                    "currency": currency,
                    "receipt": receipt,
                    "payment_capture": 1,
                    "notes": notes or {},
                },
            )
        except GatewayRequestRejected as e:
            raise ValidationError(f"Gateway rejected order: {e.description}") from e

        remote_order = RemoteOrder.from_entity(entity)
        logger.info(
            "remote_order_created",
            remote_order_id=remote_order.remote_order_id,
            amount_minor=remote_order.amount,
        )
        return remote_order

    @retry(
        retry=retry_if_exception_type(GatewayUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    async def fetch_remote_payment(self, payment_id: str) -> PaymentSnapshot:
        """
        Retrieve a payment by id.

        Raises:
            GatewayUnavailable: Network, auth or upstream failure
            NotFound: Unknown payment id
        """
        logger.info("fetching_remote_payment", payment_id=payment_id)
        try:
            entity = await self._request("GET", f"/payments/{payment_id}", "fetch_payment")
        except GatewayRequestRejected as e:
            # Razorpay answers 400 for ids that do not exist
            raise NotFound(f"Payment {payment_id} not found: {e.description}") from e
        return PaymentSnapshot.from_entity(entity)

    @retry(
        retry=retry_if_exception_type(GatewayUnavailable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    async def fetch_order_payments(self, remote_order_id: str) -> List[PaymentSnapshot]:
        """List every payment attempt made against a remote order."""
        logger.info("fetching_order_payments", remote_order_id=remote_order_id)
        try:
            body = await self._request(
                "GET", f"/orders/{remote_order_id}/payments", "fetch_order_payments"
            )
        except GatewayRequestRejected as e:
            raise NotFound(f"Order {remote_order_id} not found: {e.description}") from e
        return [PaymentSnapshot.from_entity(item) for item in body.get("items", [])]

    async def create_refund(
        self,
        payment_id: str,
        amount_minor: int,
        reason: Optional[str] = None,
        receipt: Optional[str] = None,
    ) -> RefundResult:
        """
        Create a refund for a captured payment.

        Not retried automatically: a refund is only re-sent by an explicit
        caller retry carrying the same receipt.

        Args:
            payment_id: Gateway payment id
            amount_minor: Refund amount in minor units
            reason: Optional refund reason
            receipt: Merchant refund receipt

        Returns:
            RefundResult: Created refund

        Raises:
            RefundRejected: Gateway refused the refund
            GatewayUnavailable: Network, auth or upstream failure
            NotFound: Unknown payment id
        """
        logger.info(
            "creating_refund",
            payment_id=payment_id,
            amount_minor=amount_minor,
            receipt=receipt,
        )

        payload: Dict[str, Any] = {"amount": amount_minor, "speed": "normal"}
        if receipt:
            payload["receipt"] = receipt
        if reason:
            payload["notes"] = {"reason": reason}

        try:
            entity = await self._request(
                "POST", f"/payments/{payment_id}/refund", "create_refund", json=payload
            )
        except GatewayRequestRejected as e:
            metrics.record_refund("rejected")
            raise RefundRejected(f"Gateway rejected refund: {e.description}") from e

        refund = RefundResult.from_entity(entity)
        logger.info(
            "refund_created",
            refund_id=refund.refund_id,
            status=refund.status,
            amount_minor=refund.amount,
        )
        return refund

    async def ping(self) -> None:
        """Cheap authenticated call used by the readiness check."""
        try:
            await self._request("GET", "/orders", "ping", params={"count": 1})
        except GatewayRequestRejected as e:
            raise GatewayUnavailable(f"Gateway health check rejected: {e.description}") from e

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http_client:
            await self.http_client.aclose()
