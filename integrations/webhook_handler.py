"""
Razorpay webhook handler with signature verification and event routing.

Implements:
- Signature verification over the raw, unparsed request body
- Event type routing to reconciliation engine operations
- Accept-and-ignore for unknown event types

There is no delivery-level deduplication: every routed operation is
idempotent on the order's own state, so a redelivered event is a no-op.
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.exceptions import SignatureInvalid, ValidationError
from core.reconciliation import ReconciliationEngine, TransitionResult
from integrations.signatures import verify_webhook_signature
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Razorpay-Signature"

EventHandler = Callable[[Dict[str, Any], AsyncSession], Awaitable[TransitionResult]]


@dataclass(frozen=True)
class WebhookEvent:
    event_type: str
    payload: Dict[str, Any]
    event_id: Optional[str] = None

    def entity(self, name: str) -> Optional[Dict[str, Any]]:
        """Return payload[name]["entity"] if present."""
        wrapper = self.payload.get(name)
        if isinstance(wrapper, dict) and isinstance(wrapper.get("entity"), dict):
            return wrapper["entity"]
        return None


class WebhookHandler:
    """
    Handles gateway webhook events.

    Features:
    - Signature verification using the webhook secret
    - Event type routing to registered handlers
    - Unknown event types acknowledged and ignored
    - Order lookup misses recorded as anomalies by the engine
    """

    def __init__(self, engine: ReconciliationEngine, settings: Optional[Settings] = None):
        """
        Initialize webhook handler.

        Args:
            engine: Reconciliation engine that applies events
            settings: Optional settings override
        """
        self.settings = settings or get_settings()
        self.engine = engine
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment.captured", self.handle_payment_captured)
        self.register_handler("payment.failed", self.handle_payment_failed)
        self.register_handler("order.paid", self.handle_order_paid)
        self.register_handler("refund.created", self.handle_refund_created)
        self.register_handler("refund.processed", self.handle_refund_processed)

        logger.info("webhook_handler_initialized", event_types=sorted(self.event_handlers))

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """
        Register a handler for a specific event type.

        Args:
            event_type: Gateway event type (e.g., 'payment.captured')
            handler: Async callable taking (event payload, db session)
        """
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(
        self, payload: bytes, signature: Optional[str], secret: Optional[str] = None
    ) -> None:
        """
        Verify the webhook signature.

        Args:
            payload: Raw request body as bytes
            signature: X-Razorpay-Signature header value
            secret: Optional webhook secret (uses config if not provided)

        Raises:
            SignatureInvalid: If signature verification fails
        """
        webhook_secret = secret or self.settings.razorpay_webhook_secret
        if not verify_webhook_signature(payload, signature, webhook_secret):
            metrics.record_signature_failure("webhook")
            logger.warning(
                "webhook_signature_verification_failed",
                security_event=True,
                signature_present=bool(signature),
                body_length=len(payload),
            )
            raise SignatureInvalid("Invalid webhook signature")

    @staticmethod
    def parse_event(payload: bytes) -> WebhookEvent:
        """
        Parse a verified body.

        Raises:
            ValidationError: If the body is not a JSON object with an event name
        """
        try:
            body = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError("Webhook body is not valid JSON") from e

        if not isinstance(body, dict) or not isinstance(body.get("event"), str):
            raise ValidationError("Webhook body has no event type")

        inner = body.get("payload")
        return WebhookEvent(
            event_type=body["event"],
            payload=inner if isinstance(inner, dict) else {},
            event_id=body.get("id"),
        )

    async def handle(
        self, payload: bytes, signature: Optional[str], db: AsyncSession
    ) -> Dict[str, Any]:
        """
        Verify, parse and process one webhook delivery.

        Raises:
            SignatureInvalid: Bad signature
            ValidationError: Signed body is malformed
        """
        self.verify_signature(payload, signature)
        event = self.parse_event(payload)
        return await self.process_event(event, db)

    async def process_event(self, event: WebhookEvent, db: AsyncSession) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Args:
            event: Parsed webhook event
            db: Database session

        Returns:
            Dict[str, Any]: Processing result
        """
        start_time = time.time()
        log = logger.bind(event_type=event.event_type, event_id=event.event_id)
        log.info("processing_webhook_event")

        handler = self.event_handlers.get(event.event_type)
        if handler is None:
            log.info("webhook_event_ignored", reason="unhandled_event_type")
            metrics.record_webhook_event(event.event_type, "ignored", time.time() - start_time)
            return {"status": "ignored", "event_type": event.event_type}

        try:
            result = await handler(event.payload, db)
        except Exception as e:
            log.error("webhook_event_processing_failed", error=str(e), exc_info=True)
            metrics.record_webhook_event(event.event_type, "failed", time.time() - start_time)
            raise

        metrics.record_webhook_event(event.event_type, result.outcome, time.time() - start_time)
        log.info(
            "webhook_event_processed",
            outcome=result.outcome,
            order_id=str(result.order.id) if result.order is not None else None,
        )
        return {"status": result.outcome, "event_type": event.event_type}

    async def _missing_entity(
        self, event_type: str, name: str, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        await self.engine.record_anomaly(db, event_type, None, f"{name}_entity_missing", payload)
        return TransitionResult(order=None, applied=False, outcome="anomaly")

    async def handle_payment_captured(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        payment = WebhookEvent("payment.captured", payload).entity("payment")
        if payment is None:
            return await self._missing_entity("payment.captured", "payment", payload, db)
        return await self.engine.apply_payment_captured(payment, db)

    async def handle_payment_failed(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        payment = WebhookEvent("payment.failed", payload).entity("payment")
        if payment is None:
            return await self._missing_entity("payment.failed", "payment", payload, db)
        return await self.engine.apply_payment_failed(payment, db)

    async def handle_order_paid(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        event = WebhookEvent("order.paid", payload)
        remote_order = event.entity("order")
        if remote_order is None:
            return await self._missing_entity("order.paid", "order", payload, db)
        return await self.engine.apply_order_paid(remote_order, event.entity("payment"), db)

    async def handle_refund_created(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        refund = WebhookEvent("refund.created", payload).entity("refund")
        if refund is None:
            return await self._missing_entity("refund.created", "refund", payload, db)
        return await self.engine.apply_refund_created(refund, db)

    async def handle_refund_processed(
        self, payload: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        refund = WebhookEvent("refund.processed", payload).entity("refund")
        if refund is None:
            return await self._missing_entity("refund.processed", "refund", payload, db)
        return await self.engine.apply_refund_processed(refund, db)
