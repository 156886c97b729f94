"""
Order reconciliation engine.

The single place where an order's payment and fulfillment status change.
Three independent sources feed it:
- the client-side verification callback after checkout
- gateway webhooks (payment captured/failed, order paid, refund created/processed)
- admin actions (fulfillment status updates, refunds)

Every transition is one conditional UPDATE on the order row
(OrderRepository.compare_and_set) committed together with its audit note
and outbox notification. When two sources race for the same transition,
exactly one update matches; the other sees the advanced state and is a
no-op. "Already applied" is decided from the order's current state,
never from raw event delivery ids.
"""
import secrets
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.commands import PlaceOrder, RefundPayment, UpdateOrderStatus, VerifyPayment
from core.exceptions import (
    ConcurrentUpdate,
    InvalidStateTransition,
    NotFound,
    RefundRejected,
    SignatureInvalid,
    ValidationError,
)
from core.notifications import ORDER_CONFIRMATION, PAYMENT_SUCCESS, SHIPPING_UPDATE
from core.pricing import compute_charges, from_minor_units, quantize, to_minor_units
from core.state import (
    CAPTURABLE_STATES,
    CONFIRMED,
    FAILED,
    PENDING,
    REFUNDED,
    FulfillmentStatus,
    OrderState,
    PaymentStatus,
    ensure_valid_state,
)
from database.models import Order, OrderItem
from database.repository import OrderRepository
from integrations.razorpay_client import RazorpayClient
from integrations.signatures import verify_payment_signature
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SYSTEM_AUTHOR = "system"

# Conditional updates attempted before a refund gives up on a moving order
MAX_REFUND_ATTEMPTS = 5

CAPTURE_SOURCES = {
    "payment.captured": "webhook",
    "order.paid": "webhook (order.paid)",
    "gateway_sync": "gateway sync",
}


@dataclass(frozen=True)
class AuditNote:
    text: str
    author: str = SYSTEM_AUTHOR
    reference: Optional[str] = None


@dataclass
class TransitionResult:
    """
    Outcome of applying one event.

    outcome is one of "applied", "noop", "not_found" or "anomaly".
    order is None only when no order matched.
    """

    order: Optional[Order]
    applied: bool
    outcome: str


@dataclass
class RefundOutcome:
    refund_id: str
    amount: Decimal
    amount_minor: int
    status: str
    order: Order
    applied: bool = field(default=True)


class ReconciliationEngine:
    """
    State machine for order payment and fulfillment status.

    Collaborators are injected once at process start; the engine itself
    holds no per-order state.
    """

    def __init__(self, gateway: RazorpayClient, settings: Optional[Settings] = None):
        """
        Initialize reconciliation engine.

        Args:
            gateway: Payment gateway client
            settings: Optional settings override
        """
        self.gateway = gateway
        self.settings = settings or get_settings()
        logger.info("reconciliation_engine_initialized")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_order_number() -> str:
        return f"ORD{datetime.now(timezone.utc):%Y%m%d}{secrets.token_hex(4).upper()}"

    async def _transition(
        self,
        db: AsyncSession,
        order_id: uuid.UUID,
        transition: str,
        expected: OrderState,
        target: OrderState,
        values: Optional[Dict[str, Any]] = None,
        note: Optional[AuditNote] = None,
        notification: Optional[str] = None,
        notification_extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Apply one transition atomically.

        The conditional update, audit note and outbox event commit together
        or not at all.

        Returns:
            bool: True if applied, False if the order had already left the
            expected state
        """
        ensure_valid_state(target)
        repo = OrderRepository(db)

        try:
            applied = await repo.compare_and_set(order_id, expected, target, values)
            if not applied:
                metrics.record_transition(transition, applied=False)
                logger.info(
                    "order_transition_skipped",
                    order_id=str(order_id),
                    transition=transition,
                    expected=str(expected),
                )
                return False

            if note is not None:
                repo.add_note(order_id, note.text, note.author, note.reference)

            if notification is not None:
                current = await repo.reload(order_id)
                payload = {"order": current.snapshot(), **(notification_extra or {})}
                repo.add_outbox_event(order_id, notification, payload)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        metrics.record_transition(transition, applied=True)
        logger.info(
            "order_transition_applied",
            order_id=str(order_id),
            transition=transition,
            from_state=str(expected),
            to_state=str(target),
        )
        return True

    async def record_anomaly(
        self,
        db: AsyncSession,
        event_type: str,
        entity_id: Optional[str],
        reason: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        OrderRepository(db).add_anomaly(event_type, entity_id, reason, payload)
        await db.commit()
        metrics.record_webhook_anomaly(event_type, reason)
        logger.warning(
            "webhook_anomaly_recorded",
            event_type=event_type,
            entity_id=entity_id,
            reason=reason,
        )

    async def _not_found(
        self,
        db: AsyncSession,
        event_type: str,
        entity_id: Optional[str],
        payload: Dict[str, Any],
    ) -> TransitionResult:
        await self.record_anomaly(db, event_type, entity_id, "order_not_found", payload)
        return TransitionResult(order=None, applied=False, outcome="not_found")

    def _noop(self, order: Order, transition: str, **log: Any) -> TransitionResult:
        metrics.record_transition(transition, applied=False)
        logger.info(
            "order_event_already_applied",
            order_id=str(order.id),
            transition=transition,
            state=str(order.state),
            **log,
        )
        return TransitionResult(order=order, applied=False, outcome="noop")

    async def _transition_to_refunded(
        self, db: AsyncSession, order_id: uuid.UUID, transition: str, note: AuditNote
    ) -> bool:
        """
        Move a paid order to (refunded, cancelled) from whichever paid state it
        is in now.

        Fulfillment may advance (confirmed -> shipped -> delivered) between
        reading the order and the conditional update, so a lost update is
        retried against the fresh state while payment is still success.

        Returns:
            bool: True if this call refunded the order, False if it already was

        Raises:
            InvalidStateTransition: Payment left success for anything but refunded
            ConcurrentUpdate: The order kept changing for every attempt
        """
        repo = OrderRepository(db)
        for attempt in range(1, MAX_REFUND_ATTEMPTS + 1):
            current = (await repo.reload(order_id)).state
            if current == REFUNDED:
                return False
            if current.payment != PaymentStatus.SUCCESS:
                raise InvalidStateTransition(
                    f"Cannot refund order in state {current}",
                    payment_status=current.payment.value,
                    status=current.fulfillment.value,
                )
            if await self._transition(
                db, order_id, transition, expected=current, target=REFUNDED, note=note
            ):
                return True
            logger.info(
                "refund_transition_retrying",
                order_id=str(order_id),
                transition=transition,
                attempt=attempt,
            )
        raise ConcurrentUpdate(f"Order {order_id} changed concurrently during {transition}")

    async def _result(
        self, db: AsyncSession, order_id: uuid.UUID, applied: bool
    ) -> TransitionResult:
        order = await OrderRepository(db).reload(order_id)
        return TransitionResult(order=order, applied=applied, outcome="applied" if applied else "noop")

    # ------------------------------------------------------------------
    # Order placement
    # ------------------------------------------------------------------

    async def place_order(self, command: PlaceOrder, db: AsyncSession) -> Order:
        """
        Create the remote order, then persist the order in (pending, pending).

        The gateway is called first so a gateway failure leaves nothing
        behind in the order store.

        Args:
            command: Validated placement command
            db: Database session

        Returns:
            Order: The persisted order

        Raises:
            GatewayUnavailable: Remote order could not be created
            ValidationError: Pricing or gateway parameter validation failed
        """
        start_time = time.time()
        charges = compute_charges(command.subtotal, settings=self.settings)
        amount_minor = to_minor_units(charges.total_amount)

        order_id = uuid.uuid4()
        order_number = self._generate_order_number()
        receipt = f"rcpt_{order_number}"

        log = logger.bind(order_id=str(order_id), order_number=order_number)
        log.info(
            "placing_order",
            subtotal=str(charges.subtotal),
            total=str(charges.total_amount),
            amount_minor=amount_minor,
        )

        remote_order = await self.gateway.create_remote_order(
            amount_minor=amount_minor,
            currency=command.currency,
            receipt=receipt,
            notes={
                "order_number": order_number,
                "customer_email": command.customer.email,
                "items_count": str(len(command.items)),
            },
        )

        order = Order(
            id=order_id,
            order_number=order_number,
            gateway_order_id=remote_order.remote_order_id,
            receipt=receipt,
            customer_name=command.customer.name,
            customer_email=command.customer.email,
            customer_phone=command.customer.phone,
            shipping_address=dict(command.customer.address),
            currency=command.currency,
            subtotal=charges.subtotal,
            shipping_charges=charges.shipping_charges,
            tax_amount=charges.tax_amount,
            discount_amount=charges.discount_amount,
            total_amount=charges.total_amount,
            payment_status=PaymentStatus.PENDING.value,
            status=FulfillmentStatus.PENDING.value,
            version=1,
            client_info=dict(command.client_info),
            items=[
                OrderItem(
                    product_id=item.product_id,
                    name=item.name,
                    color=item.color,
                    size=item.size,
                    quantity=item.quantity,
                    unit_price=quantize(item.unit_price),
                    line_total=item.line_total,
                    image=item.image,
                )
                for item in command.items
            ],
        )

        repo = OrderRepository(db)
        try:
            repo.add(order)
            await db.flush()
            repo.add_note(
                order_id,
                f"Order created. Gateway order: {remote_order.remote_order_id}",
                SYSTEM_AUTHOR,
                reference="order.created",
            )
            repo.add_outbox_event(order_id, ORDER_CONFIRMATION, {"order": order.snapshot()})
            await db.commit()
        except Exception:
            await db.rollback()
            log.error(
                "order_persist_failed_after_remote_order",
                remote_order_id=remote_order.remote_order_id,
            )
            raise

        metrics.record_order_created(command.currency, amount_minor, time.time() - start_time)
        log.info("order_placed", remote_order_id=remote_order.remote_order_id)
        return await repo.reload(order_id)

    # ------------------------------------------------------------------
    # Client verification
    # ------------------------------------------------------------------

    async def verify_payment(self, command: VerifyPayment, db: AsyncSession) -> TransitionResult:
        """
        Apply the client's post-checkout verification callback.

        Raises:
            SignatureInvalid: Signature does not match order and payment id
            NotFound: No order for the remote order id
            InvalidStateTransition: Order is not awaiting payment
            ValidationError: Payment belongs to another remote order
            GatewayUnavailable: Payment could not be fetched
        """
        if not verify_payment_signature(
            command.remote_order_id,
            command.remote_payment_id,
            command.signature,
            self.settings.razorpay_key_secret,
        ):
            metrics.record_signature_failure("client")
            logger.warning(
                "payment_signature_invalid",
                security_event=True,
                remote_order_id=command.remote_order_id,
                remote_payment_id=command.remote_payment_id,
            )
            raise SignatureInvalid("Payment verification failed: invalid signature")

        repo = OrderRepository(db)
        order = await repo.get_by_gateway_order_id(command.remote_order_id)
        if order is None:
            raise NotFound(f"Order not found for gateway order {command.remote_order_id}")

        if order.state != PENDING:
            if (
                order.payment_status == PaymentStatus.SUCCESS.value
                and order.gateway_payment_id == command.remote_payment_id
            ):
                return self._noop(order, "client_verified")
            raise InvalidStateTransition(
                f"Order {order.order_number} cannot be verified in state {order.state}"
            )

        snapshot = await self.gateway.fetch_remote_payment(command.remote_payment_id)
        if snapshot.order_id and snapshot.order_id != command.remote_order_id:
            raise ValidationError.for_field(
                "razorpay_payment_id", "Payment does not belong to this order"
            )

        order_id = order.id
        applied = await self._transition(
            db,
            order_id,
            "client_verified",
            expected=PENDING,
            target=CONFIRMED,
            values={
                "gateway_payment_id": command.remote_payment_id,
                "gateway_signature": command.signature,
                "failure_reason": None,
            },
            note=AuditNote(
                f"Payment verified successfully. Payment ID: {command.remote_payment_id}",
                reference=f"payment.verified:{command.remote_payment_id}",
            ),
            notification=PAYMENT_SUCCESS,
        )

        result = await self._result(db, order_id, applied)
        if not applied and result.order.gateway_payment_id != command.remote_payment_id:
            raise InvalidStateTransition(
                f"Order {result.order.order_number} moved to {result.order.state} concurrently"
            )
        return result

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def _apply_capture(
        self, db: AsyncSession, order: Order, payment: Dict[str, Any], source: str
    ) -> TransitionResult:
        payment_id = payment.get("id")
        if not payment_id:
            await self.record_anomaly(db, source, order.gateway_order_id, "payment_id_missing", payment)
            return TransitionResult(order=order, applied=False, outcome="anomaly")

        if order.gateway_payment_id and order.gateway_payment_id != payment_id:
            # A second captured payment on an already-paid order needs a human
            await self.record_anomaly(db, source, payment_id, "payment_id_mismatch", payment)
            return TransitionResult(order=order, applied=False, outcome="anomaly")

        current = order.state
        if current not in CAPTURABLE_STATES:
            return self._noop(order, source, payment_id=payment_id)

        amount = from_minor_units(int(payment.get("amount") or 0))
        order_id = order.id
        applied = await self._transition(
            db,
            order_id,
            source,
            expected=current,
            target=CONFIRMED,
            values={"gateway_payment_id": payment_id, "failure_reason": None},
            note=AuditNote(
                f"Payment captured via {CAPTURE_SOURCES.get(source, source)}. Amount: {order.currency} {amount}",
                reference=f"payment.captured:{payment_id}",
            ),
            notification=PAYMENT_SUCCESS,
        )
        return await self._result(db, order_id, applied)

    async def apply_payment_captured(
        self, payment: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        """Webhook payment.captured: move the order to (success, confirmed) once."""
        order = await OrderRepository(db).find_for_payment(payment.get("id"), payment.get("order_id"))
        if order is None:
            return await self._not_found(db, "payment.captured", payment.get("id"), payment)
        return await self._apply_capture(db, order, payment, "payment.captured")

    async def apply_order_paid(
        self,
        remote_order: Dict[str, Any],
        payment: Optional[Dict[str, Any]],
        db: AsyncSession,
    ) -> TransitionResult:
        """Webhook order.paid: same transition as a capture, keyed by remote order id."""
        remote_order_id = remote_order.get("id")
        repo = OrderRepository(db)
        order = await repo.get_by_gateway_order_id(remote_order_id) if remote_order_id else None
        if order is None:
            return await self._not_found(db, "order.paid", remote_order_id, remote_order)
        if not payment:
            await self.record_anomaly(
                db, "order.paid", remote_order_id, "payment_entity_missing", remote_order
            )
            return TransitionResult(order=order, applied=False, outcome="anomaly")
        return await self._apply_capture(db, order, payment, "order.paid")

    async def apply_payment_failed(
        self, payment: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        """Webhook payment.failed: (pending, pending) -> (failed, failed) with the reason noted."""
        payment_id = payment.get("id")
        order = await OrderRepository(db).find_for_payment(payment_id, payment.get("order_id"))
        if order is None:
            return await self._not_found(db, "payment.failed", payment_id, payment)

        if order.state != PENDING:
            return self._noop(order, "payment.failed", payment_id=payment_id)

        reason = payment.get("error_description") or "Unknown error"
        order_id = order.id
        applied = await self._transition(
            db,
            order_id,
            "payment.failed",
            expected=PENDING,
            target=FAILED,
            values={"failure_reason": reason},
            note=AuditNote(
                f"Payment failed via webhook. Error: {reason}",
                reference=f"payment.failed:{payment_id}",
            ),
        )
        return await self._result(db, order_id, applied)

    async def apply_refund_created(
        self, refund: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        """Webhook refund.created: any paid state -> (refunded, cancelled)."""
        payment_id = refund.get("payment_id")
        refund_id = refund.get("id")
        repo = OrderRepository(db)
        order = await repo.get_by_payment_id(payment_id) if payment_id else None
        if order is None:
            return await self._not_found(db, "refund.created", payment_id, refund)

        if order.payment_status == PaymentStatus.REFUNDED.value:
            return self._noop(order, "refund.created", refund_id=refund_id)
        if order.payment_status != PaymentStatus.SUCCESS.value:
            await self.record_anomaly(db, "refund.created", payment_id, "refund_for_unpaid_order", refund)
            return TransitionResult(order=order, applied=False, outcome="anomaly")

        amount = from_minor_units(int(refund.get("amount") or 0))
        order_id = order.id
        applied = await self._transition_to_refunded(
            db,
            order_id,
            "refund.created",
            AuditNote(
                f"Refund initiated via webhook. Refund ID: {refund_id}, "
                f"Amount: {order.currency} {amount}",
                reference=f"refund.created:{refund_id}",
            ),
        )
        return await self._result(db, order_id, applied)

    async def apply_refund_processed(
        self, refund: Dict[str, Any], db: AsyncSession
    ) -> TransitionResult:
        """Webhook refund.processed: audit note only, at most once per refund id."""
        payment_id = refund.get("payment_id")
        refund_id = refund.get("id")
        repo = OrderRepository(db)
        order = await repo.get_by_payment_id(payment_id) if payment_id else None
        if order is None:
            return await self._not_found(db, "refund.processed", payment_id, refund)

        order_id = order.id
        reference = f"refund.processed:{refund_id}"
        if await repo.has_note_reference(order_id, reference):
            return self._noop(order, "refund.processed", refund_id=refund_id)

        amount = from_minor_units(int(refund.get("amount") or 0))
        repo.add_note(
            order_id,
            f"Refund processed. Refund ID: {refund_id}, Amount: {order.currency} {amount}",
            SYSTEM_AUTHOR,
            reference=reference,
        )
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same refund already wrote the note
            await db.rollback()
            metrics.record_transition("refund.processed", applied=False)
            return await self._result(db, order_id, applied=False)

        metrics.record_transition("refund.processed", applied=True)
        logger.info("refund_processed_noted", order_id=str(order_id), refund_id=refund_id)
        return await self._result(db, order_id, applied=True)

    # ------------------------------------------------------------------
    # Admin actions
    # ------------------------------------------------------------------

    async def update_status(
        self,
        order_id: uuid.UUID,
        command: UpdateOrderStatus,
        actor: str,
        db: AsyncSession,
    ) -> TransitionResult:
        """
        Change fulfillment status.

        Only the enumerated fields of UpdateOrderStatus are written. Shipping
        stamps the estimated delivery date, delivery stamps delivered_at.

        Raises:
            NotFound: Unknown order
            InvalidStateTransition: Resulting pair is not a valid combination
        """
        repo = OrderRepository(db)
        order = await repo.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")

        current = order.state
        target = OrderState(current.payment, command.status)
        try:
            ensure_valid_state(target)
        except InvalidStateTransition as e:
            raise InvalidStateTransition(
                f"Cannot set status to '{command.status.value}' while payment is "
                f"'{current.payment.value}'"
            ) from e

        now = datetime.now(timezone.utc)
        status_changed = command.status != current.fulfillment
        values: Dict[str, Any] = {}
        if command.tracking_number:
            values["tracking_number"] = command.tracking_number
        if command.carrier:
            values["carrier"] = command.carrier
        if status_changed and command.status == FulfillmentStatus.SHIPPED:
            values["estimated_delivery"] = now + timedelta(days=self.settings.estimated_delivery_days)
        if status_changed and command.status == FulfillmentStatus.DELIVERED:
            values["delivered_at"] = now

        text = f"Status changed from {current.fulfillment.value} to {command.status.value}."
        if command.notes:
            text = f"{text} {command.notes}"

        notify = status_changed and command.status in (
            FulfillmentStatus.SHIPPED,
            FulfillmentStatus.DELIVERED,
        )
        applied = await self._transition(
            db,
            order_id,
            "admin_status_update",
            expected=current,
            target=target,
            values=values,
            note=AuditNote(text, author=actor),
            notification=SHIPPING_UPDATE if notify else None,
            notification_extra={"update_type": command.status.value} if notify else None,
        )
        return await self._result(db, order_id, applied)

    async def refund(
        self,
        payment_id: str,
        command: RefundPayment,
        actor: str,
        db: AsyncSession,
    ) -> RefundOutcome:
        """
        Refund a paid order through the gateway.

        The requested amount is checked against the order total before the
        gateway is contacted. A missing amount refunds the full total.

        Raises:
            NotFound: No order holds this payment id
            InvalidStateTransition: Payment is not in success state
            RefundRejected: Amount exceeds total, or gateway refused
            GatewayUnavailable: Gateway unreachable; order unchanged
        """
        repo = OrderRepository(db)
        order = await repo.get_by_payment_id(payment_id)
        if order is None:
            raise NotFound(f"Order not found for payment {payment_id}")

        if order.payment_status != PaymentStatus.SUCCESS.value:
            raise InvalidStateTransition("Payment must be successful to initiate refund")

        total = quantize(order.total_amount)
        amount = quantize(command.amount) if command.amount is not None else total
        if amount > total:
            metrics.record_refund("exceeds_total")
            logger.warning(
                "refund_exceeds_total",
                order_id=str(order.id),
                requested=str(amount),
                total=str(total),
            )
            raise RefundRejected(f"Refund amount {amount} exceeds order total {total}")

        amount_minor = to_minor_units(amount)
        order_id = order.id
        result = await self.gateway.create_refund(
            payment_id=payment_id,
            amount_minor=amount_minor,
            reason=command.reason,
            receipt=f"rf_{order.order_number}_{amount_minor}"[:40],
        )
        metrics.record_refund("created")

        applied = await self._transition_to_refunded(
            db,
            order_id,
            "admin_refund",
            AuditNote(
                f"Refund initiated. Refund ID: {result.refund_id}, Amount: {order.currency} {amount}, "
                f"Reason: {command.reason or 'Not specified'}",
                author=actor,
                reference=f"refund.created:{result.refund_id}",
            ),
        )
        current = await repo.reload(order_id)
        return RefundOutcome(
            refund_id=result.refund_id,
            amount=amount,
            amount_minor=amount_minor,
            status=result.status,
            order=current,
            applied=applied,
        )

    # ------------------------------------------------------------------
    # Gateway sync
    # ------------------------------------------------------------------

    async def sync_with_gateway(self, order: Order, db: AsyncSession) -> TransitionResult:
        """
        Apply a capture the gateway knows about but no callback delivered.

        Raises:
            GatewayUnavailable: Payments could not be listed
        """
        payments = await self.gateway.fetch_order_payments(order.gateway_order_id)
        captured = next((p for p in payments if p.is_captured), None)
        if captured is None:
            return TransitionResult(order=order, applied=False, outcome="noop")
        return await self._apply_capture(db, order, captured.raw, "gateway_sync")
