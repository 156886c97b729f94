"""
Tests for webhook verification and routing.
"""
import json
from typing import Any, Callable, Dict

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.commands import PlaceOrder
from core.exceptions import SignatureInvalid, ValidationError
from core.notifications import PAYMENT_SUCCESS
from core.reconciliation import ReconciliationEngine
from core.state import CONFIRMED, FAILED, PENDING
from database.models import Order, OutboxEvent, WebhookAnomaly
from integrations.signatures import compute_signature
from integrations.webhook_handler import WebhookEvent, WebhookHandler


class TestWebhookParsing:
    """Signature and body checks run before any state is touched."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_signature_rejected(
        self,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        test_db: AsyncSession,
    ) -> None:
        body, _ = webhook_body("payment.captured", payment={"id": "pay_1"})

        with pytest.raises(SignatureInvalid):
            await webhook_handler.handle(body, "0" * 64, test_db)

        anomalies = (await test_db.execute(select(WebhookAnomaly))).scalars().all()
        assert anomalies == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_signature_rejected(
        self,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        test_db: AsyncSession,
    ) -> None:
        body, _ = webhook_body("payment.captured", payment={"id": "pay_1"})

        with pytest.raises(SignatureInvalid):
            await webhook_handler.handle(body, None, test_db)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_signed_garbage_is_validation_error(
        self,
        webhook_handler: WebhookHandler,
        test_settings: Any,
        test_db: AsyncSession,
    ) -> None:
        body = b"not json at all"
        signature = compute_signature(body, test_settings.razorpay_webhook_secret)

        with pytest.raises(ValidationError):
            await webhook_handler.handle(body, signature, test_db)

    @pytest.mark.unit
    def test_parse_event_requires_event_name(self) -> None:
        with pytest.raises(ValidationError, match="no event type"):
            WebhookHandler.parse_event(json.dumps({"payload": {}}).encode())

    @pytest.mark.unit
    def test_entity_lookup(self) -> None:
        event = WebhookEvent(
            "payment.captured",
            {"payment": {"entity": {"id": "pay_1"}}, "order": {"entity": "not-a-dict"}},
        )

        assert event.entity("payment") == {"id": "pay_1"}
        assert event.entity("order") is None
        assert event.entity("refund") is None


class TestWebhookRouting:
    """Routing of verified events to engine operations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(
        self,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        test_db: AsyncSession,
    ) -> None:
        body, signature = webhook_body("subscription.charged", subscription={"id": "sub_1"})

        result = await webhook_handler.handle(body, signature, test_db)

        assert result == {"status": "ignored", "event_type": "subscription.charged"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_captured_applied_then_noop(
        self,
        engine: ReconciliationEngine,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        place_order_command: PlaceOrder,
        capture_payment: Callable[..., Dict[str, Any]],
        test_db: AsyncSession,
    ) -> None:
        order = await engine.place_order(place_order_command, test_db)
        body, signature = webhook_body(
            "payment.captured", payment=capture_payment(order.gateway_order_id)
        )

        first = await webhook_handler.handle(body, signature, test_db)
        redelivered = await webhook_handler.handle(body, signature, test_db)

        assert first["status"] == "applied"
        assert redelivered["status"] == "noop"
        current = await test_db.get(Order, order.id, populate_existing=True)
        assert current.state == CONFIRMED
        events = (
            await test_db.execute(select(OutboxEvent).where(OutboxEvent.event_type == PAYMENT_SUCCESS))
        ).scalars().all()
        assert len(events) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed_routed(
        self,
        engine: ReconciliationEngine,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        place_order_command: PlaceOrder,
        capture_payment: Callable[..., Dict[str, Any]],
        test_db: AsyncSession,
    ) -> None:
        order = await engine.place_order(place_order_command, test_db)
        body, signature = webhook_body(
            "payment.failed",
            payment=capture_payment(order.gateway_order_id, "pay_declined", status="failed"),
        )

        result = await webhook_handler.handle(body, signature, test_db)

        assert result["status"] == "applied"
        current = await test_db.get(Order, order.id, populate_existing=True)
        assert current.state == FAILED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_paid_routed(
        self,
        engine: ReconciliationEngine,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        place_order_command: PlaceOrder,
        capture_payment: Callable[..., Dict[str, Any]],
        test_db: AsyncSession,
    ) -> None:
        order = await engine.place_order(place_order_command, test_db)
        body, signature = webhook_body(
            "order.paid",
            order={"id": order.gateway_order_id, "status": "paid"},
            payment=capture_payment(order.gateway_order_id),
        )

        result = await webhook_handler.handle(body, signature, test_db)

        assert result == {"status": "applied", "event_type": "order.paid"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_entity_recorded(
        self,
        engine: ReconciliationEngine,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        place_order_command: PlaceOrder,
        test_db: AsyncSession,
    ) -> None:
        order = await engine.place_order(place_order_command, test_db)
        body, signature = webhook_body("refund.created")

        result = await webhook_handler.handle(body, signature, test_db)

        assert result["status"] == "anomaly"
        anomaly = (await test_db.execute(select(WebhookAnomaly))).scalar_one()
        assert anomaly.reason == "refund_entity_missing"
        current = await test_db.get(Order, order.id, populate_existing=True)
        assert current.state == PENDING

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unmatched_payment_acknowledged(
        self,
        webhook_handler: WebhookHandler,
        webhook_body: Callable[..., Any],
        test_db: AsyncSession,
    ) -> None:
        body, signature = webhook_body(
            "payment.captured",
            payment={"id": "pay_unknown", "order_id": "order_unknown", "amount": 5000},
        )

        result = await webhook_handler.handle(body, signature, test_db)

        assert result["status"] == "not_found"
        anomaly = (await test_db.execute(select(WebhookAnomaly))).scalar_one()
        assert anomaly.event_type == "payment.captured"
        assert anomaly.entity_id == "pay_unknown"
