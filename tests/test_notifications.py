"""
Tests for notification rendering and email delivery.
"""
from typing import Any, Dict
from unittest.mock import AsyncMock

import pytest

from config import Settings
from core.notifications import (
    ORDER_CONFIRMATION,
    PAYMENT_SUCCESS,
    SHIPPING_UPDATE,
    EmailNotifier,
    NotificationDispatcher,
)


@pytest.fixture
def order_snapshot() -> Dict[str, Any]:
    return {
        "order_id": "7c0f9d9e-0000-4000-8000-000000000001",
        "order_number": "ORD20240101ABCD1234",
        "customer_name": "Asha Rao",
        "customer_email": "asha@example.com",
        "currency": "INR",
        "total_amount": "1161.00",
        "payment_status": "success",
        "status": "shipped",
        "payment_id": "pay_test0001",
        "carrier": "BlueDart",
        "tracking_number": "TRK123",
        "estimated_delivery": "2024-01-08T10:00:00+00:00",
        "delivered_at": None,
        "items": [{"name": "Classic Tee", "quantity": 2, "line_total": "900.00"}],
    }


class TestRendering:
    """Email content per notification type."""

    @pytest.mark.unit
    def test_order_confirmation(self, test_settings: Settings, order_snapshot: Dict[str, Any]) -> None:
        dispatcher = NotificationDispatcher(AsyncMock(), settings=test_settings)

        subject, body = dispatcher.render(ORDER_CONFIRMATION, {"order": order_snapshot})

        assert subject == "Order ORD20240101ABCD1234 received"
        assert "Hi Asha Rao," in body
        assert "Classic Tee x 2: 900.00" in body
        assert "Total: INR 1161.00" in body

    @pytest.mark.unit
    def test_payment_success(self, test_settings: Settings, order_snapshot: Dict[str, Any]) -> None:
        dispatcher = NotificationDispatcher(AsyncMock(), settings=test_settings)

        subject, body = dispatcher.render(PAYMENT_SUCCESS, {"order": order_snapshot})

        assert subject.startswith("Payment received")
        assert "Payment ID: pay_test0001" in body

    @pytest.mark.unit
    def test_shipping_updates(self, test_settings: Settings, order_snapshot: Dict[str, Any]) -> None:
        dispatcher = NotificationDispatcher(AsyncMock(), settings=test_settings)

        shipped = dispatcher.render(SHIPPING_UPDATE, {"order": order_snapshot, "update_type": "shipped"})
        delivered = dispatcher.render(
            SHIPPING_UPDATE, {"order": order_snapshot, "update_type": "delivered"}
        )

        assert shipped[0] == "Order ORD20240101ABCD1234 has shipped"
        assert "Tracking number: TRK123" in shipped[1]
        assert "Carrier: BlueDart" in shipped[1]
        assert delivered[0] == "Order ORD20240101ABCD1234 delivered"

    @pytest.mark.unit
    def test_unknown_event(self, test_settings: Settings) -> None:
        dispatcher = NotificationDispatcher(AsyncMock(), settings=test_settings)

        assert dispatcher.render("notification.unknown", {}) is None


class TestDispatch:
    """Delivery through the notifier."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_to_customer(self, test_settings: Settings, order_snapshot: Dict[str, Any]) -> None:
        notifier = AsyncMock()
        notifier.send.return_value = True
        dispatcher = NotificationDispatcher(notifier, settings=test_settings)

        await dispatcher({"event_type": PAYMENT_SUCCESS, "payload": {"order": order_snapshot}})

        notifier.send.assert_awaited_once()
        to, subject, _ = notifier.send.await_args.args
        assert to == "asha@example.com"
        assert "ORD20240101ABCD1234" in subject

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_delivery_failure_propagates(
        self, test_settings: Settings, order_snapshot: Dict[str, Any]
    ) -> None:
        notifier = AsyncMock()
        notifier.send.side_effect = ConnectionError("refused")
        dispatcher = NotificationDispatcher(notifier, settings=test_settings)

        with pytest.raises(ConnectionError):
            await dispatcher({"event_type": PAYMENT_SUCCESS, "payload": {"order": order_snapshot}})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_recipient_skipped(self, test_settings: Settings) -> None:
        notifier = AsyncMock()
        dispatcher = NotificationDispatcher(notifier, settings=test_settings)

        await dispatcher({"event_type": PAYMENT_SUCCESS, "payload": {"order": {"order_number": "ORD1"}}})

        notifier.send.assert_not_awaited()


class TestEmailNotifier:
    """SMTP delivery."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_without_smtp_host_only_logs(self, test_settings: Settings, mocker: Any) -> None:
        send = mocker.patch("core.notifications.aiosmtplib.send", new_callable=AsyncMock)

        sent = await EmailNotifier(test_settings).send("asha@example.com", "Hello", "Body")

        assert sent is False
        send.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sends_over_smtp(self, test_settings: Settings, mocker: Any) -> None:
        settings = test_settings.model_copy(
            update={"smtp_host": "smtp.example.com", "smtp_port": 2525, "smtp_username": "mailer"}
        )

        send = mocker.patch("core.notifications.aiosmtplib.send", new_callable=AsyncMock)

        sent = await EmailNotifier(settings).send("asha@example.com", "Hello", "Body")

        assert sent is True
        message = send.await_args.args[0]
        assert message["To"] == "asha@example.com"
        assert message["Subject"] == "Hello"
        assert send.await_args.kwargs["hostname"] == "smtp.example.com"
        assert send.await_args.kwargs["port"] == 2525
