"""
Customer notifications.

Notifications are never sent from inside a state transition. The engine
records them in the outbox; the outbox publisher hands each event to
NotificationDispatcher, which renders a plain-text email and delivers it
through EmailNotifier. A delivery failure only affects the outbox row.
"""
from email.message import EmailMessage
from typing import Any, Dict, Optional, Tuple

import aiosmtplib
import structlog

from config import Settings, get_settings
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_CONFIRMATION = "notification.order_confirmation"
PAYMENT_SUCCESS = "notification.payment_success"
SHIPPING_UPDATE = "notification.shipping_update"


class EmailNotifier:
    """Sends email over SMTP with aiosmtplib."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def send(self, to: str, subject: str, body: str) -> bool:
        """
        Send a plain-text email.

        Args:
            to: Recipient address
            subject: Subject line
            body: Plain-text body

        Returns:
            bool: True if handed to the SMTP server, False if only logged
            because no SMTP host is configured

        Raises:
            aiosmtplib.SMTPException: On delivery failure
        """
        if not self.settings.smtp_host:
            logger.info("email_delivery_skipped", to=to, subject=subject, reason="smtp_not_configured")
            return False

        message = EmailMessage()
        message["From"] = f"{self.settings.store_name} <{self.settings.email_from}>"
        message["To"] = to
        message["Subject"] = subject
        message.set_content(body)

        await aiosmtplib.send(
            message,
            hostname=self.settings.smtp_host,
            port=self.settings.smtp_port,
            username=self.settings.smtp_username,
            password=self.settings.smtp_password,
            start_tls=self.settings.smtp_use_tls,
            timeout=30,
        )
        logger.info("email_sent", to=to, subject=subject)
        return True


def _money(order: Dict[str, Any]) -> str:
    return f"{order.get('currency', 'INR')} {order.get('total_amount')}"


class NotificationDispatcher:
    """Routes outbox notification events to rendered emails."""

    def __init__(
        self,
        notifier: Optional[EmailNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.notifier = notifier or EmailNotifier(self.settings)

    def render(self, event_type: str, payload: Dict[str, Any]) -> Optional[Tuple[str, str]]:
        """Build (subject, body) for an event, or None for an unknown event type."""
        order = payload.get("order", {})
        number = order.get("order_number")
        greeting = f"Hi {order.get('customer_name', 'there')},"
        store = self.settings.store_name

        if event_type == ORDER_CONFIRMATION:
            lines = [
                f"  - {item['name']} x {item['quantity']}: {item['line_total']}"
                for item in order.get("items", [])
            ]
            body = "\n".join(
                [
                    greeting,
                    "",
                    f"Thank you for your order {number}. We will confirm it once payment completes.",
                    "",
                    *lines,
                    "",
                    f"Total: {_money(order)}",
                    "",
                    store,
                ]
            )
            return f"Order {number} received", body

        if event_type == PAYMENT_SUCCESS:
            body = "\n".join(
                [
                    greeting,
                    "",
                    f"We received your payment of {_money(order)} for order {number}.",
                    f"Payment ID: {order.get('payment_id')}",
                    "Your order is confirmed and will ship soon.",
                    "",
                    store,
                ]
            )
            return f"Payment received for order {number}", body

        if event_type == SHIPPING_UPDATE:
            update_type = payload.get("update_type")
            if update_type == "shipped":
                details = [
                    f"Your order {number} has shipped.",
                    f"Carrier: {order.get('carrier') or 'Standard'}",
                    f"Tracking number: {order.get('tracking_number')}",
                    f"Estimated delivery: {order.get('estimated_delivery')}",
                ]
                subject = f"Order {number} has shipped"
            else:
                details = [f"Your order {number} was delivered. We hope you enjoy it!"]
                subject = f"Order {number} delivered"
            return subject, "\n".join([greeting, "", *details, "", store])

        return None

    async def __call__(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one outbox event.

        Raises:
            Exception: Any delivery failure, so the outbox keeps the event
        """
        event_type = event_data.get("event_type", "")
        payload = event_data.get("payload") or {}
        rendered = self.render(event_type, payload)
        if rendered is None:
            logger.warning("notification_event_unhandled", event_type=event_type)
            return

        recipient = payload.get("order", {}).get("customer_email")
        if not recipient:
            logger.warning("notification_missing_recipient", event_type=event_type)
            return

        subject, body = rendered
        try:
            sent = await self.notifier.send(recipient, subject, body)
        except Exception:
            metrics.record_notification(event_type, "failed")
            raise
        metrics.record_notification(event_type, "sent" if sent else "logged")
