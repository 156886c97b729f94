"""
Commands accepted by the reconciliation engine.

Each command enumerates exactly the fields its operation may change, so
protected fields (payment identifiers, totals) can never be overwritten by
a caller-supplied payload. Commands validate themselves on construction.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from core.exceptions import ValidationError
from core.pricing import items_subtotal, quantize
from core.state import FulfillmentStatus

MAX_NOTES_LENGTH = 500


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return quantize(quantize(self.unit_price) * self.quantity)


@dataclass(frozen=True)
class CustomerDetails:
    name: str
    email: str
    phone: str
    address: Dict[str, Any]


@dataclass(frozen=True)
class PlaceOrder:
    """Create a remote order and persist a (pending, pending) order."""

    amount: Decimal
    items: Tuple[LineItem, ...]
    customer: CustomerDetails
    currency: str = "INR"
    client_info: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.items:
            raise ValidationError.for_field("items", "Order must contain at least one item")
        for item in self.items:
            if item.quantity < 1:
                raise ValidationError.for_field("items", "Item quantity must be at least 1")
            if item.unit_price <= 0:
                raise ValidationError.for_field("items", "Item price must be greater than zero")
        if quantize(self.amount) != self.subtotal:
            raise ValidationError.for_field(
                "amount",
                f"Amount {quantize(self.amount)} does not match items subtotal {self.subtotal}",
            )

    @property
    def subtotal(self) -> Decimal:
        return items_subtotal((item.unit_price, item.quantity) for item in self.items)


@dataclass(frozen=True)
class VerifyPayment:
    """Client-side verification callback after checkout."""

    remote_order_id: str
    remote_payment_id: str
    signature: str

    def __post_init__(self) -> None:
        for name in ("remote_order_id", "remote_payment_id", "signature"):
            if not getattr(self, name):
                raise ValidationError.for_field(name, f"{name} is required")


@dataclass(frozen=True)
class UpdateOrderStatus:
    """Admin fulfillment status change."""

    status: FulfillmentStatus
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None

    def __post_init__(self) -> None:
        if self.status == FulfillmentStatus.SHIPPED and not self.tracking_number:
            raise ValidationError.for_field(
                "tracking_number", "Tracking number is required when status is shipped"
            )
        if self.notes is not None and len(self.notes) > MAX_NOTES_LENGTH:
            raise ValidationError.for_field(
                "notes", f"Notes must be at most {MAX_NOTES_LENGTH} characters"
            )


@dataclass(frozen=True)
class RefundPayment:
    """Admin refund. A missing amount means a full refund."""

    amount: Optional[Decimal] = None
    reason: Optional[str] = None

    def __post_init__(self) -> None:
        if self.amount is not None and self.amount <= 0:
            raise ValidationError.for_field("amount", "Refund amount must be greater than zero")
