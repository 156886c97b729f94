"""
Order pricing and money conversion.

Amounts on the HTTP surface and in the order store are decimal major units
(rupees). The gateway only accepts integer minor units (paise).
to_minor_units is the single conversion point and is called exactly once
per gateway-bound amount: at order creation and at refund initiation.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Tuple

from config import Settings, get_settings
from core.exceptions import ValidationError

CENT = Decimal("0.01")
MINOR_UNITS_PER_MAJOR = 100


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Args:
        amount: Amount in major units (e.g. 1161.00 rupees)

    Returns:
        int: Amount in minor units (e.g. 116100 paise)

    Raises:
        ValidationError: If the amount is not positive
    """
    minor = quantize(amount) * MINOR_UNITS_PER_MAJOR
    if minor <= 0:
        raise ValidationError.for_field("amount", "Amount must be greater than zero")
    return int(minor)


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert gateway minor units back to major units for display."""
    return quantize(Decimal(amount_minor) / MINOR_UNITS_PER_MAJOR)


@dataclass(frozen=True)
class OrderCharges:
    """Monetary breakdown of an order."""

    subtotal: Decimal
    shipping_charges: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal

    def is_consistent(self) -> bool:
        return self.total_amount == compute_total(
            self.subtotal, self.shipping_charges, self.tax_amount, self.discount_amount
        )


def compute_total(
    subtotal: Decimal,
    shipping_charges: Decimal,
    tax_amount: Decimal,
    discount_amount: Decimal,
) -> Decimal:
    """total = subtotal + shipping + tax - discount."""
    return quantize(subtotal + shipping_charges + tax_amount - discount_amount)


def items_subtotal(lines: Iterable[Tuple[Decimal, int]]) -> Decimal:
    """Sum (unit_price, quantity) pairs."""
    return quantize(sum((quantize(price) * qty for price, qty in lines), Decimal("0")))


def compute_charges(
    subtotal: Decimal,
    discount_amount: Decimal = Decimal("0"),
    settings: Optional[Settings] = None,
) -> OrderCharges:
    """
    Compute shipping, tax and total for a subtotal.

    Shipping is free at or above the free-shipping threshold. Tax applies to
    the subtotal only and is rounded to whole currency units.

    Args:
        subtotal: Sum of line totals in major units
        discount_amount: Discount in major units
        settings: Optional settings override

    Returns:
        OrderCharges: Complete monetary breakdown
    """
    settings = settings or get_settings()
    subtotal = quantize(subtotal)
    discount_amount = quantize(discount_amount)

    if subtotal <= 0:
        raise ValidationError.for_field("amount", "Subtotal must be greater than zero")
    if discount_amount < 0 or discount_amount > subtotal:
        raise ValidationError.for_field("discount", "Discount must be between 0 and subtotal")

    if subtotal >= settings.free_shipping_threshold:
        shipping = Decimal("0")
    else:
        shipping = settings.standard_shipping_charge
    shipping = quantize(shipping)

    tax = quantize((subtotal * settings.tax_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    return OrderCharges(
        subtotal=subtotal,
        shipping_charges=shipping,
        tax_amount=tax,
        discount_amount=discount_amount,
        total_amount=compute_total(subtotal, shipping, tax, discount_amount),
    )
