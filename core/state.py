"""
Order status axes and the valid (payment, fulfillment) combinations.

An order carries two status fields that must stay consistent with each
other. Only the pairs in VALID_STATES may be observed at rest; any
transition that would land elsewhere is rejected.
"""
from enum import Enum
from typing import FrozenSet, NamedTuple

from core.exceptions import InvalidStateTransition


class PaymentStatus(str, Enum):
    """Payment axis of an order."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    """Order/fulfillment axis of an order."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


class OrderState(NamedTuple):
    payment: PaymentStatus
    fulfillment: FulfillmentStatus

    def __str__(self) -> str:
        return f"({self.payment.value}, {self.fulfillment.value})"


PENDING = OrderState(PaymentStatus.PENDING, FulfillmentStatus.PENDING)
CONFIRMED = OrderState(PaymentStatus.SUCCESS, FulfillmentStatus.CONFIRMED)
SHIPPED = OrderState(PaymentStatus.SUCCESS, FulfillmentStatus.SHIPPED)
DELIVERED = OrderState(PaymentStatus.SUCCESS, FulfillmentStatus.DELIVERED)
FAILED = OrderState(PaymentStatus.FAILED, FulfillmentStatus.FAILED)
REFUNDED = OrderState(PaymentStatus.REFUNDED, FulfillmentStatus.CANCELLED)

VALID_STATES: FrozenSet[OrderState] = frozenset(
    {PENDING, CONFIRMED, SHIPPED, DELIVERED, FAILED, REFUNDED}
)

# States from which a captured payment moves the order to CONFIRMED
CAPTURABLE_STATES: FrozenSet[OrderState] = frozenset({PENDING, FAILED})


def is_valid_state(state: OrderState) -> bool:
    return state in VALID_STATES


def ensure_valid_state(state: OrderState) -> OrderState:
    """
    Validate a transition target.

    Args:
        state: Target (payment, fulfillment) pair

    Returns:
        OrderState: The same state, for chaining

    Raises:
        InvalidStateTransition: If the pair is not one of the valid combinations
    """
    if state not in VALID_STATES:
        raise InvalidStateTransition(
            f"Invalid order state {state}",
            payment_status=state.payment.value,
            status=state.fulfillment.value,
        )
    return state


def state_check_sql(payment_column: str = "payment_status", status_column: str = "status") -> str:
    """Render VALID_STATES as a SQL CHECK expression."""
    clauses = [
        f"({payment_column} = '{s.payment.value}' AND {status_column} = '{s.fulfillment.value}')"
        for s in sorted(VALID_STATES, key=lambda s: (s.payment.value, s.fulfillment.value))
    ]
    return " OR ".join(clauses)
