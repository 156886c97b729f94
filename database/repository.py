"""
Order store access.

All order status changes go through compare_and_set, a single conditional
UPDATE that only succeeds while the row is still in the expected state.
Losing that race is reported as False, never raised.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.state import CAPTURABLE_STATES, OrderState
from database.models import Order, OrderNote, OutboxEvent, Product, WebhookAnomaly

logger = structlog.get_logger(__name__)


@dataclass
class OrderFilters:
    """Admin listing filters. Every field is optional."""

    status: Optional[str] = None
    payment_status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    search: Optional[str] = None


class OrderRepository:
    """Queries and conditional writes against the order store."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self.db.get(Order, order_id)

    async def reload(self, order_id: uuid.UUID) -> Order:
        """Fetch the current row, replacing any stale copy in the session."""
        stmt = (
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(Order.gateway_order_id == gateway_order_id)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_id(self, payment_id: str) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(Order.gateway_payment_id == payment_id)
        )
        return result.scalar_one_or_none()

    async def find_for_payment(
        self, payment_id: Optional[str], gateway_order_id: Optional[str]
    ) -> Optional[Order]:
        """
        Locate the order a gateway payment belongs to.

        The payment id is only stored once the payment succeeded, so a
        first-time capture or failure is matched through the remote order id.
        """
        order = None
        if payment_id:
            order = await self.get_by_payment_id(payment_id)
        if order is None and gateway_order_id:
            order = await self.get_by_gateway_order_id(gateway_order_id)
        return order

    def add(self, order: Order) -> None:
        self.db.add(order)

    async def compare_and_set(
        self,
        order_id: uuid.UUID,
        expected: OrderState,
        target: OrderState,
        values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Atomically move an order from expected to target state.

        Args:
            order_id: Internal order id
            expected: State the order must currently be in
            target: State to set
            values: Additional enumerated column values to write

        Returns:
            bool: True if this call applied the transition, False if the
            order was no longer in the expected state
        """
        values = dict(values or {})
        stmt = update(Order).where(
            Order.id == order_id,
            Order.payment_status == expected.payment.value,
            Order.status == expected.fulfillment.value,
        )
        payment_id = values.get("gateway_payment_id")
        if payment_id is not None:
            # A payment id, once set, never changes
            stmt = stmt.where(
                or_(Order.gateway_payment_id.is_(None), Order.gateway_payment_id == payment_id)
            )

        stmt = stmt.values(
            payment_status=target.payment.value,
            status=target.fulfillment.value,
            version=Order.version + 1,
            **values,
        ).execution_options(synchronize_session=False)

        result = await self.db.execute(stmt)
        applied = result.rowcount == 1

        logger.debug(
            "order_compare_and_set",
            order_id=str(order_id),
            expected=str(expected),
            target=str(target),
            applied=applied,
        )
        return applied

    def add_note(
        self,
        order_id: uuid.UUID,
        note: str,
        added_by: str,
        reference: Optional[str] = None,
    ) -> OrderNote:
        entry = OrderNote(order_id=order_id, note=note, added_by=added_by, reference=reference)
        self.db.add(entry)
        return entry

    async def has_note_reference(self, order_id: uuid.UUID, reference: str) -> bool:
        result = await self.db.execute(
            select(OrderNote.id).where(
                OrderNote.order_id == order_id, OrderNote.reference == reference
            )
        )
        return result.first() is not None

    async def list_notes(self, order_id: uuid.UUID) -> List[OrderNote]:
        result = await self.db.execute(
            select(OrderNote).where(OrderNote.order_id == order_id).order_by(OrderNote.id)
        )
        return list(result.scalars().all())

    def add_outbox_event(
        self, order_id: uuid.UUID, event_type: str, payload: Dict[str, Any]
    ) -> OutboxEvent:
        event = OutboxEvent(
            aggregate_id=order_id,
            aggregate_type="order",
            event_type=event_type,
            payload=payload,
            published=False,
            attempts=0,
        )
        self.db.add(event)
        return event

    def add_anomaly(
        self,
        event_type: str,
        entity_id: Optional[str],
        reason: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> WebhookAnomaly:
        anomaly = WebhookAnomaly(
            event_type=event_type, entity_id=entity_id, reason=reason, payload=payload
        )
        self.db.add(anomaly)
        return anomaly

    async def list_anomalies(self, limit: int = 50) -> List[WebhookAnomaly]:
        result = await self.db.execute(
            select(WebhookAnomaly).order_by(WebhookAnomaly.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    def _apply_filters(stmt: Any, filters: OrderFilters) -> Any:
        if filters.status:
            stmt = stmt.where(Order.status == filters.status)
        if filters.payment_status:
            stmt = stmt.where(Order.payment_status == filters.payment_status)
        if filters.start_date:
            stmt = stmt.where(Order.created_at >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Order.created_at <= filters.end_date)
        if filters.search:
            pattern = f"%{filters.search}%"
            stmt = stmt.where(
                or_(
                    Order.order_number.ilike(pattern),
                    Order.customer_name.ilike(pattern),
                    Order.customer_email.ilike(pattern),
                    Order.gateway_order_id.ilike(pattern),
                )
            )
        return stmt

    async def list_orders(
        self, filters: OrderFilters, page: int = 1, limit: int = 20
    ) -> Tuple[List[Order], int]:
        """Filtered, newest-first page of orders plus the total match count."""
        count_stmt = self._apply_filters(select(func.count(Order.id)), filters)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            self._apply_filters(select(Order), filters)
            .order_by(Order.created_at.desc(), Order.order_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total

    async def summarize(self, filters: OrderFilters) -> Dict[str, Any]:
        """Order count and revenue per payment status for the filtered set."""
        stmt = self._apply_filters(
            select(
                Order.payment_status,
                func.count(Order.id),
                func.coalesce(func.sum(Order.total_amount), 0),
            ),
            filters,
        ).group_by(Order.payment_status)
        rows: Sequence[Any] = (await self.db.execute(stmt)).all()

        by_payment_status = {
            payment_status: {"count": count, "amount": str(Decimal(str(amount)))}
            for payment_status, count, amount in rows
        }
        paid_revenue = sum(
            (Decimal(str(amount)) for payment_status, _, amount in rows if payment_status == "success"),
            Decimal("0"),
        )
        return {
            "total_orders": sum(count for _, count, _ in rows),
            "paid_revenue": str(paid_revenue),
            "by_payment_status": by_payment_status,
        }

    async def list_by_email(self, email: str) -> List[Order]:
        result = await self.db.execute(
            select(Order)
            .where(func.lower(Order.customer_email) == email.lower())
            .order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def recent(self, limit: int = 10) -> List[Order]:
        result = await self.db.execute(
            select(Order).order_by(Order.created_at.desc(), Order.order_number.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def unpaid_between(
        self, created_after: datetime, created_before: datetime, limit: int = 100
    ) -> List[Order]:
        """
        Orders a late capture could still confirm, created inside the window.

        Covers pending orders and failed ones, since a customer may retry
        after a declined payment.
        """
        capturable = sorted({state.payment.value for state in CAPTURABLE_STATES})
        result = await self.db.execute(
            select(Order)
            .where(
                Order.payment_status.in_(capturable),
                Order.created_at >= created_after,
                Order.created_at <= created_before,
            )
            .order_by(Order.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())


@dataclass
class ProductFilters:
    """
    Admin catalog filters.

    status is one of active, inactive, featured, new, low-stock or
    out-of-stock; low-stock means in stock but at or below the product's
    own threshold.
    """

    search: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None


class ProductRepository:
    """Queries against the product catalog."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, product_id: uuid.UUID) -> Optional[Product]:
        return await self.db.get(Product, product_id)

    def add(self, product: Product) -> None:
        self.db.add(product)

    async def delete(self, product: Product) -> None:
        await self.db.delete(product)

    async def slug_taken(self, slug: str, exclude_id: Optional[uuid.UUID] = None) -> bool:
        stmt = select(func.count(Product.id)).where(Product.slug == slug)
        if exclude_id is not None:
            stmt = stmt.where(Product.id != exclude_id)
        return bool(await self.db.scalar(stmt))

    @staticmethod
    def _apply_filters(stmt: Any, filters: ProductFilters) -> Any:
        if filters.search:
            pattern = f"%{filters.search.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Product.name).like(pattern),
                    func.lower(Product.description).like(pattern),
                    func.lower(Product.slug).like(pattern),
                )
            )
        if filters.category:
            stmt = stmt.where(Product.category == filters.category)

        status_clauses = {
            "active": Product.is_active.is_(True),
            "inactive": Product.is_active.is_(False),
            "featured": Product.is_featured.is_(True),
            "new": Product.is_new.is_(True),
            "low-stock": (Product.stock > 0) & (Product.stock <= Product.low_stock_threshold),
            "out-of-stock": Product.stock <= 0,
        }
        if filters.status in status_clauses:
            stmt = stmt.where(status_clauses[filters.status])
        return stmt

    async def list_products(
        self, filters: ProductFilters, page: int = 1, limit: int = 20
    ) -> Tuple[List[Product], int]:
        """Newest first, with the total count of the filtered set."""
        total = await self.db.scalar(
            self._apply_filters(select(func.count(Product.id)), filters)
        )
        stmt = (
            self._apply_filters(select(Product), filters)
            .order_by(Product.created_at.desc(), Product.slug)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all()), total or 0
