"""SQLAlchemy database models for the order store."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from core.state import (
    FulfillmentStatus,
    OrderState,
    PaymentStatus,
    state_check_sql,
)

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")
Money = Numeric(12, 2)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Order(Base):
    """
    Orders table.

    The single source of truth for an order's payment and fulfillment
    state. Status columns are only ever changed through a conditional
    update (see OrderRepository.compare_and_set); rows are never deleted.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    gateway_order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(
        String(64), unique=True, nullable=True
    )
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    receipt: Mapped[str] = mapped_column(String(40), nullable=False)

    customer_name: Mapped[str] = mapped_column(String(100), nullable=False)
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    customer_phone: Mapped[str] = mapped_column(String(20), nullable=False)
    shipping_address: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)

    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="INR")
    subtotal: Mapped[Decimal] = mapped_column(Money, nullable=False)
    shipping_charges: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)

    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FulfillmentStatus.PENDING.value, index=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    carrier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    client_info: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    items: Mapped[List["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderItem.id",
    )

    __table_args__ = (
        CheckConstraint(state_check_sql(), name="valid_state_pair"),
        CheckConstraint(
            "total_amount = subtotal + shipping_charges + tax_amount - discount_amount",
            name="total_matches_components",
        ),
        CheckConstraint("total_amount > 0", name="positive_total"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_state", "payment_status", "status"),
        Index("idx_orders_created_desc", "created_at", postgresql_ops={"created_at": "DESC"}),
    )

    @property
    def state(self) -> OrderState:
        return OrderState(PaymentStatus(self.payment_status), FulfillmentStatus(self.status))

    def snapshot(self) -> Dict[str, Any]:
        """
        Plain-data copy of the order for collaborators.

        The notifier and the outbox only ever receive this snapshot, never
        the ORM object.
        """
        return {
            "order_id": str(self.id),
            "order_number": self.order_number,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "currency": self.currency,
            "total_amount": str(self.total_amount),
            "payment_status": self.payment_status,
            "status": self.status,
            "payment_id": self.gateway_payment_id,
            "carrier": self.carrier,
            "tracking_number": self.tracking_number,
            "estimated_delivery": (
                self.estimated_delivery.isoformat() if self.estimated_delivery else None
            ),
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "items": [
                {"name": item.name, "quantity": item.quantity, "line_total": str(item.line_total)}
                for item in self.items
            ],
        }

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, number={self.order_number}, "
            f"state=({self.payment_status}, {self.status}), total={self.total_amount})>"
        )


class OrderItem(Base):
    """Line items of an order. Written once at placement."""

    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    image: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    order: Mapped[Order] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("unit_price > 0", name="positive_unit_price"),
    )

    def __repr__(self) -> str:
        """String representation of OrderItem."""
        return f"<OrderItem(id={self.id}, product={self.product_id}, qty={self.quantity})>"


class OrderNote(Base):
    """
    Order audit log table.

    Append-only: notes are never edited or removed. A note written as the
    side effect of a gateway event carries a business reference
    (e.g. "refund.processed:rfnd_123"), unique per order, so that a
    redelivered event cannot append the same note twice.
    """

    __tablename__ = "order_notes"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="RESTRICT"), nullable=False
    )
    note: Mapped[str] = mapped_column(Text, nullable=False)
    added_by: Mapped[str] = mapped_column(String(100), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("order_id", "reference", name="uq_order_note_reference"),
        Index("idx_order_notes_order", "order_id", "id"),
    )

    def __repr__(self) -> str:
        """String representation of OrderNote."""
        return f"<OrderNote(id={self.id}, order_id={self.order_id}, by={self.added_by})>"


class WebhookAnomaly(Base):
    """
    Webhook events that could not be applied to any order.

    Recorded instead of failing the webhook delivery so operators can
    investigate (unknown payment id, capture for an already-paid order, ...).
    """

    __tablename__ = "webhook_anomalies"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    reason: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )

    def __repr__(self) -> str:
        """String representation of WebhookAnomaly."""
        return (
            f"<WebhookAnomaly(id={self.id}, event={self.event_type}, "
            f"entity={self.entity_id}, reason={self.reason})>"
        )


class OutboxEvent(Base):
    """
    Transactional outbox events table.

    Notification events are written in the same transaction as the order
    transition that caused them, then delivered asynchronously by the
    outbox publisher. A failed delivery never affects the order.
    """

    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    aggregate_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False)
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now()
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "idx_outbox_unpublished",
            "published",
            "created_at",
            postgresql_where=text("NOT published"),
        ),
        Index("idx_outbox_aggregate", "aggregate_id", "aggregate_type"),
    )

    def __repr__(self) -> str:
        """String representation of OutboxEvent."""
        return (
            f"<OutboxEvent(id={self.id}, type={self.event_type}, "
            f"published={self.published})>"
        )


class Product(Base):
    """
    Product catalog table.

    Sizes carry the stock; ``stock`` is their total and is recomputed by
    the catalog service whenever sizes change. ``variants`` lists one SKU
    per size/color combination. Order items keep their own copy of name
    and price, so products can be edited or removed freely.
    """

    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    slug: Mapped[str] = mapped_column(String(220), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)

    price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    original_price: Mapped[Optional[Decimal]] = mapped_column(Money, nullable=True)
    discount: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("0"))

    category: Mapped[str] = mapped_column(String(30), nullable=False)
    subcategory: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    material: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    colors: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    sizes: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    variants: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    images: Mapped[List[Dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    care_instructions: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)
    features: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=10)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_new: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    meta_title: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    meta_description: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    keywords: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="non_negative_price"),
        CheckConstraint("discount >= 0 AND discount <= 100", name="discount_percentage"),
        CheckConstraint("stock >= 0", name="non_negative_stock"),
        CheckConstraint(
            "category IN ('tshirts', 'hoodies', 'sweatshirts', 'pants', 'accessories')",
            name="known_category",
        ),
        Index("idx_products_category_active", "category", "is_active"),
        Index("idx_products_price", "price"),
    )

    def __repr__(self) -> str:
        """String representation of Product."""
        return f"<Product(id={self.id}, slug={self.slug}, stock={self.stock})>"
