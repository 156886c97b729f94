"""Database package for the order store."""
from .connection import close_db, get_db, get_session_factory, init_db
from .models import (
    Base,
    Order,
    OrderItem,
    OrderNote,
    OutboxEvent,
    Product,
    WebhookAnomaly,
)
from .repository import OrderFilters, OrderRepository, ProductFilters, ProductRepository

__all__ = [
    "Base",
    "Order",
    "OrderItem",
    "OrderNote",
    "OutboxEvent",
    "Product",
    "WebhookAnomaly",
    "OrderFilters",
    "OrderRepository",
    "ProductFilters",
    "ProductRepository",
    "close_db",
    "get_db",
    "get_session_factory",
    "init_db",
]
