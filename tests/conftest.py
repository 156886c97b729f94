"""
Pytest configuration and fixtures.
"""
import os

# Required settings must exist before any module calls get_settings()
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_fake_key_for_testing")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test_jwt_secret")
os.environ.setdefault("APP_ENV", "test")

import itertools  # noqa: E402
import json  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator, Callable, Dict, List  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from api.auth import create_access_token  # noqa: E402
from api.dependencies import get_reconciliation_engine, get_webhook_handler  # noqa: E402
from api.main import app  # noqa: E402
from config import Settings  # noqa: E402
from core.commands import CustomerDetails, LineItem, PlaceOrder  # noqa: E402
from core.exceptions import NotFound  # noqa: E402
from core.reconciliation import ReconciliationEngine  # noqa: E402
from database.connection import get_db  # noqa: E402
from database.models import Base  # noqa: E402
from integrations.razorpay_client import (  # noqa: E402
    PaymentSnapshot,
    RazorpayClient,
    RefundResult,
    RemoteOrder,
)
from integrations.signatures import compute_signature, payment_signature_message  # noqa: E402
from integrations.webhook_handler import WebhookHandler  # noqa: E402


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        razorpay_key_id="rzp_test_fake_key_for_testing",
        razorpay_key_secret="test_key_secret",
        razorpay_webhook_secret="test_webhook_secret",
        razorpay_api_base_url="https://gateway.test/v1",
        database_url="sqlite+aiosqlite:///:memory:",
        jwt_secret_key="test_jwt_secret",
        app_name="order-reconciliation-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Session factory over a fresh file-backed SQLite database per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    # Cleanup
    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def remote_payments() -> Dict[str, Dict[str, Any]]:
    """Payments the fake gateway knows about, keyed by payment id."""
    return {}


@pytest.fixture
def gateway(remote_payments: Dict[str, Dict[str, Any]]) -> AsyncMock:
    """Gateway client double returning realistic snapshots."""
    counter = itertools.count(1)
    mock_gateway = AsyncMock(spec=RazorpayClient)

    def create_remote_order(
        amount_minor: int, currency: str, receipt: str, notes: Any = None
    ) -> RemoteOrder:
        return RemoteOrder.from_entity(
            {
                "id": f"order_test{next(counter):04d}",
                "entity": "order",
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "status": "created",
            }
        )

    def fetch_remote_payment(payment_id: str) -> PaymentSnapshot:
        if payment_id not in remote_payments:
            raise NotFound(f"Payment {payment_id} not found")
        return PaymentSnapshot.from_entity(remote_payments[payment_id])

    def fetch_order_payments(remote_order_id: str) -> List[PaymentSnapshot]:
        return [
            PaymentSnapshot.from_entity(entity)
            for entity in remote_payments.values()
            if entity.get("order_id") == remote_order_id
        ]

    def create_refund(
        payment_id: str, amount_minor: int, reason: Any = None, receipt: Any = None
    ) -> RefundResult:
        return RefundResult.from_entity(
            {
                "id": f"rfnd_test{next(counter):04d}",
                "entity": "refund",
                "payment_id": payment_id,
                "amount": amount_minor,
                "status": "processed",
            }
        )

    mock_gateway.create_remote_order = AsyncMock(side_effect=create_remote_order)
    mock_gateway.fetch_remote_payment = AsyncMock(side_effect=fetch_remote_payment)
    mock_gateway.fetch_order_payments = AsyncMock(side_effect=fetch_order_payments)
    mock_gateway.create_refund = AsyncMock(side_effect=create_refund)
    return mock_gateway


@pytest.fixture
def engine(gateway: AsyncMock, test_settings: Settings) -> ReconciliationEngine:
    return ReconciliationEngine(gateway, test_settings)


@pytest.fixture
def webhook_handler(engine: ReconciliationEngine, test_settings: Settings) -> WebhookHandler:
    return WebhookHandler(engine, test_settings)


@pytest.fixture
def place_order_command() -> PlaceOrder:
    """Two tees at 450: subtotal 900, shipping 99, tax 162, total 1161."""
    return PlaceOrder(
        amount=Decimal("900"),
        items=(
            LineItem(
                product_id="tee-001",
                name="Classic Tee",
                quantity=2,
                unit_price=Decimal("450"),
                color="black",
                size="M",
            ),
        ),
        customer=CustomerDetails(
            name="Asha Rao",
            email="asha@example.com",
            phone="9876543210",
            address={
                "street": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "country": "India",
                "pincode": "560001",
            },
        ),
    )


@pytest.fixture
def create_order_payload() -> Dict[str, Any]:
    """Order creation request body as sent by the storefront."""
    return {
        "amount": 900,
        "currency": "INR",
        "items": [
            {
                "productId": "tee-001",
                "name": "Classic Tee",
                "color": "black",
                "size": "M",
                "quantity": 2,
                "price": 450,
            }
        ],
        "userDetails": {
            "name": "Asha Rao",
            "email": "asha@example.com",
            "phone": "9876543210",
            "address": {
                "street": "12 MG Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "pincode": "560001",
            },
        },
    }


@pytest.fixture
def capture_payment(
    remote_payments: Dict[str, Dict[str, Any]],
) -> Callable[..., Dict[str, Any]]:
    """Register a payment with the fake gateway and return its entity."""

    def _capture(
        remote_order_id: str,
        payment_id: str = "pay_test0001",
        amount: int = 116100,
        status: str = "captured",
    ) -> Dict[str, Any]:
        entity = {
            "id": payment_id,
            "entity": "payment",
            "order_id": remote_order_id,
            "amount": amount,
            "currency": "INR",
            "status": status,
            "method": "upi",
            "error_description": None if status == "captured" else "Payment declined by bank",
        }
        remote_payments[payment_id] = entity
        return entity

    return _capture


@pytest.fixture
def sign_payment(test_settings: Settings) -> Callable[[str, str], str]:
    def _sign(remote_order_id: str, payment_id: str) -> str:
        return compute_signature(
            payment_signature_message(remote_order_id, payment_id),
            test_settings.razorpay_key_secret,
        )

    return _sign


@pytest.fixture
def webhook_body(test_settings: Settings) -> Callable[..., Any]:
    """Build a raw webhook body and its signature header."""

    def _build(event: str, **entities: Dict[str, Any]) -> Any:
        body = json.dumps(
            {
                "entity": "event",
                "event": event,
                "payload": {name: {"entity": entity} for name, entity in entities.items()},
            }
        ).encode("utf-8")
        return body, compute_signature(body, test_settings.razorpay_webhook_secret)

    return _build


@pytest.fixture
def admin_token() -> str:
    return create_access_token("admin@example.com")


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    engine: ReconciliationEngine,
    webhook_handler: WebhookHandler,
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    app.dependency_overrides[get_webhook_handler] = lambda: webhook_handler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
