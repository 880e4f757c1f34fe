"""
Shared test fixtures and helpers for the order engine test suite.
"""

import asyncio
import json
from typing import Dict, List, Optional

import pytest

from config import GatewayConfig, ServerConfig, Settings
from pipeline.checkout import CheckoutPipeline
from pipeline.errors import GatewayUnavailable
from pipeline.gateway_adapter import GatewayOrder, IPaymentGateway
from pipeline.signatures import compute_signature, payment_message
from schemas.order_definitions import Buyer, CartItem, Order, Product
from services.audit import InMemoryAuditLog
from services.notifications import IOrderNotifier
from storage.repositories import (
    InMemoryCustomerStore,
    InMemoryIdempotencyStore,
    InMemoryOrderRepository,
    InMemoryProductStore,
)

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
ADMIN_TOKEN = "test-admin-token"


# ============================================================================
# Fakes
# ============================================================================


class FakeGateway(IPaymentGateway):
    """Gateway double: deterministic refs, switchable failure and latency."""

    def __init__(self, available: bool = True, fail: bool = False, delay: float = 0.0):
        self.available = available
        self.fail = fail
        self.delay = delay
        self.calls: List[str] = []

    @property
    def is_available(self) -> bool:
        return self.available

    @property
    def client_key(self) -> Optional[str]:
        return KEY_ID

    async def register_order(self, order: Order) -> GatewayOrder:
        self.calls.append(order.order_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise GatewayUnavailable("gateway unreachable: ConnectError")
        return GatewayOrder(
            gateway_order_ref=f"order_{order.order_id}",
            amount=order.amount,
            currency=order.currency,
            receipt=order.order_id,
            status="created",
        )


class RecordingNotifier(IOrderNotifier):

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[str] = []

    async def send_order_confirmation(self, order: Order) -> Optional[str]:
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append(order.order_id)
        return f"msg-{order.order_id}"


# ============================================================================
# Signing helpers
# ============================================================================


def sign_payment(gateway_order_ref: str, gateway_payment_ref: str, secret: str = KEY_SECRET) -> str:
    return compute_signature(secret, payment_message(gateway_order_ref, gateway_payment_ref))


def sign_webhook(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return compute_signature(secret, body)


def webhook_body(event_type: str, gateway_order_ref: Optional[str], payment_ref: str = "pay_test_1") -> bytes:
    entity: Dict[str, object] = {"id": payment_ref, "entity": "payment", "amount": 1000, "currency": "INR"}
    if gateway_order_ref is not None:
        entity["order_id"] = gateway_order_ref
    if event_type == "payment.failed":
        entity["error_code"] = "BAD_REQUEST_ERROR"
        entity["error_description"] = "Payment declined by bank"
    event = {
        "entity": "event",
        "event": event_type,
        "payload": {"payment": {"entity": entity}},
    }
    return json.dumps(event).encode()


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gateway=GatewayConfig(
            key_id=KEY_ID,
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            timeout_seconds=0.5,
        ),
        server=ServerConfig(env="test", admin_api_token=ADMIN_TOKEN),
    )


@pytest.fixture
def products() -> InMemoryProductStore:
    return InMemoryProductStore([
        Product(product_id="lavender", title="Lavender Candle", price=500, stock=10),
        Product(product_id="vanilla", title="Vanilla Candle", price=1200, stock=0),
        Product(product_id="retired", title="Retired Candle", price=800, stock=5, active=False),
        Product(product_id="last-one", title="Rose Candle", price=700, stock=1),
    ])


@pytest.fixture
def customers() -> InMemoryCustomerStore:
    return InMemoryCustomerStore(["cust_1"])


@pytest.fixture
def orders() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def ledger() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def pipeline(settings, products, customers, orders, ledger, audit_log, notifier, gateway):
    pipeline = CheckoutPipeline(
        settings,
        products=products,
        customers=customers,
        orders=orders,
        ledger=ledger,
        audit_log=audit_log,
        notifier=notifier,
        gateway=gateway,
    )
    yield pipeline
    await pipeline.drain()


@pytest.fixture
def buyer() -> Buyer:
    return Buyer(name="Asha Rao", email="asha@example.com", phone="+919800000000")


@pytest.fixture
def two_candles() -> List[CartItem]:
    return [CartItem(product_id="lavender", quantity=2)]


async def stock_of(products: InMemoryProductStore, product_id: str) -> int:
    found = await products.get_many([product_id])
    return found[product_id].stock
