# schemas/order_definitions.py
# ============================================================================
# STOREFRONT ORDER ENGINE — ORDER SCHEMAS
# ============================================================================
# Order aggregate, price snapshot line items, catalog records and the
# result types handed back by the checkout pipeline.
# ============================================================================

from typing import Dict, Any, List, Optional
from datetime import datetime
from enum import Enum
import uuid

from pydantic import BaseModel, Field, computed_field, model_validator


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    AWAITING_PAYMENT_SETUP = "awaiting_payment_setup"
    PAID = "paid"  # legacy spelling of CAPTURED
    CAPTURED = "captured"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ConfirmationSource(str, Enum):
    """Which path confirmed the payment."""
    CALLBACK = "callback"
    WEBHOOK = "webhook"
    ADMIN = "admin"


CONFIRMED_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.CAPTURED})

# Terminal for the automated flow; only an operator moves an order out.
TERMINAL_STATUSES = frozenset({
    OrderStatus.PAID,
    OrderStatus.CAPTURED,
    OrderStatus.FAILED,
    OrderStatus.CANCELLED,
})

OPEN_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.AWAITING_PAYMENT_SETUP})

DELETABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.FAILED})

# Entering one of these gives reserved stock back to the catalog.
STOCK_RELEASING_STATUSES = frozenset({OrderStatus.FAILED, OrderStatus.CANCELLED})


# ============================================================================
# SECTION 2: CATALOG
# ============================================================================

class Product(BaseModel):
    """Catalog record as seen by the order engine (read-only here)."""
    product_id: str
    title: str
    price: int = Field(ge=0, description="Smallest currency unit")
    stock: int = Field(default=0, ge=0)
    active: bool = True
    images: List[str] = Field(default_factory=list)


class CartItem(BaseModel):
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class LineItem(BaseModel):
    """Price snapshot frozen into an order at creation."""
    model_config = {"frozen": True}

    product_id: str
    title: str
    unit_price: int = Field(ge=0)
    quantity: int = Field(gt=0)

    @computed_field
    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


class ResolvedCart(BaseModel):
    """Output of the catalog snapshot resolver."""
    line_items: List[LineItem]
    amount: int

    def quantities(self) -> Dict[str, int]:
        """Total requested quantity per product (duplicates merged)."""
        totals: Dict[str, int] = {}
        for item in self.line_items:
            totals[item.product_id] = totals.get(item.product_id, 0) + item.quantity
        return totals


# ============================================================================
# SECTION 3: ORDER AGGREGATE
# ============================================================================

class Buyer(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: Optional[str] = None


class Order(BaseModel):
    """Core order entity"""
    order_id: str
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    buyer: Buyer
    customer_ref: Optional[str] = None

    line_items: List[LineItem]
    amount: int
    currency: str = "INR"

    status: OrderStatus = OrderStatus.PENDING
    previous_status: Optional[OrderStatus] = None
    confirmed_via: Optional[ConfirmationSource] = None

    gateway_order_ref: Optional[str] = None
    gateway_payment_ref: Optional[str] = None
    gateway_signature: Optional[str] = None

    stock_reserved: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    confirmed_at: Optional[datetime] = None
    version: int = 1

    @model_validator(mode="after")
    def _amount_matches_snapshot(self) -> "Order":
        expected = sum(item.line_total for item in self.line_items)
        if self.amount != expected:
            raise ValueError(f"amount {self.amount} does not match line items total {expected}")
        return self

    @computed_field
    @property
    def is_payment_confirmed(self) -> bool:
        return self.status in CONFIRMED_STATUSES

    @staticmethod
    def generate_order_id() -> str:
        return f"ORD-{uuid.uuid4().hex[:16].upper()}"

    def transition_to(self, new_status: OrderStatus, **changes: Any) -> "Order":
        """Immutable state transition with audit trail"""
        return self.model_copy(update={
            "previous_status": self.status,
            "status": new_status,
            "updated_at": datetime.utcnow(),
            "version": self.version + 1,
            **changes,
        })


# ============================================================================
# SECTION 4: PIPELINE RESULTS
# ============================================================================

class CheckoutResult(BaseModel):
    """What the buyer's client needs to open the gateway checkout."""
    order_id: str
    amount: int
    currency: str
    status: OrderStatus
    gateway_order_ref: Optional[str] = None
    gateway_key: Optional[str] = None
    degraded: bool = False
    message: Optional[str] = None


class PaymentProof(BaseModel):
    """Claimed payment completion delivered by the buyer's browser."""
    order_id: str = Field(..., min_length=1)
    gateway_order_ref: str = Field(..., min_length=1)
    gateway_payment_ref: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class TransitionResult(BaseModel):
    order: Order
    applied: bool  # False when the transition was an idempotent no-op


class WebhookAck(BaseModel):
    """Acknowledgement returned to the gateway."""
    status: str
    status_code: int = 200
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    order_id: Optional[str] = None
