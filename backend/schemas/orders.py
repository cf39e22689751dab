"""
Order Domain Schemas
====================
Pydantic models shared by checkout, fulfillment, reporting and the API.

- Cart lines validated at the HTTP boundary
- Order aggregate with its immutable line-item snapshots
- Order status state machine (immutable transition_to)
- Inventory ledger entries and operational system events

All money is integer minor units (cents).

pip install pydantic
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from pipeline.errors import IllegalStatusTransition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Statuses that mean the payment has already been applied
PAID_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.SHIPPED, OrderStatus.DELIVERED})


class LedgerReason(str, Enum):
    ORDER = "ORDER"
    RESTOCK = "RESTOCK"
    ADJUSTMENT = "ADJUSTMENT"


class FulfillmentOutcome(str, Enum):
    FULFILLED = "FULFILLED"
    DUPLICATE = "DUPLICATE"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    STOCK_SHORTFALL = "STOCK_SHORTFALL"
    ORDER_CANCELLED = "ORDER_CANCELLED"


# =============================================================================
# CATALOG & CUSTOMERS
# =============================================================================

class Product(BaseModel):
    id: str
    name: str
    unit_price_cents: int = Field(..., ge=0)
    stock: int = Field(default=0, ge=0)
    is_active: bool = True


class Customer(BaseModel):
    id: str = Field(default_factory=new_id)
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class Address(BaseModel):
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(default="US", min_length=2, max_length=2)


# =============================================================================
# CART & PRICING
# =============================================================================

class CartLine(BaseModel):
    """One requested product in a cart"""
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class PricedLine(BaseModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class PricedCart(BaseModel):
    lines: list[PricedLine]
    subtotal_cents: int
    total_cents: int
    currency: str = "usd"


# =============================================================================
# ORDER AGGREGATE
# =============================================================================

class OrderItem(BaseModel):
    """Line item snapshot; name and price are frozen at order time"""
    id: str = Field(default_factory=new_id)
    order_id: str
    product_id: str
    product_name: str
    quantity: int = Field(..., ge=1)
    unit_price_cents: int = Field(..., ge=0)
    line_total_cents: int = Field(..., ge=0)


class Order(BaseModel):
    """Order aggregate root. ``status`` is the single authoritative state field."""
    id: str = Field(default_factory=new_id)
    customer_id: str
    customer_email: str
    status: OrderStatus = OrderStatus.PENDING
    is_paid: bool = False
    subtotal_cents: int
    total_cents: int
    currency: str = "usd"
    gateway_payment_id: str
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    confirmation_sent_at: Optional[datetime] = None
    confirmation_abandoned_at: Optional[datetime] = None
    items: list[OrderItem] = Field(default_factory=list)

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, new_status: OrderStatus) -> "Order":
        """Immutable state transition; raises IllegalStatusTransition"""
        if not self.can_transition_to(new_status):
            raise IllegalStatusTransition(self.status.value, new_status.value)

        now = utcnow()
        update: dict[str, Any] = {"status": new_status, "updated_at": now}
        if new_status == OrderStatus.PAID:
            update["is_paid"] = True
            update["paid_at"] = now
        return self.model_copy(update=update)


class InventoryLedgerEntry(BaseModel):
    """Append-only stock movement"""
    id: str = Field(default_factory=new_id)
    product_id: str
    delta: int
    reason: LedgerReason = LedgerReason.ORDER
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SystemEvent(BaseModel):
    """A row of the operational black box"""
    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    event_type: str
    order_id: Optional[str] = None
    component: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    severity: str = "INFO"


# =============================================================================
# CHECKOUT I/O
# =============================================================================

class CheckoutRequest(BaseModel):
    """Incoming checkout request"""
    items: list[CartLine] = Field(..., min_length=1)
    customer_email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=320)
    customer_name: Optional[str] = Field(default=None, max_length=240)
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None


class CheckoutResult(BaseModel):
    order: Order
    client_secret: str


class PaymentIntentResult(BaseModel):
    gateway_payment_id: str
    client_secret: str


class OrderConfirmation(BaseModel):
    """Payload handed to the notification collaborator"""
    order_id: str
    customer_email: str
    items: list[OrderItem]
    total_cents: int
    currency: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderConfirmation":
        return cls(
            order_id=order.id,
            customer_email=order.customer_email,
            items=order.items,
            total_cents=order.total_cents,
            currency=order.currency,
        )


class FulfillmentResult(BaseModel):
    outcome: FulfillmentOutcome
    gateway_payment_id: str
    order_id: Optional[str] = None
    detail: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# REPORTING
# =============================================================================

class OrderPage(BaseModel):
    orders: list[Order]
    total: int


class OrderStats(BaseModel):
    total_orders: int
    total_revenue_cents: int
    orders_by_status: dict[str, int]


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
