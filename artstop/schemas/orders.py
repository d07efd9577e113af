# schemas/orders.py
# ============================================================================
# ARTSTOP ORDER SERVICE - DOMAIN MODELS
# ============================================================================
# Order record with its embedded payment sub-document, plus the cart,
# product and user collaborators the lifecycle reads from.
# ============================================================================

import hashlib
import json
import random
import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from artstop.errors import ValidationError


PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x300?text=No+Image"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_minor_units(amount: float) -> int:
    """Major currency units (rupees) to the gateway's smallest unit (paise)."""
    return int(round(amount * 100))


def from_minor_units(amount: int) -> float:
    return amount / 100


class ArtStopModel(BaseModel):
    """Base model: snake_case in Python and storage, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


_REFUND_TARGETS = {
    OrderStatus.REFUND_REQUESTED,
    OrderStatus.REFUNDED,
    OrderStatus.PARTIALLY_REFUNDED,
}

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        *_REFUND_TARGETS,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED,
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        *_REFUND_TARGETS,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
        *_REFUND_TARGETS,
    },
    OrderStatus.REFUND_REQUESTED: {
        OrderStatus.REFUNDED,
        OrderStatus.PARTIALLY_REFUNDED,
    },
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.PARTIALLY_REFUNDED: set(),
}

REFUNDABLE_STATUSES = {OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED}


# ============================================================================
# SECTION 2: COLLABORATORS (cart, product, user)
# ============================================================================

class Variant(ArtStopModel):
    name: str
    value: str
    price: Optional[float] = Field(default=None, ge=0)
    dimensions: Optional[str] = None


class Product(ArtStopModel):
    id: str
    name: str
    price: float = Field(ge=0)
    images: list[str] = Field(default_factory=list)
    in_stock: bool = True
    is_active: bool = True
    sales: int = 0

    @property
    def primary_image(self) -> str:
        return self.images[0] if self.images else PLACEHOLDER_IMAGE


class User(ArtStopModel):
    id: str
    name: str = ""
    email: str = ""
    phone: str = ""
    role: UserRole = UserRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class CartItem(ArtStopModel):
    product_id: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    variant: Optional[Variant] = None
    color: Optional[str] = None

    @computed_field
    @property
    def total(self) -> float:
        return round(self.price * self.quantity, 2)


class Cart(ArtStopModel):
    """User cart. Totals are derived so that total == subtotal + tax + shipping."""

    user_id: str
    items: list[CartItem] = Field(default_factory=list)
    tax: float = Field(default=0, ge=0)
    shipping: float = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def subtotal(self) -> float:
        return round(sum(item.total for item in self.items), 2)

    @computed_field
    @property
    def total(self) -> float:
        return round(self.subtotal + self.tax + self.shipping, 2)

    @property
    def is_empty(self) -> bool:
        return not self.items

    def content_hash(self) -> str:
        """Stable digest of the cart contents, independent of item order."""
        lines = sorted(
            json.dumps(item.model_dump(mode="json", exclude={"total"}), sort_keys=True)
            for item in self.items
        )
        payload = json.dumps(
            {"items": lines, "tax": self.tax, "shipping": self.shipping},
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()


# ============================================================================
# SECTION 3: ORDER
# ============================================================================

class ShippingAddress(ArtStopModel):
    name: str = ""
    email: str
    phone: str
    street: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "India"


class OrderItem(ArtStopModel):
    """Immutable snapshot of a cart line at the time of ordering."""

    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    image: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    variant: Optional[Variant] = None
    color: Optional[str] = None
    total: float = Field(ge=0)

    @classmethod
    def snapshot(cls, item: CartItem, product: Product) -> "OrderItem":
        variant = item.variant if item.variant and item.variant.value else None
        return cls(
            product_id=product.id,
            name=product.name,
            image=product.primary_image,
            price=item.price,
            quantity=item.quantity,
            variant=variant,
            color=item.color,
            total=round(item.price * item.quantity, 2),
        )


class PaymentInfo(ArtStopModel):
    method: str = "gateway"
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[float] = None
    refund_reason: Optional[str] = None
    # Set once product sales were incremented and the cart cleared
    sales_applied: bool = False


class Order(ArtStopModel):
    """Core order entity"""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_number: str = Field(default_factory=lambda: Order.generate_order_number())
    user_id: str
    items: list[OrderItem]
    shipping_address: ShippingAddress
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    subtotal: float = Field(ge=0)
    tax: float = Field(ge=0)
    shipping: float = Field(ge=0)
    total: float = Field(ge=0)
    status: OrderStatus = OrderStatus.PENDING
    previous_status: Optional[OrderStatus] = None
    idempotency_key: Optional[str] = None

    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    notes: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @staticmethod
    def generate_order_number() -> str:
        timestamp = str(int(time.time() * 1000))[-6:]
        suffix = str(random.randint(0, 999)).zfill(3)
        return f"ORD-{timestamp}{suffix}"

    @classmethod
    def from_cart(
        cls,
        cart: Cart,
        products: dict[str, Product],
        shipping_address: ShippingAddress,
        idempotency_key: Optional[str] = None,
    ) -> "Order":
        items = [OrderItem.snapshot(item, products[item.product_id]) for item in cart.items]
        subtotal = round(sum(item.total for item in items), 2)
        return cls(
            user_id=cart.user_id,
            items=items,
            shipping_address=shipping_address,
            subtotal=subtotal,
            tax=cart.tax,
            shipping=cart.shipping,
            total=round(subtotal + cart.tax + cart.shipping, 2),
            idempotency_key=idempotency_key,
        )

    @property
    def amount_minor(self) -> int:
        return to_minor_units(self.total)

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, new_status: OrderStatus) -> "Order":
        """Immutable state transition; stamps delivered_at exactly once."""
        if not self.can_transition_to(new_status):
            raise ValidationError(
                f"Cannot move order from {self.status.value} to {new_status.value}"
            )
        now = utcnow()
        update = {
            "previous_status": self.status,
            "status": new_status,
            "updated_at": now,
        }
        if new_status == OrderStatus.DELIVERED and self.delivered_at is None:
            update["delivered_at"] = now
        return self.model_copy(update=update)

    def with_payment(self, **changes) -> "Order":
        return self.model_copy(update={
            "payment_info": self.payment_info.model_copy(update=changes),
            "updated_at": utcnow(),
        })


class AuditLogEntry(ArtStopModel):
    """Immutable audit log entry"""

    log_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_id: str
    event_type: str
    actor: str = "system"  # "system", "webhook", "user", "admin"
    previous_status: Optional[OrderStatus] = None
    new_status: Optional[OrderStatus] = None
    metadata: dict = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
