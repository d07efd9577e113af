# schemas/__init__.py
from artstop.schemas.orders import (
    ALLOWED_TRANSITIONS,
    REFUNDABLE_STATUSES,
    AuditLogEntry,
    Cart,
    CartItem,
    Order,
    OrderItem,
    OrderStatus,
    PaymentInfo,
    PaymentStatus,
    Product,
    ShippingAddress,
    User,
    UserRole,
    Variant,
    from_minor_units,
    to_minor_units,
    utcnow,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "REFUNDABLE_STATUSES",
    "AuditLogEntry",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentInfo",
    "PaymentStatus",
    "Product",
    "ShippingAddress",
    "User",
    "UserRole",
    "Variant",
    "from_minor_units",
    "to_minor_units",
    "utcnow",
]
