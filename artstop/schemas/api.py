# schemas/api.py
# ============================================================================
# ARTSTOP ORDER SERVICE - REQUEST/RESPONSE MODELS
# ============================================================================

from typing import Optional

from pydantic import Field

from artstop.schemas.orders import ArtStopModel, OrderStatus, PaymentInfo


class ShippingAddressInput(ArtStopModel):
    """Partial address; missing fields fall back to the user profile."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class CreateOrderRequest(ArtStopModel):
    shipping_address: Optional[ShippingAddressInput] = None


class CreateOrderResult(ArtStopModel):
    order_id: str
    gateway_order_id: str
    amount: int
    currency: str
    key: str


class VerifyPaymentRequest(ArtStopModel):
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    order_id: str = Field(..., min_length=1)


class OrderSummary(ArtStopModel):
    id: str
    order_number: str
    status: OrderStatus
    total: float


class RefundRequest(ArtStopModel):
    order_id: str = Field(..., min_length=1)
    reason: str = ""
    amount: Optional[float] = Field(default=None, gt=0)


class ApproveRefundRequest(ArtStopModel):
    amount: Optional[float] = Field(default=None, gt=0)


class RefundSummary(ArtStopModel):
    id: str
    amount: int
    status: str


class PaymentDetails(ArtStopModel):
    payment_info: PaymentInfo
    order_number: str
    total: float
    status: OrderStatus


class UpdateStatusRequest(ArtStopModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class Pagination(ArtStopModel):
    current_page: int
    total_pages: int
    total_orders: int
    has_next: bool
    has_prev: bool


class TimelineEntry(ArtStopModel):
    status: OrderStatus
    message: str
    date: Optional[str] = None
    completed: bool = True
