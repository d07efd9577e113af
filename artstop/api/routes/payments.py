"""Checkout endpoints: create the gateway order, verify, refund, payment details."""

from typing import Optional

from fastapi import APIRouter, Depends, Header

from artstop.api.dependencies import AuthenticatedUser, get_current_user, get_lifecycle
from artstop.api.responses import send_response
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.schemas.api import (
    CreateOrderRequest,
    OrderSummary,
    RefundRequest,
    RefundSummary,
    VerifyPaymentRequest,
)
from artstop.schemas.orders import OrderStatus

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/create-order", status_code=201)
async def create_order(
    payload: Optional[CreateOrderRequest] = None,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    """Turn the user's cart into a pending order and a gateway payment order."""
    result = await lifecycle.create_order(
        user.id,
        shipping_address=payload.shipping_address if payload else None,
        idempotency_key=idempotency_key,
    )
    return send_response(result, "Order created successfully", status_code=201)


@router.post("/verify")
async def verify_payment(
    payload: VerifyPaymentRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.verify_payment(
        gateway_order_id=payload.gateway_order_id,
        gateway_payment_id=payload.gateway_payment_id,
        signature=payload.signature,
        order_id=payload.order_id,
    )
    summary = OrderSummary(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        total=order.total,
    )
    if order.status == OrderStatus.CANCELLED:
        return send_response(
            {"order": summary}, "Payment received for a cancelled order; contact support for a refund"
        )
    return send_response({"order": summary}, "Payment verified successfully")


@router.post("/refund")
async def refund_payment(
    payload: RefundRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order, refund = await lifecycle.process_refund(
        payload.order_id,
        requester_id=user.id,
        requester_role=user.role,
        reason=payload.reason,
        amount=payload.amount,
    )
    if refund is None:
        return send_response({"order": order}, "Refund request submitted")

    summary = RefundSummary(id=refund.id, amount=refund.amount, status=refund.status)
    return send_response({"order": order, "refund": summary}, "Refund processed successfully")


@router.get("/{order_id}")
async def get_payment_details(
    order_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    details = await lifecycle.get_payment_details(order_id, user.id, user.role)
    return send_response(details)
