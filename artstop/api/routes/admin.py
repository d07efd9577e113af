"""Admin order management: listing, fulfilment status and refund approval."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from artstop.api.dependencies import (
    AuthenticatedUser,
    get_lifecycle,
    get_queries,
    require_admin,
)
from artstop.api.responses import send_response
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.order_queries import MAX_PAGE_SIZE, OrderQueries
from artstop.schemas.api import ApproveRefundRequest, RefundSummary, UpdateStatusRequest
from artstop.schemas.orders import OrderStatus

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/orders")
async def list_all_orders(
    status: Optional[OrderStatus] = None,
    search: Optional[str] = None,
    sort: str = "createdAt",
    order: str = "desc",
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE),
    admin: AuthenticatedUser = Depends(require_admin),
    queries: OrderQueries = Depends(get_queries),
):
    orders, pagination = await queries.list_orders(
        None, status=status, page=page, limit=limit, search=search, sort=sort, order=order
    )
    return send_response({"orders": orders, "pagination": pagination})


@router.put("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: UpdateStatusRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.update_status(
        order_id,
        payload.status,
        actor_id=admin.id,
        tracking_number=payload.tracking_number,
        notes=payload.notes,
    )
    return send_response({"order": order}, "Order status updated successfully")


@router.post("/orders/{order_id}/refund/approve")
async def approve_refund(
    order_id: str,
    payload: Optional[ApproveRefundRequest] = None,
    admin: AuthenticatedUser = Depends(require_admin),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order, refund = await lifecycle.approve_refund(
        order_id, admin.id, amount=payload.amount if payload else None
    )
    summary = RefundSummary(id=refund.id, amount=refund.amount, status=refund.status)
    return send_response({"order": order, "refund": summary}, "Refund processed successfully")
