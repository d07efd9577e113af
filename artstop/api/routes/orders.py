"""Customer order endpoints. Every lookup is scoped to the bearer's own orders."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from artstop.api.dependencies import (
    AuthenticatedUser,
    get_current_user,
    get_lifecycle,
    get_queries,
)
from artstop.api.responses import send_response
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.order_queries import MAX_PAGE_SIZE, OrderQueries
from artstop.schemas.orders import OrderStatus

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.get("")
async def list_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=MAX_PAGE_SIZE),
    user: AuthenticatedUser = Depends(get_current_user),
    queries: OrderQueries = Depends(get_queries),
):
    orders, pagination = await queries.list_orders(user.id, status=status, page=page, limit=limit)
    return send_response({"orders": orders, "pagination": pagination})


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    queries: OrderQueries = Depends(get_queries),
):
    order = await queries.get_order(order_id, user.id)
    return send_response({"order": order})


@router.put("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    lifecycle: OrderLifecycle = Depends(get_lifecycle),
):
    order = await lifecycle.cancel_order(order_id, user.id)
    return send_response({"order": order}, "Order cancelled successfully")


@router.get("/{order_id}/tracking")
async def track_order(
    order_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    queries: OrderQueries = Depends(get_queries),
):
    order, timeline = await queries.tracking(order_id, user.id)
    return send_response({"order": order, "timeline": timeline})
