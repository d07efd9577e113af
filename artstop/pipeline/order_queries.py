"""
Order Queries
=============
Read side of the order service: paginated listings for customers and admins,
single-order lookups scoped to the owner, and the tracking timeline.
"""

import math
from typing import Optional

from artstop.errors import NotFoundError, ValidationError
from artstop.schemas.api import Pagination, TimelineEntry
from artstop.schemas.orders import Order, OrderStatus
from artstop.storage.base import ORDER_SORT_FIELDS, Store

MAX_PAGE_SIZE = 100

# Fulfilment path shown on the tracking page
_TIMELINE_STEPS = [
    (OrderStatus.PENDING, "Order placed"),
    (OrderStatus.CONFIRMED, "Payment confirmed"),
    (OrderStatus.PROCESSING, "Order is being prepared"),
    (OrderStatus.SHIPPED, "Order shipped"),
    (OrderStatus.DELIVERED, "Order delivered"),
]

_TERMINAL_MESSAGES = {
    OrderStatus.CANCELLED: "Order cancelled",
    OrderStatus.REFUND_REQUESTED: "Refund requested",
    OrderStatus.REFUNDED: "Order refunded",
    OrderStatus.PARTIALLY_REFUNDED: "Order partially refunded",
}


def _page_bounds(page: int, limit: int) -> tuple[int, int]:
    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    return page, limit


def build_pagination(page: int, limit: int, total: int) -> Pagination:
    total_pages = math.ceil(total / limit) if total else 0
    return Pagination(
        current_page=page,
        total_pages=total_pages,
        total_orders=total,
        has_next=page < total_pages,
        has_prev=page > 1,
    )


def build_timeline(order: Order) -> list[TimelineEntry]:
    """Completed steps up to the current status, then the pending remainder."""
    reached = _reached_index(order)
    timeline = []
    for index, (status, message) in enumerate(_TIMELINE_STEPS):
        completed = index <= reached
        date = None
        if status == OrderStatus.PENDING:
            date = order.created_at.isoformat()
        elif status == OrderStatus.CONFIRMED and order.payment_info.paid_at:
            date = order.payment_info.paid_at.isoformat()
        elif status == OrderStatus.DELIVERED and order.delivered_at:
            date = order.delivered_at.isoformat()
        elif completed and index == reached:
            date = order.updated_at.isoformat()
        timeline.append(TimelineEntry(status=status, message=message, date=date, completed=completed))

    if order.status in _TERMINAL_MESSAGES:
        # Off the fulfilment path: truncate to what happened, then the exit
        timeline = [entry for entry in timeline if entry.completed]
        timeline.append(TimelineEntry(
            status=order.status,
            message=_TERMINAL_MESSAGES[order.status],
            date=order.updated_at.isoformat(),
            completed=True,
        ))
    return timeline


def _reached_index(order: Order) -> int:
    steps = [status for status, _ in _TIMELINE_STEPS]
    if order.status in steps:
        return steps.index(order.status)
    # Exits keep the last fulfilment step they passed through
    if order.previous_status in steps:
        return steps.index(order.previous_status)
    return 0


class OrderQueries:

    def __init__(self, store: Store):
        self.store = store

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> tuple[list[Order], Pagination]:
        """Newest first by default. ``user_id=None`` lists every customer's orders."""
        if sort not in ORDER_SORT_FIELDS:
            raise ValidationError(f"Cannot sort orders by {sort}")
        if order not in ("asc", "desc"):
            raise ValidationError("Sort order must be asc or desc")

        page, limit = _page_bounds(page, limit)
        search = search.strip() if search else None
        orders = await self.store.orders.find(
            user_id=user_id,
            status=status,
            skip=(page - 1) * limit,
            limit=limit,
            search=search,
            sort=sort,
            descending=order == "desc",
        )
        total = await self.store.orders.count(user_id=user_id, status=status, search=search)
        return orders, build_pagination(page, limit, total)

    async def get_order(self, order_id: str, user_id: str) -> Order:
        order = await self.store.orders.get(order_id)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order", order_id)
        return order

    async def tracking(self, order_id: str, user_id: str) -> tuple[Order, list[TimelineEntry]]:
        order = await self.get_order(order_id, user_id)
        return order, build_timeline(order)
