"""
In-Memory Store
===============
Dict-backed repositories for development and tests. Entities are copied on
the way in and out so callers never share state with the store.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import structlog

from artstop.schemas.orders import (
    AuditLogEntry,
    Cart,
    Order,
    OrderStatus,
    Product,
    User,
    utcnow,
)
from artstop.storage.base import (
    IAuditLog,
    ICartRepository,
    IOrderRepository,
    IProductRepository,
    IUserRepository,
    Store,
)

logger = structlog.get_logger().bind(component="memory_store")

_SORT_KEYS = {
    "createdAt": lambda o: o.created_at,
    "updatedAt": lambda o: o.updated_at,
    "orderNumber": lambda o: o.order_number,
    "total": lambda o: o.total,
    "status": lambda o: o.status.value,
}


class InMemoryOrderRepository(IOrderRepository):
    """Thread-safe in-memory order repository"""

    def __init__(self):
        self._orders: dict[str, Order] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def _find_one(self, predicate) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if predicate(order):
                    return order.model_copy(deep=True)
            return None

    async def get_by_gateway_order_id(
        self, gateway_order_id: str, for_update: bool = False
    ) -> Optional[Order]:
        return await self._find_one(
            lambda o: o.payment_info.gateway_order_id == gateway_order_id
        )

    async def get_by_gateway_payment_id(
        self, gateway_payment_id: str, for_update: bool = False
    ) -> Optional[Order]:
        return await self._find_one(
            lambda o: o.payment_info.gateway_payment_id == gateway_payment_id
        )

    async def get_pending_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        return await self._find_one(
            lambda o: o.user_id == user_id
            and o.idempotency_key == key
            and o.status == OrderStatus.PENDING
        )

    async def insert_pending(self, order: Order) -> Order:
        async with self._lock:
            if order.idempotency_key:
                for existing in self._orders.values():
                    if (
                        existing.user_id == order.user_id
                        and existing.idempotency_key == order.idempotency_key
                        and existing.status == OrderStatus.PENDING
                    ):
                        return existing.model_copy(deep=True)
            self._orders[order.id] = order.model_copy(deep=True)
            return order

    async def save(self, order: Order) -> Order:
        async with self._lock:
            saved = order.model_copy(update={"version": order.version + 1, "updated_at": utcnow()})
            self._orders[order.id] = saved.model_copy(deep=True)
            return saved

    @staticmethod
    def _matches_search(order: Order, search: str) -> bool:
        needle = search.lower()
        haystack = (
            order.order_number,
            order.shipping_address.name,
            order.shipping_address.email,
        )
        return any(needle in value.lower() for value in haystack)

    def _matching(
        self,
        user_id: Optional[str],
        status: Optional[OrderStatus],
        search: Optional[str] = None,
    ) -> list[Order]:
        return [
            o for o in self._orders.values()
            if (user_id is None or o.user_id == user_id)
            and (status is None or o.status == status)
            and (not search or self._matches_search(o, search))
        ]

    async def find(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        skip: int = 0,
        limit: int = 10,
        search: Optional[str] = None,
        sort: str = "createdAt",
        descending: bool = True,
    ) -> list[Order]:
        sort_key = _SORT_KEYS[sort]
        async with self._lock:
            orders = sorted(self._matching(user_id, status, search), key=sort_key, reverse=descending)
            return [o.model_copy(deep=True) for o in orders[skip:skip + limit]]

    async def count(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
    ) -> int:
        async with self._lock:
            return len(self._matching(user_id, status, search))


class InMemoryCartRepository(ICartRepository):

    def __init__(self):
        self._carts: dict[str, Cart] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[Cart]:
        async with self._lock:
            cart = self._carts.get(user_id)
            return cart.model_copy(deep=True) if cart else None

    async def save(self, cart: Cart) -> Cart:
        async with self._lock:
            self._carts[cart.user_id] = cart.model_copy(deep=True)
            return cart

    async def clear(self, user_id: str) -> bool:
        async with self._lock:
            cart = self._carts.get(user_id)
            if cart is None:
                return False
            self._carts[user_id] = cart.model_copy(update={"items": [], "updated_at": utcnow()})
            return True


class InMemoryProductRepository(IProductRepository):

    def __init__(self):
        self._products: dict[str, Product] = {}
        self._lock = asyncio.Lock()

    async def get(self, product_id: str) -> Optional[Product]:
        async with self._lock:
            product = self._products.get(product_id)
            return product.model_copy(deep=True) if product else None

    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        async with self._lock:
            return {
                pid: self._products[pid].model_copy(deep=True)
                for pid in product_ids
                if pid in self._products
            }

    async def save(self, product: Product) -> Product:
        async with self._lock:
            self._products[product.id] = product.model_copy(deep=True)
            return product

    async def increment_sales(self, product_id: str, quantity: int) -> bool:
        async with self._lock:
            product = self._products.get(product_id)
            if product is None:
                return False
            self._products[product_id] = product.model_copy(update={"sales": product.sales + quantity})
            return True


class InMemoryUserRepository(IUserRepository):

    def __init__(self):
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()

    async def get(self, user_id: str) -> Optional[User]:
        async with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def save(self, user: User) -> User:
        async with self._lock:
            self._users[user.id] = user.model_copy(deep=True)
            return user


class InMemoryAuditLog(IAuditLog):
    """Append-only audit log"""

    def __init__(self):
        self._logs: list[AuditLogEntry] = []
        self._by_order: dict[str, list[AuditLogEntry]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._lock:
            self._logs.append(entry)
            self._by_order[entry.order_id].append(entry)

    async def get_by_order(self, order_id: str) -> list[AuditLogEntry]:
        async with self._lock:
            return list(self._by_order.get(order_id, []))


class InMemoryStore(Store):
    """
    In-memory unit of work.

    Transactions are serialized by a store-wide lock; on error every
    repository is restored to the snapshot taken when the transaction began.
    """

    def __init__(
        self,
        users: Iterable[User] = (),
        products: Iterable[Product] = (),
        carts: Iterable[Cart] = (),
    ):
        self.orders = InMemoryOrderRepository()
        self.carts = InMemoryCartRepository()
        self.products = InMemoryProductRepository()
        self.users = InMemoryUserRepository()
        self.audit = InMemoryAuditLog()
        self._tx_lock = asyncio.Lock()

        for user in users:
            self.users._users[user.id] = user.model_copy(deep=True)
        for product in products:
            self.products._products[product.id] = product.model_copy(deep=True)
        for cart in carts:
            self.carts._carts[cart.user_id] = cart.model_copy(deep=True)

    def _snapshot(self) -> dict:
        return {
            "orders": dict(self.orders._orders),
            "carts": dict(self.carts._carts),
            "products": dict(self.products._products),
            "users": dict(self.users._users),
            "logs": list(self.audit._logs),
        }

    def _restore(self, snapshot: dict) -> None:
        self.orders._orders = snapshot["orders"]
        self.carts._carts = snapshot["carts"]
        self.products._products = snapshot["products"]
        self.users._users = snapshot["users"]
        self.audit._logs = snapshot["logs"]
        by_order: dict[str, list[AuditLogEntry]] = defaultdict(list)
        for entry in snapshot["logs"]:
            by_order[entry.order_id].append(entry)
        self.audit._by_order = by_order

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryStore"]:
        async with self._tx_lock:
            snapshot = self._snapshot()
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                logger.warning("transaction_rolled_back")
                raise
