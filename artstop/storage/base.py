"""
Persistence Interfaces
======================
Abstract repositories for the order lifecycle and its collaborators, plus
the ``Store`` unit of work whose ``transaction()`` is the atomicity boundary
for multi-document updates (confirm order + increment sales + clear cart).
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Optional

from artstop.schemas.orders import (
    AuditLogEntry,
    Cart,
    Order,
    OrderStatus,
    Product,
    User,
)


# Admin listing sort keys, by wire name
ORDER_SORT_FIELDS = ("createdAt", "updatedAt", "orderNumber", "total", "status")


class IOrderRepository(ABC):
    """Order-specific repository interface"""

    @abstractmethod
    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_gateway_order_id(
        self, gateway_order_id: str, for_update: bool = False
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_gateway_payment_id(
        self, gateway_payment_id: str, for_update: bool = False
    ) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_pending_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def insert_pending(self, order: Order) -> Order:
        """Insert a pending order, or return the pending order already holding its key."""
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Persist an existing order and bump its version."""
        pass

    @abstractmethod
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
        """
        ``search`` is a case-insensitive substring match on the order number
        and the shipping name and email. ``sort`` is one of ORDER_SORT_FIELDS.
        """
        pass

    @abstractmethod
    async def count(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
    ) -> int:
        pass


class ICartRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[Cart]:
        pass

    @abstractmethod
    async def save(self, cart: Cart) -> Cart:
        pass

    @abstractmethod
    async def clear(self, user_id: str) -> bool:
        """Empty the user's cart. Returns False when the user has no cart."""
        pass


class IProductRepository(ABC):

    @abstractmethod
    async def get(self, product_id: str) -> Optional[Product]:
        pass

    @abstractmethod
    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        pass

    @abstractmethod
    async def save(self, product: Product) -> Product:
        pass

    @abstractmethod
    async def increment_sales(self, product_id: str, quantity: int) -> bool:
        pass


class IUserRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def save(self, user: User) -> User:
        pass


class IAuditLog(ABC):
    """Audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_order(self, order_id: str) -> list[AuditLogEntry]:
        pass


class Store(ABC):
    """Unit of work over all repositories."""

    orders: IOrderRepository
    carts: ICartRepository
    products: IProductRepository
    users: IUserRepository
    audit: IAuditLog

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager["Store"]:
        """
        Open a transaction. Writes made through the yielded store commit
        together when the block exits normally and are discarded on error.
        """
        pass
