"""
PostgreSQL Store
================
asyncpg-backed repositories. Outside a transaction every call takes its own
pooled connection; inside ``transaction()`` all repositories share one
connection and the order rows read ``for_update`` are row-locked until commit.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

import structlog

from artstop.config import Settings
from artstop.database import ConnectionExecutor, Database
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

logger = structlog.get_logger().bind(component="postgres_store")

Executor = Union[Database, ConnectionExecutor]


_SORT_COLUMNS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "orderNumber": "order_number",
    "total": "(doc->>'total')::numeric",
    "status": "status",
}


def _lock_clause(for_update: bool) -> str:
    return " FOR UPDATE" if for_update else ""


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class PostgresOrderRepository(IOrderRepository):

    def __init__(self, db: Executor):
        self._db = db

    async def _fetch_order(self, where: str, *args, for_update: bool = False) -> Optional[Order]:
        row = await self._db.fetch_one(
            f"SELECT doc FROM orders WHERE {where} LIMIT 1{_lock_clause(for_update)}",
            *args,
        )
        return Order.model_validate_json(row["doc"]) if row else None

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        return await self._fetch_order("id = $1", order_id, for_update=for_update)

    async def get_by_gateway_order_id(
        self, gateway_order_id: str, for_update: bool = False
    ) -> Optional[Order]:
        return await self._fetch_order(
            "gateway_order_id = $1", gateway_order_id, for_update=for_update
        )

    async def get_by_gateway_payment_id(
        self, gateway_payment_id: str, for_update: bool = False
    ) -> Optional[Order]:
        return await self._fetch_order(
            "gateway_payment_id = $1", gateway_payment_id, for_update=for_update
        )

    async def get_pending_by_idempotency_key(self, user_id: str, key: str) -> Optional[Order]:
        return await self._fetch_order(
            "user_id = $1 AND idempotency_key = $2 AND status = 'pending'", user_id, key
        )

    async def insert_pending(self, order: Order) -> Order:
        inserted = await self._db.fetch_value(
            """
            INSERT INTO orders
            (id, order_number, user_id, status, gateway_order_id, gateway_payment_id,
             idempotency_key, doc, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9, $10)
            ON CONFLICT (user_id, idempotency_key)
                WHERE status = 'pending' AND idempotency_key IS NOT NULL
            DO NOTHING
            RETURNING id
            """,
            order.id,
            order.order_number,
            order.user_id,
            order.status.value,
            order.payment_info.gateway_order_id,
            order.payment_info.gateway_payment_id,
            order.idempotency_key,
            order.model_dump_json(),
            order.created_at,
            order.updated_at,
        )
        if inserted:
            return order

        existing = await self.get_pending_by_idempotency_key(order.user_id, order.idempotency_key)
        logger.info("pending_order_deduplicated", order_id=existing.id if existing else None)
        return existing or order

    async def save(self, order: Order) -> Order:
        saved = order.model_copy(update={"version": order.version + 1, "updated_at": utcnow()})
        await self._db.execute(
            """
            UPDATE orders
            SET status = $1, gateway_order_id = $2, gateway_payment_id = $3,
                doc = $4::jsonb, updated_at = $5
            WHERE id = $6
            """,
            saved.status.value,
            saved.payment_info.gateway_order_id,
            saved.payment_info.gateway_payment_id,
            saved.model_dump_json(),
            saved.updated_at,
            saved.id,
        )
        return saved

    @staticmethod
    def _filters(
        user_id: Optional[str],
        status: Optional[OrderStatus],
        search: Optional[str] = None,
    ) -> tuple[str, list]:
        conditions = []
        params: list = []
        if user_id:
            params.append(user_id)
            conditions.append(f"user_id = ${len(params)}")
        if status:
            params.append(status.value)
            conditions.append(f"status = ${len(params)}")
        if search:
            params.append(f"%{_escape_like(search)}%")
            placeholder = f"${len(params)}"
            conditions.append(
                f"(order_number ILIKE {placeholder}"
                f" OR doc->'shipping_address'->>'name' ILIKE {placeholder}"
                f" OR doc->'shipping_address'->>'email' ILIKE {placeholder})"
            )
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        return where_clause, params

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
        where_clause, params = self._filters(user_id, status, search)
        order_by = f"{_SORT_COLUMNS[sort]} {'DESC' if descending else 'ASC'}"
        params.extend([limit, skip])
        rows = await self._db.fetch_all(
            f"""
            SELECT doc FROM orders
            {where_clause}
            ORDER BY {order_by}
            LIMIT ${len(params) - 1} OFFSET ${len(params)}
            """,
            *params,
        )
        return [Order.model_validate_json(row["doc"]) for row in rows]

    async def count(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
    ) -> int:
        where_clause, params = self._filters(user_id, status, search)
        return await self._db.fetch_value(f"SELECT COUNT(*) FROM orders {where_clause}", *params)


class PostgresCartRepository(ICartRepository):

    def __init__(self, db: Executor):
        self._db = db

    async def get(self, user_id: str) -> Optional[Cart]:
        row = await self._db.fetch_one("SELECT doc FROM carts WHERE user_id = $1", user_id)
        return Cart.model_validate_json(row["doc"]) if row else None

    async def save(self, cart: Cart) -> Cart:
        await self._db.execute(
            """
            INSERT INTO carts (user_id, doc, updated_at) VALUES ($1, $2::jsonb, NOW())
            ON CONFLICT (user_id) DO UPDATE SET doc = EXCLUDED.doc, updated_at = NOW()
            """,
            cart.user_id,
            cart.model_dump_json(),
        )
        return cart

    async def clear(self, user_id: str) -> bool:
        result = await self._db.execute(
            """
            UPDATE carts
            SET doc = jsonb_set(doc, '{items}', '[]'::jsonb), updated_at = NOW()
            WHERE user_id = $1
            """,
            user_id,
        )
        return result == "UPDATE 1"


class PostgresProductRepository(IProductRepository):

    def __init__(self, db: Executor):
        self._db = db

    async def get(self, product_id: str) -> Optional[Product]:
        row = await self._db.fetch_one("SELECT doc FROM products WHERE id = $1", product_id)
        return Product.model_validate_json(row["doc"]) if row else None

    async def get_many(self, product_ids: list[str]) -> dict[str, Product]:
        rows = await self._db.fetch_all(
            "SELECT id, doc FROM products WHERE id = ANY($1::text[])", product_ids
        )
        return {row["id"]: Product.model_validate_json(row["doc"]) for row in rows}

    async def save(self, product: Product) -> Product:
        await self._db.execute(
            """
            INSERT INTO products (id, doc) VALUES ($1, $2::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
            """,
            product.id,
            product.model_dump_json(),
        )
        return product

    async def increment_sales(self, product_id: str, quantity: int) -> bool:
        result = await self._db.execute(
            """
            UPDATE products
            SET doc = jsonb_set(doc, '{sales}', to_jsonb(COALESCE((doc->>'sales')::int, 0) + $2))
            WHERE id = $1
            """,
            product_id,
            quantity,
        )
        return result == "UPDATE 1"


class PostgresUserRepository(IUserRepository):

    def __init__(self, db: Executor):
        self._db = db

    async def get(self, user_id: str) -> Optional[User]:
        row = await self._db.fetch_one("SELECT doc FROM users WHERE id = $1", user_id)
        return User.model_validate_json(row["doc"]) if row else None

    async def save(self, user: User) -> User:
        await self._db.execute(
            """
            INSERT INTO users (id, doc) VALUES ($1, $2::jsonb)
            ON CONFLICT (id) DO UPDATE SET doc = EXCLUDED.doc
            """,
            user.id,
            user.model_dump_json(),
        )
        return user


class PostgresAuditLog(IAuditLog):
    """The order black box: every state change lands in order_events."""

    def __init__(self, db: Executor):
        self._db = db

    async def append(self, entry: AuditLogEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO order_events (id, order_id, timestamp, event_type, actor, doc)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            entry.log_id,
            entry.order_id,
            entry.timestamp,
            entry.event_type,
            entry.actor,
            entry.model_dump_json(),
        )

    async def get_by_order(self, order_id: str) -> list[AuditLogEntry]:
        rows = await self._db.fetch_all(
            "SELECT doc FROM order_events WHERE order_id = $1 ORDER BY timestamp",
            order_id,
        )
        return [AuditLogEntry.model_validate_json(row["doc"]) for row in rows]


def _bind_repositories(store: Store, executor: Executor) -> None:
    store.orders = PostgresOrderRepository(executor)
    store.carts = PostgresCartRepository(executor)
    store.products = PostgresProductRepository(executor)
    store.users = PostgresUserRepository(executor)
    store.audit = PostgresAuditLog(executor)


class PostgresStore(Store):

    def __init__(self, settings: Settings, database: Optional[Database] = None):
        self.db = database or Database(settings)
        _bind_repositories(self, self.db)

    async def initialize(self) -> None:
        await self.db.initialize()

    async def close(self) -> None:
        await self.db.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Store]:
        async with self.db.acquire() as conn:
            async with conn.transaction():
                bound = _TransactionStore(conn)
                yield bound


class _TransactionStore(Store):
    """Repositories bound to one connection with an open transaction."""

    def __init__(self, conn):
        _bind_repositories(self, ConnectionExecutor(conn))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Store]:
        yield self
