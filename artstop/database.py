"""
Database Module
===============
AsyncPG connection pool for PostgreSQL plus the schema migrations for the
order service's document tables.

Each collection is a table holding the full entity as JSONB next to the
handful of columns the lifecycle queries on (gateway ids, status,
idempotency key).

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg
import structlog

from artstop.config import Settings

logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id TEXT PRIMARY KEY,
        doc JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS carts (
        user_id TEXT PRIMARY KEY,
        doc JSONB NOT NULL,
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        order_number TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending',
        gateway_order_id TEXT,
        gateway_payment_id TEXT,
        idempotency_key TEXT,
        doc JSONB NOT NULL,
        created_at TIMESTAMPTZ DEFAULT NOW(),
        updated_at TIMESTAMPTZ DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_events (
        id TEXT PRIMARY KEY,
        order_id TEXT NOT NULL,
        timestamp TIMESTAMPTZ DEFAULT NOW(),
        event_type VARCHAR(50) NOT NULL,
        actor VARCHAR(20),
        doc JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_gateway_order ON orders(gateway_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_gateway_payment ON orders(gateway_payment_id)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_pending_idempotency
    ON orders(user_id, idempotency_key)
    WHERE status = 'pending' AND idempotency_key IS NOT NULL
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_order ON order_events(order_id, timestamp)",
]


class Database:
    """Async database connection pool manager"""

    def __init__(self, settings: Settings):
        self._settings = settings
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Initialize the connection pool and run migrations"""
        if self._pool is not None:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self._settings.database_url,
                min_size=self._settings.db_min_pool_size,
                max_size=self._settings.db_max_pool_size,
            )
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

        logger.info("database_pool_initialized")
        await self._run_migrations()

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool"""
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def _run_migrations(self) -> None:
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.DuplicateObjectError as e:
                    logger.warning("migration_skipped", error=str(e))

        logger.info("database_migrations_complete", count=len(MIGRATIONS))


class ConnectionExecutor:
    """Runs queries on one connection (used inside a transaction)."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def execute(self, query: str, *args) -> str:
        return await self._conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        return await self._conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        return await self._conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        return await self._conn.fetchval(query, *args)
