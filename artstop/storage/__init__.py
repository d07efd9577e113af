# storage/__init__.py
# ============================================================================
# ARTSTOP ORDER SERVICE - STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and PostgreSQL implementations
# ============================================================================

from artstop.storage.base import (
    IAuditLog,
    ICartRepository,
    IOrderRepository,
    IProductRepository,
    IUserRepository,
    Store,
)
from artstop.storage.memory import InMemoryStore
from artstop.storage.postgres import PostgresStore

__all__ = [
    "IAuditLog",
    "ICartRepository",
    "IOrderRepository",
    "IProductRepository",
    "IUserRepository",
    "Store",
    "InMemoryStore",
    "PostgresStore",
]
