# api/routes/__init__.py
from artstop.api.routes import admin, orders, payments, webhooks

__all__ = ["admin", "orders", "payments", "webhooks"]
