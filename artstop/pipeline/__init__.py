# pipeline/__init__.py
# ============================================================================
# ARTSTOP ORDER SERVICE - PIPELINE MODULE
# ============================================================================
# Order lifecycle, read-side queries, gateway client and webhook processing
# ============================================================================

from artstop.pipeline.gateway_client import (
    GatewayOrder,
    GatewayRefund,
    IPaymentGatewayClient,
    StripeGatewayClient,
)
from artstop.pipeline.order_lifecycle import AuditEventType, OrderLifecycle
from artstop.pipeline.order_queries import OrderQueries, build_pagination, build_timeline
from artstop.pipeline.webhooks import WebhookProcessor, WebhookRouter

__all__ = [
    "GatewayOrder",
    "GatewayRefund",
    "IPaymentGatewayClient",
    "StripeGatewayClient",
    "AuditEventType",
    "OrderLifecycle",
    "OrderQueries",
    "build_pagination",
    "build_timeline",
    "WebhookProcessor",
    "WebhookRouter",
]
