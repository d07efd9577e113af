"""
Gateway Webhook Processing
==========================
Signature check on the raw body first, then dispatch by ``event`` through a
handler registry. Handlers reconcile the Order through the lifecycle's
idempotent reducers, so gateway retries and duplicate deliveries are safe.

Payload shape:
    {"event": "payment.captured",
     "payload": {"payment": {"id", "order_id", "created_at", ...}}}
    {"event": "refund.processed",
     "payload": {"refund": {"id", "payment_id", "amount", ...}}}
Entities may also arrive wrapped as ``{"entity": {...}}``.
"""

import json
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

from artstop.config import Settings
from artstop.errors import AuthenticationError, ValidationError
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.signatures import verify_webhook_signature


WebhookHandler = Callable[[dict, str], Any]


class WebhookRouter:
    """Maps gateway event names to handlers."""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict, correlation_id: str) -> Optional[Any]:
        event_type = event.get("event", "unknown")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.warning("no_handler", event_type=event_type, correlation_id=correlation_id)
            return None

        return await handler(event, correlation_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


def _entity(event: dict, name: str, reference: str) -> dict:
    entity = (event.get("payload") or {}).get(name) or {}
    if "entity" in entity and isinstance(entity["entity"], dict):
        entity = entity["entity"]
    if not entity.get("id") or not entity.get(reference):
        raise ValidationError(f"Webhook {name} entity is missing id or {reference}")
    return entity


def _epoch_to_datetime(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class WebhookProcessor:
    """
    Verifies and applies gateway webhooks.

    Example:
        processor = WebhookProcessor(lifecycle, settings)
        await processor.process(raw_body, request.headers.get("x-gateway-signature"))
    """

    def __init__(self, lifecycle: OrderLifecycle, settings: Settings):
        self.lifecycle = lifecycle
        self.settings = settings
        self.router = WebhookRouter()
        self._register_handlers()
        self._base_logger = structlog.get_logger().bind(component="webhook_processor")

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(correlation_id=correlation_id)

    async def process(self, raw_body: bytes, signature: Optional[str]) -> dict:
        """
        Verify then dispatch. Raises AuthenticationError on a bad signature;
        after that the gateway always gets ``{"received": True}``.
        """
        correlation_id = str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not verify_webhook_signature(self.settings.gateway_webhook_secret, raw_body, signature):
            log.warning("webhook_signature_invalid", has_signature=bool(signature))
            raise AuthenticationError("Invalid webhook signature")

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            log.error("webhook_parse_error", error=str(e))
            return {"received": True}

        event_type = event.get("event", "unknown") if isinstance(event, dict) else "unknown"
        log.info("webhook_received", event_type=event_type)

        if not isinstance(event, dict):
            return {"received": True}

        try:
            result = await self.router.route(event, correlation_id)
        except Exception as e:
            # The gateway retries on non-2xx; a failing handler must not trigger that
            log.error(
                "webhook_handler_failed",
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
        else:
            log.info("webhook_processed", event_type=event_type, matched=result is not None)

        return {"received": True}

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment.authorized")
        async def handle_payment_authorized(event: dict, correlation_id: str):
            return await self._on_payment_success(event, correlation_id)

        @self.router.register("payment.captured")
        async def handle_payment_captured(event: dict, correlation_id: str):
            return await self._on_payment_success(event, correlation_id)

        @self.router.register("payment.failed")
        async def handle_payment_failed(event: dict, correlation_id: str):
            return await self._on_payment_failed(event, correlation_id)

        @self.router.register("refund.created")
        async def handle_refund_created(event: dict, correlation_id: str):
            return await self._on_refund(event, correlation_id)

        @self.router.register("refund.processed")
        async def handle_refund_processed(event: dict, correlation_id: str):
            return await self._on_refund(event, correlation_id)

    async def _on_payment_success(self, event: dict, correlation_id: str):
        payment = _entity(event, "payment", "order_id")
        order = await self.lifecycle.confirm_gateway_order(
            gateway_order_id=payment["order_id"],
            gateway_payment_id=payment["id"],
            paid_at=_epoch_to_datetime(payment.get("created_at")),
        )
        if order is None:
            self._get_logger(correlation_id).error("order_not_found", payment_id=payment["id"])
        return order

    async def _on_payment_failed(self, event: dict, correlation_id: str):
        payment = _entity(event, "payment", "order_id")
        order = await self.lifecycle.mark_payment_failed(
            gateway_order_id=payment["order_id"],
            gateway_payment_id=payment["id"],
        )
        if order is None:
            self._get_logger(correlation_id).error("order_not_found", payment_id=payment["id"])
        return order

    async def _on_refund(self, event: dict, correlation_id: str):
        refund = _entity(event, "refund", "payment_id")
        order = await self.lifecycle.record_gateway_refund(
            gateway_payment_id=refund["payment_id"],
            refund_id=refund["id"],
            amount_minor=int(refund["amount"]) if refund.get("amount") else None,
        )
        if order is None:
            self._get_logger(correlation_id).error("order_not_found", refund_id=refund["id"])
        return order
