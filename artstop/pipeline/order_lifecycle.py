"""
Order Lifecycle Controller
==========================
Owns every write to an Order after the cart hands it over:

- create:   snapshot the cart into a pending Order and open a gateway order
- verify:   check the client-side payment signature and confirm the Order
- confirm:  one idempotent reducer shared by verify and the payment webhooks
- refund:   customer refund requests and admin refunds through the gateway
- admin:    fulfilment transitions (processing/shipped/delivered/cancelled)

Multi-document effects (order + product sales + cart) run inside a single
store transaction keyed by the Order, so a replayed confirm is a no-op.

pip install pydantic structlog
"""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Optional, Union

import structlog

from artstop.config import Settings
from artstop.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from artstop.pipeline.gateway_client import GatewayRefund, IPaymentGatewayClient
from artstop.pipeline.signatures import verify_payment_signature
from artstop.schemas.api import CreateOrderResult, PaymentDetails, ShippingAddressInput
from artstop.schemas.orders import (
    REFUNDABLE_STATUSES,
    AuditLogEntry,
    Cart,
    Order,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
    User,
    UserRole,
    from_minor_units,
    to_minor_units,
    utcnow,
)
from artstop.storage.base import Store


class AuditEventType(str, Enum):
    ORDER_CREATED = "order.created"
    ORDER_STATUS_UPDATED = "order.status_updated"
    ORDER_CANCELLED = "order.cancelled"
    PAYMENT_CONFIRMED = "payment.confirmed"
    PAYMENT_FAILED = "payment.failed"
    SALES_APPLIED = "order.sales_applied"
    REFUND_REQUESTED = "refund.requested"
    PAYMENT_REFUNDED = "payment.refunded"


# Admin-driven fulfilment targets; refunds go through process_refund
ADMIN_STATUS_TARGETS = {
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
}

CUSTOMER_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING}


class OrderLifecycle:
    """
    Order/payment state machine.

    Example:
        lifecycle = OrderLifecycle(store, StripeGatewayClient(settings), settings)
        result = await lifecycle.create_order(user_id)
        # client pays with result.gateway_order_id
        order = await lifecycle.verify_payment(gid, pid, signature, result.order_id)
    """

    def __init__(self, store: Store, gateway: IPaymentGatewayClient, settings: Settings):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self._base_logger = structlog.get_logger().bind(component="order_lifecycle")

    def _get_logger(self, **context):
        return self._base_logger.bind(**context)

    @staticmethod
    async def _emit_audit(
        tx: Store,
        order: Order,
        event_type: AuditEventType,
        actor: str,
        previous_status: Optional[OrderStatus] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        await tx.audit.append(AuditLogEntry(
            order_id=order.id,
            event_type=event_type.value,
            actor=actor,
            previous_status=previous_status,
            new_status=order.status,
            metadata=metadata or {},
        ))

    # =========================================================================
    # CREATE
    # =========================================================================

    @staticmethod
    def derive_idempotency_key(user_id: str, cart: Cart) -> str:
        return hashlib.sha256(f"{user_id}:{cart.content_hash()}".encode()).hexdigest()

    @staticmethod
    def resolve_shipping_address(
        user: User, supplied: Optional[Union[ShippingAddressInput, dict]]
    ) -> ShippingAddress:
        """Profile defaults first, then whatever the client supplied."""
        fields = {
            "name": user.name or "Customer",
            "email": user.email,
            "phone": user.phone,
            "street": "",
            "city": "",
            "state": "",
            "zip_code": "",
        }
        if isinstance(supplied, dict):
            supplied = ShippingAddressInput.model_validate(supplied)
        if supplied is not None:
            fields.update(supplied.model_dump(exclude_none=True))
        return ShippingAddress(**fields)

    def _create_result(self, order: Order, amount: int, currency: str) -> CreateOrderResult:
        return CreateOrderResult(
            order_id=order.id,
            gateway_order_id=order.payment_info.gateway_order_id,
            amount=amount,
            currency=currency,
            key=self.settings.gateway_key_id,
        )

    async def create_order(
        self,
        user_id: str,
        shipping_address: Optional[Union[ShippingAddressInput, dict]] = None,
        idempotency_key: Optional[str] = None,
    ) -> CreateOrderResult:
        """Snapshot the cart into a pending Order backed by a gateway order."""
        log = self._get_logger(user_id=user_id)

        user = await self.store.users.get(user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        cart = await self.store.carts.get(user_id)
        if cart is None or cart.is_empty:
            log.info("create_order_rejected", reason="empty_cart")
            raise ValidationError("Cart is empty")

        products = await self.store.products.get_many([item.product_id for item in cart.items])
        for item in cart.items:
            product = products.get(item.product_id)
            if product is None or not product.in_stock:
                name = product.name if product else "Unknown"
                log.info("create_order_rejected", reason="unavailable", product_id=item.product_id)
                raise ValidationError(f"Product {name} is no longer available")

        key = idempotency_key or self.derive_idempotency_key(user_id, cart)
        existing = await self.store.orders.get_pending_by_idempotency_key(user_id, key)
        if existing:
            log.info("pending_order_reused", order_id=existing.id)
            return self._create_result(existing, existing.amount_minor, self.settings.currency)

        address = self.resolve_shipping_address(user, shipping_address)
        order = Order.from_cart(cart, products, address, idempotency_key=key)

        amount = order.amount_minor
        if amount < self.settings.min_amount:
            raise ValidationError(
                f"Order amount must be at least {from_minor_units(self.settings.min_amount):.2f} "
                f"{self.settings.currency}"
            )

        gateway_order = await self.gateway.create_order(
            amount=amount,
            currency=self.settings.currency,
            receipt=f"receipt_{order.id}",
            notes={"user_id": user.id, "user_email": user.email, "order_number": order.order_number},
        )

        order = order.with_payment(
            gateway_order_id=gateway_order.id,
            transaction_id=gateway_order.id,
        )
        stored = await self.store.orders.insert_pending(order)
        if stored.id != order.id:
            log.info("pending_order_deduplicated", order_id=stored.id, discarded_gateway_order=gateway_order.id)
            return self._create_result(stored, stored.amount_minor, self.settings.currency)

        await self._emit_audit(
            self.store, stored, AuditEventType.ORDER_CREATED, actor="user",
            metadata={"gateway_order_id": gateway_order.id, "amount": amount},
        )
        log.info(
            "order_created",
            order_id=stored.id,
            order_number=stored.order_number,
            amount=amount,
            gateway_order_id=gateway_order.id,
        )
        return self._create_result(stored, gateway_order.amount, gateway_order.currency)

    # =========================================================================
    # VERIFY / CONFIRM
    # =========================================================================

    async def verify_payment(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        order_id: str,
    ) -> Order:
        """Check the payment signature, then confirm the Order."""
        log = self._get_logger(order_id=order_id, gateway_order_id=gateway_order_id)

        if not verify_payment_signature(
            self.settings.gateway_key_secret, gateway_order_id, gateway_payment_id, signature
        ):
            log.warning("payment_verification_failed", reason="signature_mismatch")
            raise AuthenticationError("Payment verification failed")

        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)
            if order.payment_info.gateway_order_id != gateway_order_id:
                log.warning("payment_verification_failed", reason="gateway_order_mismatch")
                raise AuthenticationError("Payment verification failed")
            order = await self._apply_confirmation(tx, order, gateway_payment_id, None, "user", log)

        log.info("payment_verified", status=order.status.value)
        return order

    async def confirm_gateway_order(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        paid_at: Optional[datetime] = None,
        actor: str = "webhook",
    ) -> Optional[Order]:
        """Confirm by gateway order id. Returns None when no Order matches."""
        log = self._get_logger(gateway_order_id=gateway_order_id, gateway_payment_id=gateway_payment_id)
        async with self.store.transaction() as tx:
            order = await tx.orders.get_by_gateway_order_id(gateway_order_id, for_update=True)
            if order is None:
                return None
            return await self._apply_confirmation(tx, order, gateway_payment_id, paid_at, actor, log)

    async def _apply_confirmation(
        self,
        tx: Store,
        order: Order,
        gateway_payment_id: str,
        paid_at: Optional[datetime],
        actor: str,
        log,
    ) -> Order:
        """
        Idempotent confirm reducer. Must run inside a transaction.

        pending -> confirmed once; product sales and the cart clear are applied
        at most once per Order, guarded by payment_info.sales_applied.
        """
        previous_status = order.status
        changed = False

        if order.status == OrderStatus.CANCELLED:
            # Money was captured against a terminal order; it needs a manual refund
            log.error(
                "payment_captured_on_cancelled_order",
                order_id=order.id,
                gateway_payment_id=gateway_payment_id,
                amount=order.amount_minor,
                actor=actor,
            )
            return order

        if order.status == OrderStatus.PENDING:
            order = order.transition_to(OrderStatus.CONFIRMED).with_payment(
                status=PaymentStatus.COMPLETED,
                gateway_payment_id=gateway_payment_id,
                transaction_id=gateway_payment_id,
                paid_at=paid_at or utcnow(),
            )
            changed = True
        elif order.payment_info.gateway_payment_id is None:
            order = order.with_payment(gateway_payment_id=gateway_payment_id)
            changed = True

        if not order.payment_info.sales_applied:
            for item in order.items:
                await tx.products.increment_sales(item.product_id, item.quantity)
            await tx.carts.clear(order.user_id)
            order = order.with_payment(sales_applied=True)
            changed = True
            await self._emit_audit(
                tx, order, AuditEventType.SALES_APPLIED, actor,
                metadata={"items": len(order.items)},
            )

        if not changed:
            log.info("confirm_replayed", order_id=order.id)
            return order

        order = await tx.orders.save(order)
        if previous_status != order.status:
            await self._emit_audit(
                tx, order, AuditEventType.PAYMENT_CONFIRMED, actor,
                previous_status=previous_status,
                metadata={"gateway_payment_id": gateway_payment_id},
            )
            log.info("order_confirmed", order_id=order.id, actor=actor)
        return order

    async def mark_payment_failed(
        self, gateway_order_id: str, gateway_payment_id: Optional[str] = None
    ) -> Optional[Order]:
        """pending -> cancelled with payment_info.status=failed. Never downgrades."""
        log = self._get_logger(gateway_order_id=gateway_order_id)
        async with self.store.transaction() as tx:
            order = await tx.orders.get_by_gateway_order_id(gateway_order_id, for_update=True)
            if order is None:
                return None
            if order.status != OrderStatus.PENDING:
                log.info("payment_failure_ignored", order_id=order.id, status=order.status.value)
                return order

            previous_status = order.status
            order = order.transition_to(OrderStatus.CANCELLED).with_payment(
                status=PaymentStatus.FAILED,
                transaction_id=gateway_payment_id or order.payment_info.transaction_id,
            )
            order = await tx.orders.save(order)
            await self._emit_audit(
                tx, order, AuditEventType.PAYMENT_FAILED, "webhook",
                previous_status=previous_status,
                metadata={"gateway_payment_id": gateway_payment_id},
            )

        log.warning("order_payment_failed", order_id=order.id)
        return order

    # =========================================================================
    # REFUNDS
    # =========================================================================

    def _apply_refund(
        self,
        order: Order,
        refund_id: str,
        amount_minor: int,
        reason: Optional[str],
        log,
    ) -> tuple[Order, bool]:
        """Record a gateway refund on the Order. Replaying the same refund is a no-op."""
        info = order.payment_info
        if (
            info.gateway_refund_id == refund_id
            and info.status in (PaymentStatus.REFUNDED, PaymentStatus.PARTIALLY_REFUNDED)
            and info.refunded_at is not None
        ):
            return order, False

        partial = amount_minor < order.amount_minor
        target = OrderStatus.PARTIALLY_REFUNDED if partial else OrderStatus.REFUNDED
        order = order.with_payment(
            status=PaymentStatus.PARTIALLY_REFUNDED if partial else PaymentStatus.REFUNDED,
            gateway_refund_id=refund_id,
            refund_amount=from_minor_units(amount_minor),
            refunded_at=info.refunded_at or utcnow(),
            refund_reason=reason or info.refund_reason,
        )

        if order.status != target:
            if order.can_transition_to(target):
                order = order.transition_to(target)
            else:
                log.warning(
                    "refund_recorded_without_transition",
                    order_id=order.id,
                    status=order.status.value,
                )
        return order, True

    async def process_refund(
        self,
        order_id: str,
        requester_id: str,
        requester_role: UserRole,
        reason: str = "",
        amount: Optional[float] = None,
    ) -> tuple[Order, Optional[GatewayRefund]]:
        """
        Customers file a refund request; admins refund through the gateway.

        Returns the updated Order and, for admin refunds, the gateway refund.
        """
        log = self._get_logger(order_id=order_id, requester_id=requester_id)
        is_admin = requester_role == UserRole.ADMIN

        order = await self.store.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)

        if order.user_id != requester_id and not is_admin:
            log.warning("refund_not_authorized")
            raise AuthorizationError("Not authorized to process refund for this order")

        self._check_refundable(order, is_admin)

        if is_admin:
            return await self._refund_via_gateway(order, requester_id, reason, amount, log)

        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            self._check_refundable(order, is_admin=False)
            previous_status = order.status
            order = order.transition_to(OrderStatus.REFUND_REQUESTED).with_payment(refund_reason=reason)
            order = order.model_copy(update={"notes": f"Refund requested by user: {reason}"})
            order = await tx.orders.save(order)
            await self._emit_audit(
                tx, order, AuditEventType.REFUND_REQUESTED, "user",
                previous_status=previous_status, metadata={"reason": reason},
            )

        log.info("refund_requested")
        return order, None

    @staticmethod
    def _check_refundable(order: Order, is_admin: bool) -> None:
        allowed = REFUNDABLE_STATUSES | ({OrderStatus.REFUND_REQUESTED} if is_admin else set())
        if order.status not in allowed:
            raise ValidationError("Order cannot be refunded at this stage")
        if order.payment_info.status == PaymentStatus.REFUNDED:
            raise ValidationError("Order already refunded")

    async def approve_refund(
        self, order_id: str, admin_id: str, amount: Optional[float] = None
    ) -> tuple[Order, GatewayRefund]:
        """Admin approval of a customer refund request."""
        log = self._get_logger(order_id=order_id, requester_id=admin_id)
        order = await self.store.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.status != OrderStatus.REFUND_REQUESTED:
            raise ValidationError("Order has no pending refund request")
        reason = order.payment_info.refund_reason or ""
        return await self._refund_via_gateway(
            order, admin_id, reason, amount, log, require_request=True
        )

    async def _refund_via_gateway(
        self,
        order: Order,
        admin_id: str,
        reason: str,
        amount: Optional[float],
        log,
        require_request: bool = False,
    ) -> tuple[Order, GatewayRefund]:
        """
        Refund through the gateway while holding the Order row lock, so two
        admins cannot refund the same payment concurrently.
        """
        async with self.store.transaction() as tx:
            current = await tx.orders.get(order.id, for_update=True)
            if current is None:
                raise NotFoundError("Order", order.id)
            if require_request and current.status != OrderStatus.REFUND_REQUESTED:
                raise ValidationError("Order has no pending refund request")
            self._check_refundable(current, is_admin=True)

            payment_id = current.payment_info.gateway_payment_id
            if not payment_id:
                raise ValidationError("Order has no captured payment to refund")

            refund_minor = to_minor_units(amount) if amount is not None else current.amount_minor
            if refund_minor <= 0 or refund_minor > current.amount_minor:
                raise ValidationError("Refund amount must be positive and cannot exceed the order total")

            refund = await self.gateway.refund(
                payment_id,
                refund_minor,
                notes={"reason": reason, "processed_by": admin_id, "order_id": current.id},
            )

            previous_status = current.status
            current, changed = self._apply_refund(current, refund.id, refund.amount, reason, log)
            if changed:
                current = current.model_copy(update={"notes": f"Refund processed: {reason}"})
                current = await tx.orders.save(current)
                await self._emit_audit(
                    tx, current, AuditEventType.PAYMENT_REFUNDED, "admin",
                    previous_status=previous_status,
                    metadata={"refund_id": refund.id, "amount": refund.amount, "processed_by": admin_id},
                )

        log.info("refund_processed", refund_id=refund.id, amount=refund.amount, status=current.status.value)
        return current, refund

    async def record_gateway_refund(
        self, gateway_payment_id: str, refund_id: str, amount_minor: Optional[int] = None
    ) -> Optional[Order]:
        """
        Reconcile a refund reported by the gateway. Returns None when no Order matches.

        A refund without an amount is taken as a full refund.
        """
        log = self._get_logger(gateway_payment_id=gateway_payment_id, refund_id=refund_id)
        async with self.store.transaction() as tx:
            order = await tx.orders.get_by_gateway_payment_id(gateway_payment_id, for_update=True)
            if order is None:
                return None
            if amount_minor is None:
                amount_minor = order.amount_minor
            previous_status = order.status
            order, changed = self._apply_refund(order, refund_id, amount_minor, None, log)
            if not changed:
                log.info("refund_replayed", order_id=order.id)
                return order
            order = await tx.orders.save(order)
            await self._emit_audit(
                tx, order, AuditEventType.PAYMENT_REFUNDED, "webhook",
                previous_status=previous_status,
                metadata={"refund_id": refund_id, "amount": amount_minor},
            )
        log.info("refund_reconciled", order_id=order.id, status=order.status.value)
        return order

    # =========================================================================
    # DETAILS & ADMIN TRANSITIONS
    # =========================================================================

    async def get_payment_details(
        self, order_id: str, requester_id: str, requester_role: UserRole
    ) -> PaymentDetails:
        order = await self.store.orders.get(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.user_id != requester_id and requester_role != UserRole.ADMIN:
            raise AuthorizationError("Not authorized to view this payment")
        return PaymentDetails(
            payment_info=order.payment_info,
            order_number=order.order_number,
            total=order.total,
            status=order.status,
        )

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        actor_id: str,
        tracking_number: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Order:
        """Admin fulfilment transition. delivered_at is stamped once."""
        if new_status not in ADMIN_STATUS_TARGETS:
            raise ValidationError(f"Status {new_status.value} cannot be set directly")

        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None:
                raise NotFoundError("Order", order_id)

            previous_status = order.status
            if order.status != new_status:
                order = order.transition_to(new_status)

            updates = {}
            if tracking_number:
                updates["tracking_number"] = tracking_number
            if notes:
                updates["notes"] = notes
            if updates:
                order = order.model_copy(update=updates)

            order = await tx.orders.save(order)
            await self._emit_audit(
                tx, order, AuditEventType.ORDER_STATUS_UPDATED, "admin",
                previous_status=previous_status, metadata={"actor_id": actor_id},
            )

        self._get_logger(order_id=order_id).info(
            "order_status_updated", previous=previous_status.value, status=new_status.value
        )
        return order

    async def cancel_order(self, order_id: str, user_id: str) -> Order:
        """Customer cancellation of their own order."""
        async with self.store.transaction() as tx:
            order = await tx.orders.get(order_id, for_update=True)
            if order is None or order.user_id != user_id:
                raise NotFoundError("Order", order_id)
            if order.status not in CUSTOMER_CANCELLABLE:
                raise ValidationError("Order cannot be cancelled at this stage")

            previous_status = order.status
            order = await tx.orders.save(order.transition_to(OrderStatus.CANCELLED))
            await self._emit_audit(
                tx, order, AuditEventType.ORDER_CANCELLED, "user", previous_status=previous_status
            )

        self._get_logger(order_id=order_id).info("order_cancelled", previous=previous_status.value)
        return order
