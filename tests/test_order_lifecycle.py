"""Tests for the order lifecycle controller."""

import asyncio

import pytest
from structlog.testing import capture_logs

from artstop.errors import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from artstop.schemas.api import ShippingAddressInput
from artstop.schemas.orders import Cart, CartItem, OrderStatus, PaymentStatus, UserRole


class TestCreateOrder:
    async def test_creates_pending_order_for_cart_total(self, lifecycle, store, gateway, settings):
        result = await lifecycle.create_order("user_1")

        assert result.amount == 120000
        assert result.currency == "INR"
        assert result.key == settings.gateway_key_id
        assert result.gateway_order_id == "order_gw1"

        order = await store.orders.get(result.order_id)
        assert order.status == OrderStatus.PENDING
        assert order.payment_info.status == PaymentStatus.PENDING
        assert order.payment_info.gateway_order_id == result.gateway_order_id
        assert order.payment_info.transaction_id == result.gateway_order_id
        assert (order.subtotal, order.tax, order.shipping, order.total) == (1000, 180, 20, 1200)

    async def test_gateway_called_with_receipt_and_notes(self, lifecycle, gateway):
        result = await lifecycle.create_order("user_1")

        call = gateway.created[0]
        assert call["amount"] == 120000
        assert call["receipt"] == f"receipt_{result.order_id}"
        assert call["notes"]["user_id"] == "user_1"
        assert call["notes"]["user_email"] == "asha@example.com"

    async def test_item_totals_are_price_times_quantity(self, lifecycle, store):
        result = await lifecycle.create_order("user_1")
        order = await store.orders.get(result.order_id)

        assert [item.total for item in order.items] == [800, 200]
        assert order.total == order.subtotal + order.tax + order.shipping

    async def test_cart_left_intact(self, lifecycle, store):
        await lifecycle.create_order("user_1")
        cart = await store.carts.get("user_1")
        assert len(cart.items) == 2

    async def test_shipping_address_defaults_from_profile(self, lifecycle, store):
        result = await lifecycle.create_order("user_1")
        address = (await store.orders.get(result.order_id)).shipping_address
        assert address.name == "Asha Rao"
        assert address.email == "asha@example.com"
        assert address.phone == "9800000001"
        assert address.country == "India"

    async def test_supplied_shipping_fields_win(self, lifecycle, store):
        supplied = ShippingAddressInput(city="Pune", phone="9999999999")
        result = await lifecycle.create_order("user_1", shipping_address=supplied)
        address = (await store.orders.get(result.order_id)).shipping_address
        assert address.city == "Pune"
        assert address.phone == "9999999999"
        assert address.email == "asha@example.com"

    async def test_empty_cart_rejected(self, lifecycle, gateway):
        with pytest.raises(ValidationError, match="Cart is empty"):
            await lifecycle.create_order("user_2")
        assert gateway.created == []

    async def test_unknown_user_rejected(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.create_order("ghost")

    async def test_out_of_stock_product_rejected(self, lifecycle, store, gateway):
        await store.carts.save(Cart(
            user_id="user_2",
            items=[CartItem(product_id="prod_sold", quantity=1, price=300)],
        ))
        with pytest.raises(ValidationError, match="Product Sold Sketch is no longer available"):
            await lifecycle.create_order("user_2")
        assert gateway.created == []

    async def test_missing_product_rejected(self, lifecycle, store):
        await store.carts.save(Cart(
            user_id="user_2",
            items=[CartItem(product_id="prod_gone", quantity=1, price=300)],
        ))
        with pytest.raises(ValidationError, match="Product Unknown is no longer available"):
            await lifecycle.create_order("user_2")

    async def test_below_minimum_amount_rejected(self, lifecycle, store, gateway):
        await store.carts.save(Cart(
            user_id="user_2",
            items=[CartItem(product_id="prod_print", quantity=1, price=0.5)],
        ))
        with pytest.raises(ValidationError, match="at least"):
            await lifecycle.create_order("user_2")
        assert gateway.created == []

    async def test_gateway_failure_is_upstream_error(self, lifecycle, store, gateway):
        gateway.fail_with = "timeout"
        with pytest.raises(UpstreamError):
            await lifecycle.create_order("user_1")
        assert await store.orders.count() == 0

    async def test_repeat_create_reuses_pending_order(self, lifecycle, store, gateway):
        first = await lifecycle.create_order("user_1")
        second = await lifecycle.create_order("user_1")

        assert second.order_id == first.order_id
        assert second.gateway_order_id == first.gateway_order_id
        assert len(gateway.created) == 1
        assert await store.orders.count() == 1

    async def test_explicit_idempotency_key(self, lifecycle, gateway):
        first = await lifecycle.create_order("user_1", idempotency_key="checkout-1")
        again = await lifecycle.create_order("user_1", idempotency_key="checkout-1")
        other = await lifecycle.create_order("user_1", idempotency_key="checkout-2")

        assert again.order_id == first.order_id
        assert other.order_id != first.order_id
        assert len(gateway.created) == 2

    async def test_changed_cart_gets_new_order(self, lifecycle, store):
        first = await lifecycle.create_order("user_1")
        cart = await store.carts.get("user_1")
        await store.carts.save(cart.model_copy(update={"items": cart.items[:1]}))

        second = await lifecycle.create_order("user_1")
        assert second.order_id != first.order_id
        assert second.amount == 100000


class TestVerifyPayment:
    async def test_valid_signature_confirms_and_clears_cart(self, lifecycle, store, sign_payment):
        created = await lifecycle.create_order("user_1")
        gid = created.gateway_order_id

        order = await lifecycle.verify_payment(gid, "pay_1", sign_payment(gid, "pay_1"), created.order_id)

        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_info.status == PaymentStatus.COMPLETED
        assert order.payment_info.gateway_payment_id == "pay_1"
        assert order.payment_info.transaction_id == "pay_1"
        assert order.payment_info.paid_at is not None
        assert order.payment_info.sales_applied is True
        assert (await store.carts.get("user_1")).items == []

    async def test_sales_incremented_from_order_items(self, lifecycle, store, sign_payment):
        created = await lifecycle.create_order("user_1")
        gid = created.gateway_order_id
        await lifecycle.verify_payment(gid, "pay_1", sign_payment(gid, "pay_1"), created.order_id)

        assert (await store.products.get("prod_canvas")).sales == 2
        assert (await store.products.get("prod_print")).sales == 1

    async def test_tampered_signature_changes_nothing(self, lifecycle, store, sign_payment):
        created = await lifecycle.create_order("user_1")
        gid = created.gateway_order_id
        tampered = "0" * 64

        with pytest.raises(AuthenticationError, match="Payment verification failed"):
            await lifecycle.verify_payment(gid, "pay_1", tampered, created.order_id)

        order = await store.orders.get(created.order_id)
        assert order.status == OrderStatus.PENDING
        assert order.payment_info.status == PaymentStatus.PENDING
        assert len((await store.carts.get("user_1")).items) == 2

    async def test_signature_for_other_gateway_order_rejected(self, lifecycle, store, sign_payment):
        created = await lifecycle.create_order("user_1")

        with pytest.raises(AuthenticationError):
            await lifecycle.verify_payment(
                "order_other", "pay_1", sign_payment("order_other", "pay_1"), created.order_id
            )
        assert (await store.orders.get(created.order_id)).status == OrderStatus.PENDING

    async def test_missing_order(self, lifecycle, sign_payment):
        with pytest.raises(NotFoundError, match="Order not found"):
            await lifecycle.verify_payment("gw", "pay", sign_payment("gw", "pay"), "missing")

    async def test_replayed_verify_is_noop(self, lifecycle, store, sign_payment, confirmed_order):
        gid = confirmed_order.payment_info.gateway_order_id
        again = await lifecycle.verify_payment(
            gid, "pay_1", sign_payment(gid, "pay_1"), confirmed_order.id
        )

        assert again.status == OrderStatus.CONFIRMED
        assert again.payment_info.paid_at == confirmed_order.payment_info.paid_at
        assert (await store.products.get("prod_canvas")).sales == 2

    async def test_audit_trail_records_confirmation(self, store, confirmed_order):
        events = [entry.event_type for entry in await store.audit.get_by_order(confirmed_order.id)]
        assert events == ["order.created", "order.sales_applied", "payment.confirmed"]


class TestConfirmReducer:
    async def test_confirm_twice_increments_sales_once(self, lifecycle, store):
        created = await lifecycle.create_order("user_1")

        first = await lifecycle.confirm_gateway_order(created.gateway_order_id, "pay_9")
        second = await lifecycle.confirm_gateway_order(created.gateway_order_id, "pay_9")

        assert first.status == second.status == OrderStatus.CONFIRMED
        assert (await store.products.get("prod_canvas")).sales == 2

    async def test_does_not_regress_later_status(self, lifecycle, store, confirmed_order):
        await lifecycle.update_status(confirmed_order.id, OrderStatus.SHIPPED, "admin_1")

        order = await lifecycle.confirm_gateway_order(confirmed_order.payment_info.gateway_order_id, "pay_1")
        assert order.status == OrderStatus.SHIPPED

    async def test_cancelled_order_stays_cancelled(self, lifecycle, store):
        created = await lifecycle.create_order("user_1")
        await lifecycle.mark_payment_failed(created.gateway_order_id, "pay_x")

        order = await lifecycle.confirm_gateway_order(created.gateway_order_id, "pay_x")
        assert order.status == OrderStatus.CANCELLED
        assert (await store.products.get("prod_canvas")).sales == 0

    async def test_capture_on_cancelled_order_logged_for_manual_refund(self, lifecycle, store):
        created = await lifecycle.create_order("user_1")
        await lifecycle.cancel_order(created.order_id, "user_1")

        with capture_logs() as logs:
            order = await lifecycle.confirm_gateway_order(created.gateway_order_id, "pay_late")

        assert order.status == OrderStatus.CANCELLED
        assert order.payment_info.sales_applied is False
        errors = [entry for entry in logs if entry["log_level"] == "error"]
        assert errors[0]["event"] == "payment_captured_on_cancelled_order"
        assert errors[0]["gateway_payment_id"] == "pay_late"
        assert errors[0]["amount"] == 120000

    async def test_unknown_gateway_order(self, lifecycle):
        assert await lifecycle.confirm_gateway_order("order_missing", "pay") is None

    async def test_failure_mid_reducer_rolls_back(self, lifecycle, store, monkeypatch):
        created = await lifecycle.create_order("user_1")

        async def broken_clear(user_id):
            raise RuntimeError("cart store unavailable")

        monkeypatch.setattr(store.carts, "clear", broken_clear)
        with pytest.raises(RuntimeError):
            await lifecycle.confirm_gateway_order(created.gateway_order_id, "pay_1")

        order = await store.orders.get(created.order_id)
        assert order.status == OrderStatus.PENDING
        assert order.payment_info.sales_applied is False
        assert (await store.products.get("prod_canvas")).sales == 0


class TestPaymentFailed:
    async def test_pending_order_cancelled(self, lifecycle):
        created = await lifecycle.create_order("user_1")

        order = await lifecycle.mark_payment_failed(created.gateway_order_id, "pay_bad")
        assert order.status == OrderStatus.CANCELLED
        assert order.payment_info.status == PaymentStatus.FAILED
        assert order.payment_info.transaction_id == "pay_bad"

    async def test_confirmed_order_not_downgraded(self, lifecycle, confirmed_order):
        order = await lifecycle.mark_payment_failed(confirmed_order.payment_info.gateway_order_id, "pay_late")
        assert order.status == OrderStatus.CONFIRMED
        assert order.payment_info.status == PaymentStatus.COMPLETED


class TestProcessRefund:
    async def test_admin_full_refund(self, lifecycle, gateway, confirmed_order):
        order, refund = await lifecycle.process_refund(
            confirmed_order.id, "admin_1", UserRole.ADMIN, reason="damaged"
        )

        assert gateway.refunds[0]["payment_id"] == "pay_1"
        assert gateway.refunds[0]["amount"] == 120000
        assert refund.amount == 120000
        assert order.status == OrderStatus.REFUNDED
        assert order.payment_info.status == PaymentStatus.REFUNDED
        assert order.payment_info.refund_amount == 1200
        assert order.payment_info.gateway_refund_id == refund.id
        assert order.payment_info.refunded_at is not None
        assert order.payment_info.refund_reason == "damaged"

    async def test_admin_partial_refund(self, lifecycle, gateway, confirmed_order):
        order, refund = await lifecycle.process_refund(
            confirmed_order.id, "admin_1", UserRole.ADMIN, reason="frame cracked", amount=200
        )

        assert gateway.refunds[0]["amount"] == 20000
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.payment_info.status == PaymentStatus.PARTIALLY_REFUNDED
        assert order.payment_info.refund_amount == 200

    @pytest.mark.parametrize("amount", [1200.01, 5000])
    async def test_amount_above_total_rejected(self, lifecycle, gateway, confirmed_order, amount):
        with pytest.raises(ValidationError):
            await lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN, amount=amount)
        assert gateway.refunds == []

    async def test_customer_request_moves_no_money(self, lifecycle, gateway, confirmed_order):
        order, refund = await lifecycle.process_refund(
            confirmed_order.id, "user_1", UserRole.CUSTOMER, reason="changed my mind"
        )

        assert refund is None
        assert gateway.refunds == []
        assert order.status == OrderStatus.REFUND_REQUESTED
        assert order.payment_info.status == PaymentStatus.COMPLETED
        assert order.payment_info.refund_reason == "changed my mind"

    async def test_non_owner_rejected(self, lifecycle, store, gateway, confirmed_order):
        with pytest.raises(AuthorizationError):
            await lifecycle.process_refund(confirmed_order.id, "user_2", UserRole.CUSTOMER)

        order = await store.orders.get(confirmed_order.id)
        assert order.status == OrderStatus.CONFIRMED
        assert gateway.refunds == []

    async def test_already_refunded_rejected(self, lifecycle, confirmed_order):
        await lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN)

        with pytest.raises(ValidationError):
            await lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN)

    async def test_pending_order_not_refundable(self, lifecycle):
        created = await lifecycle.create_order("user_1")
        with pytest.raises(ValidationError, match="cannot be refunded at this stage"):
            await lifecycle.process_refund(created.order_id, "user_1", UserRole.CUSTOMER)

    async def test_missing_order(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.process_refund("missing", "admin_1", UserRole.ADMIN)

    async def test_gateway_failure_leaves_order(self, lifecycle, store, gateway, confirmed_order):
        gateway.fail_with = "declined"
        with pytest.raises(UpstreamError):
            await lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN)
        assert (await store.orders.get(confirmed_order.id)).status == OrderStatus.CONFIRMED

    async def test_concurrent_admin_refunds_reach_gateway_once(self, lifecycle, store, gateway, confirmed_order):
        results = await asyncio.gather(
            lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN, amount=300),
            lifecycle.process_refund(confirmed_order.id, "admin_2", UserRole.ADMIN, amount=400),
            return_exceptions=True,
        )

        assert len(gateway.refunds) == 1
        assert sum(isinstance(result, ValidationError) for result in results) == 1
        order = await store.orders.get(confirmed_order.id)
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.payment_info.refund_amount == gateway.refunds[0]["amount"] / 100

    async def test_approval_rechecks_request_under_lock(self, lifecycle, gateway, confirmed_order):
        await lifecycle.process_refund(confirmed_order.id, "user_1", UserRole.CUSTOMER, reason="late")

        results = await asyncio.gather(
            lifecycle.approve_refund(confirmed_order.id, "admin_1"),
            lifecycle.approve_refund(confirmed_order.id, "admin_2"),
            return_exceptions=True,
        )

        assert len(gateway.refunds) == 1
        assert sum(isinstance(result, ValidationError) for result in results) == 1


class TestApproveRefund:
    async def test_approves_requested_refund(self, lifecycle, gateway, confirmed_order):
        await lifecycle.process_refund(confirmed_order.id, "user_1", UserRole.CUSTOMER, reason="late")

        order, refund = await lifecycle.approve_refund(confirmed_order.id, "admin_1")

        assert order.status == OrderStatus.REFUNDED
        assert order.payment_info.refund_reason == "late"
        assert gateway.refunds[0]["amount"] == 120000
        assert gateway.refunds[0]["notes"]["processed_by"] == "admin_1"

    async def test_requires_refund_request(self, lifecycle, confirmed_order):
        with pytest.raises(ValidationError, match="no pending refund request"):
            await lifecycle.approve_refund(confirmed_order.id, "admin_1")


class TestRecordGatewayRefund:
    async def test_full_refund_recorded_once(self, lifecycle, store, confirmed_order):
        first = await lifecycle.record_gateway_refund("pay_1", "rfnd_ext", 120000)
        second = await lifecycle.record_gateway_refund("pay_1", "rfnd_ext", 120000)

        assert first.status == second.status == OrderStatus.REFUNDED
        assert second.version == first.version
        assert second.payment_info.refunded_at == first.payment_info.refunded_at

    async def test_partial_refund(self, lifecycle, confirmed_order):
        order = await lifecycle.record_gateway_refund("pay_1", "rfnd_ext", 50000)
        assert order.status == OrderStatus.PARTIALLY_REFUNDED
        assert order.payment_info.refund_amount == 500

    async def test_after_admin_refund_is_noop(self, lifecycle, confirmed_order):
        refunded, refund = await lifecycle.process_refund(confirmed_order.id, "admin_1", UserRole.ADMIN)

        order = await lifecycle.record_gateway_refund("pay_1", refund.id, refund.amount)
        assert order.version == refunded.version

    async def test_unknown_payment(self, lifecycle):
        assert await lifecycle.record_gateway_refund("pay_missing", "rfnd", 100) is None


class TestPaymentDetails:
    async def test_owner_sees_details(self, lifecycle, confirmed_order):
        details = await lifecycle.get_payment_details(confirmed_order.id, "user_1", UserRole.CUSTOMER)
        assert details.order_number == confirmed_order.order_number
        assert details.total == 1200
        assert details.payment_info.gateway_payment_id == "pay_1"

    async def test_admin_sees_details(self, lifecycle, confirmed_order):
        details = await lifecycle.get_payment_details(confirmed_order.id, "admin_1", UserRole.ADMIN)
        assert details.status == OrderStatus.CONFIRMED

    async def test_stranger_rejected(self, lifecycle, confirmed_order):
        with pytest.raises(AuthorizationError):
            await lifecycle.get_payment_details(confirmed_order.id, "user_2", UserRole.CUSTOMER)


class TestUpdateStatus:
    async def test_fulfilment_path(self, lifecycle, confirmed_order):
        order = await lifecycle.update_status(confirmed_order.id, OrderStatus.PROCESSING, "admin_1")
        order = await lifecycle.update_status(
            order.id, OrderStatus.SHIPPED, "admin_1", tracking_number="TRK123"
        )
        order = await lifecycle.update_status(order.id, OrderStatus.DELIVERED, "admin_1")

        assert order.status == OrderStatus.DELIVERED
        assert order.tracking_number == "TRK123"
        assert order.delivered_at is not None

    async def test_disallowed_transition(self, lifecycle, store):
        created = await lifecycle.create_order("user_1")
        with pytest.raises(ValidationError):
            await lifecycle.update_status(created.order_id, OrderStatus.SHIPPED, "admin_1")
        assert (await store.orders.get(created.order_id)).status == OrderStatus.PENDING

    async def test_refund_statuses_not_settable(self, lifecycle, confirmed_order):
        with pytest.raises(ValidationError):
            await lifecycle.update_status(confirmed_order.id, OrderStatus.REFUNDED, "admin_1")

    async def test_same_status_updates_notes_only(self, lifecycle, confirmed_order):
        shipped = await lifecycle.update_status(confirmed_order.id, OrderStatus.SHIPPED, "admin_1")
        again = await lifecycle.update_status(shipped.id, OrderStatus.SHIPPED, "admin_1", notes="Courier delayed")
        assert again.status == OrderStatus.SHIPPED
        assert again.notes == "Courier delayed"

    async def test_missing_order(self, lifecycle):
        with pytest.raises(NotFoundError):
            await lifecycle.update_status("missing", OrderStatus.SHIPPED, "admin_1")


class TestCancelOrder:
    async def test_owner_cancels_confirmed_order(self, lifecycle, confirmed_order):
        order = await lifecycle.cancel_order(confirmed_order.id, "user_1")
        assert order.status == OrderStatus.CANCELLED

    async def test_other_user_sees_not_found(self, lifecycle, confirmed_order):
        with pytest.raises(NotFoundError):
            await lifecycle.cancel_order(confirmed_order.id, "user_2")

    async def test_shipped_order_not_cancellable(self, lifecycle, confirmed_order):
        await lifecycle.update_status(confirmed_order.id, OrderStatus.SHIPPED, "admin_1")
        with pytest.raises(ValidationError, match="cannot be cancelled"):
            await lifecycle.cancel_order(confirmed_order.id, "user_1")
