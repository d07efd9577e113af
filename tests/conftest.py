"""Pytest fixtures for order service tests."""

import itertools
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from artstop.api.dependencies import create_access_token
from artstop.api.server import create_app
from artstop.config import Settings
from artstop.errors import UpstreamError
from artstop.pipeline.gateway_client import GatewayOrder, GatewayRefund, IPaymentGatewayClient
from artstop.pipeline.order_lifecycle import OrderLifecycle
from artstop.pipeline.order_queries import OrderQueries
from artstop.pipeline.signatures import compute_signature, payment_signature_payload
from artstop.pipeline.webhooks import WebhookProcessor
from artstop.schemas.orders import Cart, CartItem, Product, User, UserRole
from artstop.storage.memory import InMemoryStore


class RecordingGateway(IPaymentGatewayClient):
    """Gateway double that records every call and hands out sequential ids."""

    def __init__(self):
        self.created: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_with: Optional[str] = None
        self._ids = itertools.count(1)

    async def create_order(self, amount, currency, receipt, notes=None):
        if self.fail_with:
            raise UpstreamError("create_order", self.fail_with)
        self.created.append({"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})
        return GatewayOrder(id=f"order_gw{next(self._ids)}", amount=amount, currency=currency)

    async def refund(self, payment_id, amount, notes=None):
        if self.fail_with:
            raise UpstreamError("refund", self.fail_with)
        self.refunds.append({"payment_id": payment_id, "amount": amount, "notes": notes})
        return GatewayRefund(id=f"rfnd_{next(self._ids)}", amount=amount, status="processed")


@pytest.fixture
def settings():
    return Settings(
        gateway_key_id="key_test_public",
        gateway_key_secret="key_test_secret",
        gateway_webhook_secret="whsec_test",
        jwt_secret="jwt-test-secret",
        log_level="WARNING",
    )


@pytest.fixture
def store():
    """In-memory store seeded with three users, three products and one cart.

    Cart for user_1: 2 x 400 + 1 x 200 = 1000 subtotal, 180 tax, 20 shipping.
    """
    users = [
        User(id="user_1", name="Asha Rao", email="asha@example.com", phone="9800000001"),
        User(id="user_2", name="Ben Kumar", email="ben@example.com", phone="9800000002"),
        User(id="admin_1", name="Admin", email="admin@example.com", role=UserRole.ADMIN),
    ]
    products = [
        Product(id="prod_canvas", name="Monsoon Canvas", price=400, images=["canvas.jpg"]),
        Product(id="prod_print", name="Harbour Print", price=200),
        Product(id="prod_sold", name="Sold Sketch", price=300, in_stock=False),
    ]
    carts = [
        Cart(
            user_id="user_1",
            items=[
                CartItem(product_id="prod_canvas", quantity=2, price=400),
                CartItem(product_id="prod_print", quantity=1, price=200),
            ],
            tax=180,
            shipping=20,
        ),
    ]
    return InMemoryStore(users=users, products=products, carts=carts)


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def lifecycle(store, gateway, settings):
    return OrderLifecycle(store, gateway, settings)


@pytest.fixture
def queries(store):
    return OrderQueries(store)


@pytest.fixture
def processor(lifecycle, settings):
    return WebhookProcessor(lifecycle, settings)


@pytest.fixture
def sign_payment(settings):
    """Signature the gateway checkout would hand back to the client."""
    def _sign(gateway_order_id: str, gateway_payment_id: str) -> str:
        return compute_signature(
            settings.gateway_key_secret,
            payment_signature_payload(gateway_order_id, gateway_payment_id),
        )
    return _sign


@pytest.fixture
async def confirmed_order(lifecycle, sign_payment):
    """A pending order for user_1 confirmed with payment pay_1."""
    created = await lifecycle.create_order("user_1")
    return await lifecycle.verify_payment(
        created.gateway_order_id,
        "pay_1",
        sign_payment(created.gateway_order_id, "pay_1"),
        created.order_id,
    )


@pytest.fixture
def auth_headers(settings):
    def _headers(user_id: str = "user_1", role: UserRole = UserRole.CUSTOMER) -> dict:
        token = create_access_token(settings, user_id, f"{user_id}@example.com", role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def client(settings, store, gateway):
    return TestClient(create_app(settings=settings, store=store, gateway=gateway))
