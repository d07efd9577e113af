"""
Payment Gateway Client
======================
Adapter between the order lifecycle and the third-party payment SDK.

The lifecycle only sees ``IPaymentGatewayClient``: create a remote payment
order for an amount in the smallest currency unit, and refund a captured
payment. ``StripeGatewayClient`` maps both onto Stripe PaymentIntents and
Refunds, passing the API key per call instead of through module globals.

pip install stripe structlog
"""

from abc import ABC, abstractmethod
from typing import Optional

import stripe
import structlog
from pydantic import BaseModel

from artstop.config import Settings
from artstop.errors import UpstreamError


class GatewayOrder(BaseModel):
    id: str
    amount: int
    currency: str


class GatewayRefund(BaseModel):
    id: str
    amount: int
    status: str


class IPaymentGatewayClient(ABC):
    """Opaque payment gateway"""

    @abstractmethod
    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: Optional[dict] = None
    ) -> GatewayOrder:
        pass

    @abstractmethod
    async def refund(
        self, payment_id: str, amount: int, notes: Optional[dict] = None
    ) -> GatewayRefund:
        pass


class StripeGatewayClient(IPaymentGatewayClient):
    """Stripe-backed gateway client"""

    def __init__(self, settings: Settings, stripe_client=stripe):
        self._stripe = stripe_client
        self._api_key = settings.gateway_key_secret
        self._logger = structlog.get_logger().bind(component="gateway_client", provider="stripe")

    @staticmethod
    def _metadata(notes: Optional[dict]) -> dict[str, str]:
        # Stripe metadata values must be strings
        return {key: str(value) for key, value in (notes or {}).items() if value is not None}

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: Optional[dict] = None
    ) -> GatewayOrder:
        try:
            intent = self._stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                description=receipt,
                metadata={**self._metadata(notes), "receipt": receipt},
                idempotency_key=receipt,
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            self._logger.error("gateway_create_order_failed", error=str(e), error_type=type(e).__name__)
            raise UpstreamError("create_order", str(e)) from e

        self._logger.info("gateway_order_created", gateway_order_id=intent.id, amount=intent.amount)
        return GatewayOrder(id=intent.id, amount=intent.amount, currency=intent.currency.upper())

    async def refund(
        self, payment_id: str, amount: int, notes: Optional[dict] = None
    ) -> GatewayRefund:
        try:
            refund = self._stripe.Refund.create(
                payment_intent=payment_id,
                amount=amount,
                metadata=self._metadata(notes),
                api_key=self._api_key,
            )
        except stripe.StripeError as e:
            self._logger.error("gateway_refund_failed", payment_id=payment_id, error=str(e))
            raise UpstreamError("refund", str(e)) from e

        self._logger.info("gateway_refund_created", refund_id=refund.id, amount=refund.amount)
        return GatewayRefund(id=refund.id, amount=refund.amount, status=refund.status)
