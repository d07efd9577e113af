"""HMAC-SHA256 signatures for payment verification and gateway webhooks."""

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(secret: str, message: Union[str, bytes]) -> str:
    """Hex HMAC-SHA256 of ``message`` keyed with ``secret``."""
    if isinstance(message, str):
        message = message.encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, message: Union[str, bytes], signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = compute_signature(secret, message)
    return hmac.compare_digest(expected.encode(), signature.encode())


def payment_signature_payload(gateway_order_id: str, gateway_payment_id: str) -> str:
    return f"{gateway_order_id}|{gateway_payment_id}"


def verify_payment_signature(
    secret: str,
    gateway_order_id: str,
    gateway_payment_id: str,
    signature: Optional[str],
) -> bool:
    """Check the signature the client received from the gateway checkout."""
    return verify_signature(
        secret, payment_signature_payload(gateway_order_id, gateway_payment_id), signature
    )


def verify_webhook_signature(secret: str, raw_body: bytes, signature: Optional[str]) -> bool:
    # Must be the raw request bytes; re-serialized JSON will not match
    return verify_signature(secret, raw_body, signature)
