"""
Signature Verifier
==================
HMAC-SHA256 proof-of-payment checks for the two confirmation paths:

- callback: hex digest of ``"{gateway_order_ref}|{gateway_payment_ref}"``
  keyed with the gateway key secret
- webhook: hex digest of the raw, unparsed request body keyed with the
  webhook secret

A mismatch is a normal ``False``. A missing secret is logged and also
returns ``False`` (fail closed).
"""

import hashlib
import hmac

import structlog

from config import GatewayConfig

logger = structlog.get_logger().bind(component="signature_verifier")


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def payment_message(gateway_order_ref: str, gateway_payment_ref: str) -> bytes:
    return f"{gateway_order_ref}|{gateway_payment_ref}".encode()


def _matches(expected: str, supplied: str) -> bool:
    # Bytes so non-ASCII input cannot raise inside compare_digest.
    return hmac.compare_digest(expected.encode(), supplied.encode("utf-8", "replace"))


class SignatureVerifier:

    def __init__(self, config: GatewayConfig):
        self._key_secret = config.key_secret
        self._webhook_secret = config.webhook_secret

    def verify_payment(self, gateway_order_ref: str, gateway_payment_ref: str, signature: str) -> bool:
        if not self._key_secret:
            logger.error("signature_secret_missing", path="callback")
            return False
        if not signature:
            return False
        expected = compute_signature(self._key_secret, payment_message(gateway_order_ref, gateway_payment_ref))
        return _matches(expected, signature)

    def verify_webhook(self, raw_body: bytes, signature: str) -> bool:
        if not self._webhook_secret:
            logger.error("signature_secret_missing", path="webhook")
            return False
        if not signature:
            return False
        expected = compute_signature(self._webhook_secret, raw_body)
        return _matches(expected, signature)
