"""Webhook authenticity checks.

Security contract:
- Shopify HMAC is computed over the raw request bytes, never over
  re-serialized JSON (whitespace or key order changes break the signature)
- Comparisons use hmac.compare_digest() (constant-time)
- Missing secret or missing header -> verification fails (fail-closed)
- The secret is the tenant's own webhook secret, looked up per event
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

logger = logging.getLogger(__name__)

SHOPIFY_HMAC_HEADER = "x-shopify-hmac-sha256"
SHOPIFY_DOMAIN_HEADER = "x-shopify-shop-domain"
SHOPIFY_WEBHOOK_ID_HEADER = "x-shopify-webhook-id"
META_SIGNATURE_HEADER = "x-hub-signature-256"
COURIER_TOKEN_HEADER = "x-courier-token"


def sign_shopify(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of ``body``, as Shopify sends it."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify(secret: str, body: bytes, signature_header: str | None) -> bool:
    """Verify a Shopify webhook HMAC-SHA256 signature.

    Args:
        secret: Tenant webhook signing secret
        body: Raw request body bytes, exactly as received
        signature_header: Value of X-Shopify-Hmac-SHA256 header

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Tenant webhook secret not set — rejecting webhook")
        return False
    if not signature_header:
        return False
    expected = sign_shopify(secret, body).encode("utf-8")
    return hmac.compare_digest(expected, signature_header.strip().encode("utf-8"))


def verify_meta(app_secret: str, body: bytes, signature_header: str | None) -> bool:
    """Verify a Meta X-Hub-Signature-256 header (``sha256=<hex>``)."""
    if not app_secret or not signature_header:
        return False
    scheme, _, signature = signature_header.strip().partition("=")
    if scheme != "sha256" or not signature:
        return False
    expected = hmac.new(app_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def verify_token(expected: str, provided: str | None) -> bool:
    """Constant-time shared-token check. Empty expected token fails closed."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def verify_subscription(
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str | None:
    """Meta webhook subscription handshake.

    Returns the challenge to echo back, or None when the request must be
    rejected.
    """
    if mode != "subscribe" or not token or not expected_token:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge or ""
