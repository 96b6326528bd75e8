"""Tests for webhook signature and token verification."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

import pytest

from orderflow.webhooks.verification import (
    sign_shopify,
    verify_meta,
    verify_shopify,
    verify_subscription,
    verify_token,
)


class TestShopifyVerification:
    """Shopify HMAC-SHA256 verification (base64-encoded)."""

    SECRET = "shopify-test-secret"

    def _sign(self, body: bytes) -> str:
        """Compute valid Shopify signature."""
        digest = hmac.new(self.SECRET.encode(), body, hashlib.sha256).digest()
        return base64.b64encode(digest).decode()

    def test_valid_signature(self):
        body = b'{"id": 123, "topic": "orders/create"}'
        assert verify_shopify(self.SECRET, body, self._sign(body)) is True

    def test_sign_matches_provider_format(self):
        body = b'{"id": 1}'
        assert sign_shopify(self.SECRET, body) == self._sign(body)

    def test_invalid_signature(self):
        assert verify_shopify(self.SECRET, b'{"id": 123}', "invalid-signature") is False

    def test_tampered_body(self):
        sig = self._sign(b'{"id": 123}')
        assert verify_shopify(self.SECRET, b'{"id": 456}', sig) is False

    def test_reserialized_body_rejected(self):
        """Semantically identical JSON with different bytes must not verify."""
        original = b'{"id":1001,"name":"#1001","total_price":"1500"}'
        sig = self._sign(original)
        reserialized = json.dumps(json.loads(original), indent=2, sort_keys=True).encode()
        assert json.loads(reserialized) == json.loads(original)
        assert verify_shopify(self.SECRET, reserialized, sig) is False

    def test_missing_signature(self):
        assert verify_shopify(self.SECRET, b"body", None) is False

    def test_missing_secret_rejects(self):
        """No secret provisioned -> always reject (fail-closed)."""
        body = b'{"id": 123}'
        assert verify_shopify("", body, self._sign(body)) is False

    def test_non_ascii_header_rejected_not_raised(self):
        assert verify_shopify(self.SECRET, b"{}", "sïgnature") is False


class TestMetaVerification:
    SECRET = "meta-app-secret"

    def test_valid_signature(self):
        body = b'{"entry": []}'
        sig = hmac.new(self.SECRET.encode(), body, hashlib.sha256).hexdigest()
        assert verify_meta(self.SECRET, body, f"sha256={sig}") is True

    @pytest.mark.parametrize("header", [None, "", "sha1=abc", "sha256=", "deadbeef"])
    def test_bad_headers(self, header):
        assert verify_meta(self.SECRET, b"{}", header) is False


class TestSharedToken:
    def test_match(self):
        assert verify_token("tok", "tok") is True

    @pytest.mark.parametrize("expected,provided", [("tok", "nope"), ("", ""), ("tok", None), ("", "tok")])
    def test_mismatch(self, expected, provided):
        assert verify_token(expected, provided) is False


class TestSubscriptionHandshake:
    def test_echoes_challenge(self):
        assert verify_subscription("subscribe", "verify-me", "12345", "verify-me") == "12345"

    @pytest.mark.parametrize(
        "mode,token",
        [("subscribe", "wrong"), ("unsubscribe", "verify-me"), (None, "verify-me"), ("subscribe", None)],
    )
    def test_rejected(self, mode, token):
        assert verify_subscription(mode, token, "12345", "verify-me") is None
