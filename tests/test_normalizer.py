"""Tests for payload normalization into canonical events."""

from __future__ import annotations

import json

import pytest
from hypothesis import given
from hypothesis import strategies as st

from orderflow.errors import MalformedPayload
from orderflow.events import ReplyAction
from orderflow.webhooks.normalizer import (
    normalize_phone,
    parse_courier_status,
    parse_customer_reply,
    parse_fulfillment,
    parse_order_created,
)

ORDER_BODY = {
    "id": "1001",
    "name": "#1001",
    "customer": {"first_name": "Ali", "phone": "03001234567"},
    "total_price": "1500",
    "currency": "PKR",
    "line_items": [{"name": "Shirt", "quantity": 2}],
}


def _whatsapp(message: dict) -> dict:
    return {"entry": [{"changes": [{"value": {"messages": [message]}}]}]}


class TestNormalizePhone:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("03001234567", "923001234567"),
            ("+92 300 1234567", "923001234567"),
            ("923001234567", "923001234567"),
            ("3001234567", "923001234567"),
            ("(300) 123-4567", "923001234567"),
            ("447700900123", "447700900123"),
        ],
    )
    def test_known_shapes(self, raw, expected):
        assert normalize_phone(raw, "92") == expected

    @pytest.mark.parametrize("raw", [None, "", "   ", "abc", "+-()"])
    def test_empty_input_returns_none(self, raw):
        assert normalize_phone(raw) is None

    @given(
        st.text(alphabet="0123456789\u0660\u0661\u0663\u06f5\u0966 +-()", max_size=20),
        st.sampled_from(["92", "+92", "44", "1"]),
    )
    def test_idempotent(self, raw, country_code):
        once = normalize_phone(raw, country_code)
        if once is not None:
            assert normalize_phone(once, country_code) == once

    @given(st.one_of(st.none(), st.text(max_size=30), st.integers()))
    def test_total(self, raw):
        result = normalize_phone(raw, "92")
        assert result is None or (result.isascii() and result.isdigit())

    def test_uses_given_country_code(self):
        assert normalize_phone("07700900123", "44") == "447700900123"

    def test_plus_prefixed_country_code(self):
        once = normalize_phone("03001234567", "+92")
        assert once == "923001234567"
        assert normalize_phone(once, "+92") == once

    def test_non_ascii_digits_dropped(self):
        assert normalize_phone("\u0660\u0663\u0660\u0660\u0661\u0662\u0663", "92") is None
        assert normalize_phone("0300\u0661\u06624567", "92") == "923004567"


class TestParseOrderCreated:
    def test_scenario_order(self):
        event = parse_order_created("t1", json.dumps(ORDER_BODY).encode(), country_code="92", created_at=42)
        order = event.order
        assert event.tenant_id == "t1"
        assert order.order_id == "1001"
        assert order.customer.phone == "923001234567"
        assert order.customer.name == "Ali"
        assert order.product.name == "Shirt"
        assert order.product.qty == 2
        assert order.amount.total == "1500"
        assert order.status.value == "pending"
        assert order.timeline.created_at == 42

    def test_shipping_phone_preferred(self):
        body = dict(ORDER_BODY, shipping_address={"phone": "03110000000", "city": "Karachi", "address1": "St 1"})
        order = parse_order_created("t1", json.dumps(body).encode(), country_code="92", created_at=1).order
        assert order.customer.phone == "923110000000"
        assert order.customer.city == "Karachi"

    def test_defaults_for_sparse_order(self):
        body = {"id": 55, "phone": "03001234567"}
        order = parse_order_created("t1", json.dumps(body).encode(), country_code="92", created_at=1).order
        assert order.order_id == "55"
        assert order.order_name == "#55"
        assert order.customer.name == "Customer"
        assert order.product.name == "Product"
        assert order.product.qty == 1

    @pytest.mark.parametrize(
        "body",
        [b"not json", b"[1, 2]", json.dumps({"name": "#1"}).encode(), json.dumps({"id": 1}).encode()],
    )
    def test_malformed(self, body):
        with pytest.raises(MalformedPayload):
            parse_order_created("t1", body, country_code="92", created_at=1)


class TestParseFulfillment:
    def test_successful_fulfillment_resource(self):
        event = parse_fulfillment("t1", {"id": 9, "order_id": 1001, "status": "success"})
        assert event.order_id == "1001"

    def test_fulfilled_resource(self):
        event = parse_fulfillment("t1", {"order_id": 1001, "status": "fulfilled"})
        assert event.order_id == "1001"

    @pytest.mark.parametrize(
        "payload",
        [{"order_id": 1001, "status": "pending"}, {"id": 1001, "fulfillment_status": "success"}],
    )
    def test_unfinished_fulfillment_ignored(self, payload):
        assert parse_fulfillment("t1", payload) is None

    def test_order_level_payload(self):
        event = parse_fulfillment("t1", {"id": 1001, "fulfillment_status": "fulfilled"})
        assert event.order_id == "1001"

    def test_other_status_ignored(self):
        assert parse_fulfillment("t1", {"id": 1001, "fulfillment_status": "partial"}) is None

    def test_missing_id(self):
        with pytest.raises(MalformedPayload):
            parse_fulfillment("t1", {"status": "fulfilled"})


class TestParseCustomerReply:
    def test_button_payload_carries_context(self):
        payload = _whatsapp({"from": "923001234567", "button": {"payload": "CONFIRM_ORDER:t1:1001", "text": "Confirm"}})
        event = parse_customer_reply(payload, country_code="92")
        assert event.action == ReplyAction.CONFIRM
        assert (event.tenant_hint, event.order_hint) == ("t1", "1001")

    def test_interactive_reply(self):
        payload = _whatsapp({
            "from": "923001234567",
            "interactive": {"button_reply": {"id": "CANCEL_ORDER:t1:1001", "title": "Cancel"}},
        })
        event = parse_customer_reply(payload, country_code="92")
        assert event.action == ReplyAction.CANCEL

    def test_caption_only_button(self):
        payload = _whatsapp({"from": "03001234567", "button": {"text": "Yes, confirm"}})
        event = parse_customer_reply(payload, country_code="92")
        assert event.action == ReplyAction.CONFIRM
        assert event.phone == "923001234567"
        assert event.order_hint is None

    def test_free_text_has_no_action(self):
        payload = _whatsapp({"from": "923001234567", "text": {"body": "where is my parcel"}})
        event = parse_customer_reply(payload, country_code="92")
        assert event.action is None
        assert event.text == "where is my parcel"

    def test_status_callback_ignored(self):
        payload = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        assert parse_customer_reply(payload, country_code="92") is None


class TestParseCourierStatus:
    def test_reference_and_status(self):
        event = parse_courier_status("t1", {"orderRefNumber": "1001", "orderStatus": "Delivered"})
        assert (event.order_id, event.status) == ("1001", "Delivered")

    def test_missing_fields(self):
        with pytest.raises(MalformedPayload):
            parse_courier_status("t1", {"orderRefNumber": "1001"})
