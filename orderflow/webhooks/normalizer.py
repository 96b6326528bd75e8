"""Inbound event normalizer — provider payloads -> canonical events.

Shopify order/fulfillment webhooks, WhatsApp Cloud API message envelopes and
courier status callbacks all arrive as duck-typed JSON. Everything here is
pure: no I/O, no clock reads except the creation timestamp passed in.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from orderflow.errors import MalformedPayload
from orderflow.events import (
    CourierStatusObserved,
    CustomerReplied,
    FulfillmentReported,
    OrderCreated,
    ReplyAction,
)
from orderflow.models import Amount, Customer, Order, OrderStatus, Product, Timeline

logger = logging.getLogger(__name__)

SHORT_NUMBER_MAX_DIGITS = 10

# ASCII 0-9 only; str.isdigit() and \D also accept other scripts
_NON_DIGITS = re.compile(r"[^0-9]")

# A fulfillment resource reports "success" once the shipment is created
_FULFILLED_STATUSES = ("success", "fulfilled")

# Button captions seen when a client drops the quick-reply payload
_CONFIRM_WORDS = ("confirm", "yes")
_CANCEL_WORDS = ("cancel", "no")


def normalize_phone(raw: Any, country_code: str = "92") -> str | None:
    """Normalize a phone number to country-code-prefixed digits.

    - strip every non-digit
    - leading 0 -> replaced by the country code
    - already starts with the country code -> unchanged
    - 10 digits or fewer -> country code prefixed
    - anything else passes through

    Empty or absent input returns None. The country code is reduced to its
    digits first (``"+92"`` -> ``"92"``). Idempotent for a fixed country code.
    """
    if raw is None:
        return None
    country_code = _NON_DIGITS.sub("", country_code or "")
    digits = _NON_DIGITS.sub("", str(raw))
    if not digits:
        return None
    if digits.startswith("0"):
        return country_code + digits[1:]
    if digits.startswith(country_code):
        return digits
    if len(digits) <= SHORT_NUMBER_MAX_DIGITS:
        return country_code + digits
    return digits


def _text(value: Any, default: str) -> str:
    if value is None or value == "":
        return default
    return str(value)


def _first_line_item(order: dict) -> dict:
    items = order.get("line_items")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return {}


def _section(payload: dict, key: str) -> dict:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def parse_order_created(
    tenant_id: str,
    body: bytes,
    *,
    country_code: str,
    created_at: int,
) -> OrderCreated:
    """Parse a verified Shopify ``orders/create`` body.

    Must only be called after the raw body passed signature verification.

    Raises:
        MalformedPayload: body is not a JSON object, or has no id or phone.
    """
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"order body is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedPayload("order body is not a JSON object")

    order_id = payload.get("id")
    if order_id is None or order_id == "":
        raise MalformedPayload("order has no id")

    shipping = _section(payload, "shipping_address")
    billing = _section(payload, "billing_address")
    customer = _section(payload, "customer")

    phone = normalize_phone(
        shipping.get("phone")
        or customer.get("phone")
        or billing.get("phone")
        or payload.get("phone"),
        country_code,
    )
    if not phone:
        raise MalformedPayload(f"order {order_id} has no customer phone")

    item = _first_line_item(payload)
    try:
        qty = int(item.get("quantity") or 1)
    except (TypeError, ValueError):
        qty = 1

    order = Order(
        tenant_id=tenant_id,
        order_id=str(order_id),
        order_name=_text(payload.get("name"), f"#{order_id}"),
        customer=Customer(
            name=_text(customer.get("first_name") or shipping.get("first_name"), "Customer"),
            phone=phone,
            address=shipping.get("address1") or None,
            city=shipping.get("city") or None,
        ),
        amount=Amount(
            total=_text(payload.get("total_price"), "0.00"),
            currency=_text(payload.get("currency"), "USD"),
        ),
        product=Product(name=_text(item.get("name") or item.get("title"), "Product"), qty=qty),
        status=OrderStatus.PENDING,
        timeline=Timeline(created_at=created_at),
    )
    return OrderCreated(tenant_id=tenant_id, order=order)


def parse_fulfillment(tenant_id: str, payload: Any) -> FulfillmentReported | None:
    """Parse a fulfillment webhook into a fulfillment report.

    Two payload shapes are accepted:

    - order-level (``orders/fulfilled``): ``id`` + ``fulfillment_status``,
      advances only on ``"fulfilled"``
    - fulfillment resource (``fulfillments/create``): ``order_id`` +
      ``status``, advances on ``"success"`` (``"fulfilled"`` is also taken)

    Anything else (partial, pending, cancelled) returns None.
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("fulfillment body is not a JSON object")
    status = payload.get("fulfillment_status") or payload.get("status")
    done = _FULFILLED_STATUSES if "order_id" in payload else ("fulfilled",)
    if status not in done:
        logger.info("Ignoring fulfillment status %r for tenant %s", status, tenant_id)
        return None
    order_id = payload.get("order_id") or payload.get("id")
    if order_id is None or order_id == "":
        raise MalformedPayload("fulfillment has no order id")
    return FulfillmentReported(tenant_id=tenant_id, order_id=str(order_id))


def _first_message(payload: Any) -> dict | None:
    try:
        return payload["entry"][0]["changes"][0]["value"]["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None


def _action_from_caption(caption: str) -> ReplyAction | None:
    words = caption.strip().lower()
    if any(words.startswith(w) for w in _CONFIRM_WORDS):
        return ReplyAction.CONFIRM
    if any(words.startswith(w) for w in _CANCEL_WORDS):
        return ReplyAction.CANCEL
    return None


def parse_customer_reply(payload: Any, *, country_code: str) -> CustomerReplied | None:
    """Parse a WhatsApp Cloud API message envelope.

    A quick-reply button carries ``ACTION:tenantId:orderId`` in its payload.
    A button with only a caption maps "confirm"/"cancel" wording to an
    action without ids. Free text carries no action. Status callbacks
    (delivery receipts) have no message and return None.
    """
    msg = _first_message(payload)
    if not isinstance(msg, dict):
        return None

    phone = normalize_phone(msg.get("from"), country_code)
    if not phone:
        return None

    button = msg.get("button") if isinstance(msg.get("button"), dict) else {}
    interactive = msg.get("interactive") if isinstance(msg.get("interactive"), dict) else {}
    button_reply = interactive.get("button_reply") if isinstance(interactive.get("button_reply"), dict) else {}

    raw_payload = button.get("payload") or button_reply.get("id") or ""
    caption = button.get("text") or button_reply.get("title") or ""
    text = (msg.get("text") or {}).get("body", "") if isinstance(msg.get("text"), dict) else ""

    action = None
    tenant_hint = order_hint = None
    if raw_payload:
        parts = str(raw_payload).split(":")
        action = ReplyAction.parse(parts[0])
        if len(parts) >= 3:
            tenant_hint = parts[1] or None
            order_hint = parts[2] or None
    if action is None and caption:
        action = _action_from_caption(caption)

    return CustomerReplied(
        phone=phone,
        action=action,
        tenant_hint=tenant_hint,
        order_hint=order_hint,
        text=text or caption,
    )


def parse_courier_status(tenant_id: str, payload: Any) -> CourierStatusObserved | None:
    """Parse a courier status callback into a status observation."""
    if not isinstance(payload, dict):
        raise MalformedPayload("courier body is not a JSON object")
    order_id = payload.get("orderRefNumber") or payload.get("order_id")
    status = payload.get("orderStatus") or payload.get("status")
    if not order_id or not status:
        raise MalformedPayload("courier callback needs an order reference and a status")
    return CourierStatusObserved(tenant_id=tenant_id, order_id=str(order_id), status=str(status))
