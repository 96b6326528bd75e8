"""Canonical events — the closed set of inputs to the order state machine.

Provider payloads (Shopify, WhatsApp, courier) are parsed into one of these
at the ingress boundary; the machine never sees raw provider JSON.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union

from orderflow.models import Order


class ReplyAction(str, Enum):
    """Quick-reply button payload actions."""
    CONFIRM = "CONFIRM_ORDER"
    CANCEL = "CANCEL_ORDER"

    @classmethod
    def parse(cls, value: str | None) -> ReplyAction | None:
        if not value:
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


def reply_payload(action: ReplyAction, tenant_id: str, order_id: str) -> str:
    """Build the ``action:tenantId:orderId`` payload round-tripped by WhatsApp."""
    return f"{action.value}:{tenant_id}:{order_id}"


@dataclass(frozen=True)
class OrderCreated:
    tenant_id: str
    order: Order


@dataclass(frozen=True)
class CustomerReplied:
    """A customer message. ``action`` is None for free text."""
    phone: str
    action: ReplyAction | None = None
    tenant_hint: str | None = None
    order_hint: str | None = None
    text: str = ""


@dataclass(frozen=True)
class FulfillmentReported:
    tenant_id: str
    order_id: str


@dataclass(frozen=True)
class CourierStatusObserved:
    tenant_id: str
    order_id: str
    status: str


CanonicalEvent = Union[OrderCreated, CustomerReplied, FulfillmentReported, CourierStatusObserved]
