"""Order and tenant data models.

Orders are persisted as documents at ``tenants/{tenantId}/orders/{orderId}``.
Document keys keep the storefront-era layout (``order_name``,
``timeline/createdAt``, ``whatsapp/confirmation_sent``) so existing store
contents stay readable; the dataclasses expose snake_case attributes.

Timestamps are epoch milliseconds. ``None`` means the milestone was not
reached.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    FULFILLED = "fulfilled"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"


_EDGES: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.FULFILLED}),
    OrderStatus.FULFILLED: frozenset({OrderStatus.OUT_FOR_DELIVERY}),
    OrderStatus.OUT_FOR_DELIVERY: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.DELIVERED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.DELIVERED})


def can_advance(current: OrderStatus, target: OrderStatus) -> bool:
    """True if ``target`` is reachable from ``current`` moving forward.

    Staying in place is not an advance.
    """
    frontier = set(_EDGES[current])
    seen: set[OrderStatus] = set()
    while frontier:
        status = frontier.pop()
        if status == target:
            return True
        seen.add(status)
        frontier |= _EDGES[status] - seen
    return False


# attribute -> document key
_TIMELINE_KEYS = {
    "created_at": "createdAt",
    "confirmed_at": "confirmedAt",
    "cancelled_at": "cancelledAt",
    "fulfilled_at": "fulfilledAt",
    "out_for_delivery_at": "outForDeliveryAt",
    "delivered_at": "deliveredAt",
    "last_msg_sent_at": "lastMsgSentAt",
    "last_customer_reply_at": "lastCustomerReplyAt",
}

_COURIER_KEYS = {
    "tracking_number": "trackingNumber",
    "last_status": "lastStatus",
    "booked_at": "bookedAt",
}


def timeline_path(attr: str) -> str:
    """Document path of a timeline attribute, e.g. ``timeline/confirmedAt``."""
    return f"timeline/{_TIMELINE_KEYS[attr]}"


def courier_path(attr: str) -> str:
    return f"courier/{_COURIER_KEYS[attr]}"


def flag_path(flag: str) -> str:
    return f"whatsapp/{flag}"


def _as_millis(value: Any) -> int | None:
    # Older documents carry "waiting" placeholders for unreached milestones
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


@dataclass
class Customer:
    name: str = "Customer"
    phone: str = ""
    address: str | None = None
    city: str | None = None


@dataclass
class Amount:
    total: str = "0.00"
    currency: str = "USD"


@dataclass
class Product:
    """Primary line item summary, not a line-item ledger."""
    name: str = "Product"
    qty: int = 1


@dataclass
class Timeline:
    created_at: int | None = None
    confirmed_at: int | None = None
    cancelled_at: int | None = None
    fulfilled_at: int | None = None
    out_for_delivery_at: int | None = None
    delivered_at: int | None = None
    last_msg_sent_at: int | None = None
    last_customer_reply_at: int | None = None


@dataclass
class NotificationFlags:
    """Which customer notifications already went out for this order."""
    confirmation_sent: bool = False
    confirmation_reply: bool = False
    fulfilled_sent: bool = False
    out_for_delivery_sent: bool = False
    delivered_sent: bool = False


@dataclass
class CourierInfo:
    tracking_number: str | None = None
    last_status: str | None = None
    booked_at: int | None = None


@dataclass
class Order:
    """A storefront order owned by exactly one tenant."""

    tenant_id: str
    order_id: str
    order_name: str = ""
    customer: Customer = field(default_factory=Customer)
    amount: Amount = field(default_factory=Amount)
    product: Product = field(default_factory=Product)
    status: OrderStatus = OrderStatus.PENDING
    timeline: Timeline = field(default_factory=Timeline)
    flags: NotificationFlags = field(default_factory=NotificationFlags)
    courier: CourierInfo = field(default_factory=CourierInfo)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def recency(self) -> tuple[int, int]:
        """Sort key for "most recent order" matching.

        Last message sent wins, falling back to creation time; ties are
        broken by creation time.
        """
        created = self.timeline.created_at or 0
        return (self.timeline.last_msg_sent_at or created, created)

    def to_document(self) -> dict[str, Any]:
        """Serialize to the persisted document layout."""
        customer: dict[str, Any] = {"name": self.customer.name, "phone": self.customer.phone}
        if self.customer.address:
            customer["address"] = self.customer.address
        if self.customer.city:
            customer["city"] = self.customer.city

        doc: dict[str, Any] = {
            "order_id": self.order_id,
            "order_name": self.order_name,
            "customer": customer,
            "amount": {"total": self.amount.total, "currency": self.amount.currency},
            "product": {"name": self.product.name, "qty": self.product.qty},
            "status": self.status.value,
            "timeline": {
                key: getattr(self.timeline, attr)
                for attr, key in _TIMELINE_KEYS.items()
                if getattr(self.timeline, attr) is not None
            },
            "whatsapp": {
                "confirmation_sent": self.flags.confirmation_sent,
                "confirmation_reply": self.flags.confirmation_reply,
                "fulfilled_sent": self.flags.fulfilled_sent,
                "out_for_delivery_sent": self.flags.out_for_delivery_sent,
                "delivered_sent": self.flags.delivered_sent,
            },
        }
        courier = {
            key: getattr(self.courier, attr)
            for attr, key in _COURIER_KEYS.items()
            if getattr(self.courier, attr) is not None
        }
        if courier:
            doc["courier"] = courier
        return doc

    @classmethod
    def from_document(cls, tenant_id: str, order_id: str, doc: dict[str, Any]) -> Order:
        """Build an Order from a stored document, tolerating missing sections."""
        customer = doc.get("customer") or {}
        amount = doc.get("amount") or {}
        product = doc.get("product") or {}
        timeline = doc.get("timeline") or {}
        flags = doc.get("whatsapp") or {}
        courier = doc.get("courier") or {}

        try:
            status = OrderStatus(doc.get("status", OrderStatus.PENDING.value))
        except ValueError:
            status = OrderStatus.PENDING

        try:
            qty = int(product.get("qty", 1))
        except (TypeError, ValueError):
            qty = 1

        return cls(
            tenant_id=tenant_id,
            order_id=str(doc.get("order_id") or order_id),
            order_name=str(doc.get("order_name") or ""),
            customer=Customer(
                name=customer.get("name") or "Customer",
                phone=str(customer.get("phone") or ""),
                address=customer.get("address"),
                city=customer.get("city"),
            ),
            amount=Amount(
                total=str(amount.get("total", "0.00")),
                currency=str(amount.get("currency", "USD")),
            ),
            product=Product(name=product.get("name") or "Product", qty=qty),
            status=status,
            timeline=Timeline(
                **{attr: _as_millis(timeline.get(key)) for attr, key in _TIMELINE_KEYS.items()}
            ),
            flags=NotificationFlags(
                confirmation_sent=bool(flags.get("confirmation_sent", False)),
                confirmation_reply=bool(flags.get("confirmation_reply", False)),
                fulfilled_sent=bool(flags.get("fulfilled_sent", False)),
                out_for_delivery_sent=bool(flags.get("out_for_delivery_sent", False)),
                delivered_sent=bool(flags.get("delivered_sent", False)),
            ),
            courier=CourierInfo(
                tracking_number=courier.get("trackingNumber") or None,
                last_status=courier.get("lastStatus") or None,
                booked_at=_as_millis(courier.get("bookedAt")),
            ),
        )


@dataclass(frozen=True)
class Tenant:
    """An onboarded storefront."""
    tenant_id: str
    domain: str = ""


class TenantSecrets(BaseModel):
    """Per-tenant credentials and settings, as provisioned in the store.

    Field aliases match the provisioned document keys.
    """

    shop: str = Field(default="", alias="SHOPIFY_SHOP")
    access_token: str = Field(default="", alias="SHOPIFY_ACCESS_TOKEN")
    webhook_secret: str = Field(default="", alias="SHOPIFY_WEBHOOK_SECRET")
    courier_token: str = Field(default="", alias="COURIER_API_TOKEN")
    owner_phone: str = Field(default="", alias="OWNER_PHONE")
    auto_book_courier: bool = Field(default=False, alias="AUTO_BOOK_COURIER")
    country_code: str | None = Field(default=None, alias="COUNTRY_CODE")
    shop_name: str | None = Field(default=None, alias="SHOP_NAME")

    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    @field_validator("country_code")
    @classmethod
    def country_code_digits(cls, v: str | None) -> str | None:
        """Keep only ASCII digits ("+92" -> "92"); nothing left means unset."""
        if v is None:
            return None
        return re.sub(r"[^0-9]", "", v) or None
