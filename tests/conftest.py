"""Shared fixtures for the orderflow test suite.

External integrations (WhatsApp, courier, Shopify) are replaced by small
recording fakes; storage is the in-memory document store.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pytest

from orderflow.config import Settings
from orderflow.deadletter import MemoryDeadLetters
from orderflow.locks import LocalOrderLocks
from orderflow.machine import OrderStateMachine
from orderflow.models import Order, TenantSecrets
from orderflow.store.documents import MemoryDocumentStore
from orderflow.store.orders import OrderStore
from orderflow.tenants import TenantRegistry

WEBHOOK_SECRET = "whsec-test"
COURIER_TOKEN = "courier-tok"
START_MS = 1_700_000_000_000


@dataclass
class SentMessage:
    phone: str
    template: str
    params: list[str]
    quick_replies: list[str]


class FakeNotifier:
    """Records template sends. Templates in ``failing`` report failure."""

    def __init__(self, failing: set[str] | None = None):
        self.sent: list[SentMessage] = []
        self.attempts = 0
        self.failing = failing or set()

    async def send(
        self,
        phone: str,
        template: str,
        body_params: list[str] | None = None,
        quick_replies: list[str] | None = None,
        link_button: str | None = None,
    ) -> bool:
        self.attempts += 1
        if template in self.failing:
            return False
        self.sent.append(SentMessage(phone, template, list(body_params or []), list(quick_replies or [])))
        return True

    def templates(self) -> list[str]:
        return [m.template for m in self.sent]


class FakeCourier:
    """Books with a fixed tracking number; statuses keyed by tracking number."""

    def __init__(self, tracking: str | None = "TRK1"):
        self.tracking = tracking
        self.booked: list[str] = []
        self.statuses: dict[str, str] = {}
        self.broken: set[str] = set()

    async def book(self, order: Order, secrets: TenantSecrets) -> str | None:
        self.booked.append(order.order_id)
        return self.tracking

    async def query_status(self, tracking_number: str, secrets: TenantSecrets) -> str | None:
        if tracking_number in self.broken:
            raise RuntimeError(f"courier exploded on {tracking_number}")
        return self.statuses.get(tracking_number)


class FakePlatform:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.notes: list[tuple[str, str]] = []

    async def update_order_note(self, order_id: str, secrets: TenantSecrets, note: str) -> bool:
        if self.ok:
            self.notes.append((order_id, note))
        return self.ok


class Clock:
    """Manually advanced epoch-millis clock."""

    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1000) -> int:
        self.now += ms
        return self.now


def seed_tenant(
    documents: MemoryDocumentStore,
    tenant_id: str,
    domain: str,
    **secrets: Any,
) -> None:
    """Provision a tenant the way onboarding does: domain index + secrets."""
    tree = documents._root
    tree.setdefault("domainIndex", {})[domain] = {"tenantId": tenant_id}
    values = {
        "SHOPIFY_SHOP": f"{domain}.myshopify.com",
        "SHOPIFY_ACCESS_TOKEN": "shpat_test",
        "SHOPIFY_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "COURIER_API_TOKEN": COURIER_TOKEN,
        "OWNER_PHONE": "923330000000",
        "SHOP_NAME": "Acme",
    }
    values.update(secrets)
    tree.setdefault("tenants", {}).setdefault(tenant_id, {})["secrets"] = values


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        whatsapp_number_id="1234567890",
        whatsapp_token="wa-token",
        store_backend="memory",
        poller_enabled=False,
    )


@pytest.fixture()
def documents() -> MemoryDocumentStore:
    docs = MemoryDocumentStore()
    seed_tenant(docs, "t1", "acme")
    return docs


@pytest.fixture()
def registry(documents) -> TenantRegistry:
    return TenantRegistry(documents)


@pytest.fixture()
def orders(documents) -> OrderStore:
    return OrderStore(documents)


@pytest.fixture()
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture()
def courier() -> FakeCourier:
    return FakeCourier()


@pytest.fixture()
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def dead_letters() -> MemoryDeadLetters:
    return MemoryDeadLetters()


@pytest.fixture()
def machine(settings, registry, orders, notifier, courier, platform, dead_letters, clock) -> OrderStateMachine:
    return OrderStateMachine(
        settings=settings,
        registry=registry,
        orders=orders,
        notifier=notifier,
        courier=courier,
        platform=platform,
        locks=LocalOrderLocks(),
        dead_letters=dead_letters,
        clock=clock,
    )


@pytest.fixture()
def provision(documents):
    """Provision another tenant in the shared document store."""

    def _provision(tenant_id: str, domain: str, **secrets: Any) -> None:
        seed_tenant(documents, tenant_id, domain, **secrets)

    return _provision
