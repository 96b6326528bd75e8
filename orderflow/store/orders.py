"""Order store — per-tenant order collection on top of a DocumentStore.

Layout:
    tenants/{tenantId}/orders/{orderId}
"""

from __future__ import annotations

import logging
from typing import Any

from orderflow.models import Order
from orderflow.store.documents import DocumentStore

logger = logging.getLogger(__name__)


def order_path(tenant_id: str, order_id: str) -> str:
    return f"tenants/{tenant_id}/orders/{order_id}"


class OrderStore:
    """Read and partially update orders. Orders are never deleted."""

    def __init__(self, documents: DocumentStore):
        self._documents = documents

    async def get(self, tenant_id: str, order_id: str) -> Order | None:
        if not tenant_id or not order_id:
            return None
        doc = await self._documents.get(order_path(tenant_id, order_id))
        if doc is None:
            return None
        return Order.from_document(tenant_id, order_id, doc)

    async def create_if_absent(self, order: Order) -> bool:
        """Persist a new order. Returns False if the id already exists.

        Callers hold the per-order lock, so check-then-set is safe here.
        """
        path = order_path(order.tenant_id, order.order_id)
        if await self._documents.get(path) is not None:
            return False
        await self._documents.set(path, order.to_document())
        logger.info("Order created: %s/%s", order.tenant_id, order.order_id)
        return True

    async def update(self, tenant_id: str, order_id: str, fields: dict[str, Any]) -> None:
        """Write field paths (``"timeline/confirmedAt"``) on one order."""
        if not fields:
            return
        await self._documents.update(order_path(tenant_id, order_id), fields)

    async def list_order_ids(self, tenant_id: str) -> list[str]:
        return await self._documents.children(f"tenants/{tenant_id}/orders")

    async def list_orders(self, tenant_id: str) -> list[Order]:
        orders = []
        for order_id in await self.list_order_ids(tenant_id):
            order = await self.get(tenant_id, order_id)
            if order is not None:
                orders.append(order)
        return orders

    async def find_latest_by_phone(self, phone: str, tenant_ids: list[str]) -> Order | None:
        """Most recent order for ``phone`` across the given tenants.

        This is the expensive path: a linear scan over every order of every
        tenant. It exists for replies that lost their ``tenant:order``
        context and must only run after the direct lookup missed.
        """
        if not phone:
            return None
        latest: Order | None = None
        scanned = 0
        for tenant_id in tenant_ids:
            for order in await self.list_orders(tenant_id):
                scanned += 1
                if order.customer.phone != phone:
                    continue
                if latest is None or order.recency > latest.recency:
                    latest = order
        logger.info(
            "Fallback phone lookup scanned %d orders across %d tenants (match=%s)",
            scanned,
            len(tenant_ids),
            f"{latest.tenant_id}/{latest.order_id}" if latest else None,
        )
        return latest
