"""Courier REST client — shipment booking and status tracking.

The courier account token is per tenant (``COURIER_API_TOKEN`` in the
tenant secrets); the API base URL is process configuration.

Booking is not idempotent on the courier side, so it is never retried and
callers must check for an existing tracking number first. Status queries are
plain reads and retry transient failures.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from orderflow.config import Settings
from orderflow.models import Order, TenantSecrets
from orderflow.tools.retry import retry_with_backoff

logger = logging.getLogger(__name__)

OUT_FOR_DELIVERY = "out for delivery"
DELIVERED = "delivered"


def canonical_status(status: str | None) -> str:
    """Case- and whitespace-insensitive form of a courier status string."""
    if not status:
        return ""
    return " ".join(str(status).split()).lower()


@runtime_checkable
class CourierIntegration(Protocol):
    """Protocol for courier adapters."""

    async def book(self, order: Order, secrets: TenantSecrets) -> str | None:
        """Book a shipment. Returns the tracking number, or None on failure."""
        ...

    async def query_status(self, tracking_number: str, secrets: TenantSecrets) -> str | None:
        """Current courier status for a tracking number, or None if unknown."""
        ...


def _dig(payload: Any, *keys: str) -> Any:
    """First non-empty value for any of ``keys`` at top level or under ``dist``."""
    if not isinstance(payload, dict):
        return None
    nested = payload.get("dist") if isinstance(payload.get("dist"), dict) else {}
    for key in keys:
        for source in (payload, nested):
            value = source.get(key)
            if value:
                return value
    return None


class CourierClient:
    """JSON REST courier client."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self._client = client
        self._base_url = settings.courier_api_url.rstrip("/")
        self._timeout = settings.http_timeout_seconds

    @staticmethod
    def booking_payload(order: Order) -> dict[str, Any]:
        return {
            "orderRefNumber": order.order_id,
            "orderName": order.order_name,
            "customerName": order.customer.name,
            "customerPhone": order.customer.phone,
            "deliveryAddress": order.customer.address or "",
            "cityName": order.customer.city or "",
            "invoicePayment": order.amount.total,
            "currency": order.amount.currency,
            "orderDetail": f"{order.product.name} x{order.product.qty}",
            "items": order.product.qty,
        }

    async def book(self, order: Order, secrets: TenantSecrets) -> str | None:
        if not secrets.courier_token:
            logger.warning("No courier token for tenant %s — booking skipped", order.tenant_id)
            return None
        try:
            response = await self._client.post(
                f"{self._base_url}/orders",
                json=self.booking_payload(order),
                headers={"token": secrets.courier_token},
                timeout=self._timeout,
            )
            response.raise_for_status()
            tracking = _dig(response.json(), "trackingNumber", "tracking_number")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "Courier booking failed for %s/%s: %s",
                order.tenant_id,
                order.order_id,
                type(e).__name__,
            )
            return None
        if not tracking:
            logger.error("Courier booking for %s/%s returned no tracking number", order.tenant_id, order.order_id)
            return None
        logger.info("Courier booked %s/%s -> %s", order.tenant_id, order.order_id, tracking)
        return str(tracking)

    @retry_with_backoff(max_retries=2, base_delay=1.0, max_delay=10.0)
    async def _get_status(self, tracking_number: str, token: str) -> dict:
        response = await self._client.get(
            f"{self._base_url}/orders/{tracking_number}/status",
            headers={"token": token},
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def query_status(self, tracking_number: str, secrets: TenantSecrets) -> str | None:
        if not tracking_number or not secrets.courier_token:
            return None
        try:
            payload = await self._get_status(tracking_number, secrets.courier_token)
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Courier status query failed for %s: %s", tracking_number, type(e).__name__)
            return None
        status = _dig(payload, "transactionStatus", "orderStatus", "status")
        return str(status) if status else None
