"""Shopify GraphQL Admin API client.

Writes the confirmation outcome back onto the storefront order as a note
and a tag so merchants see it in their admin. Credentials are the tenant's
own (shop domain + access token), passed per call.
"""

from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import httpx

from orderflow.config import Settings
from orderflow.models import TenantSecrets
from orderflow.tools.retry import retry_with_backoff

logger = logging.getLogger(__name__)

_ORDER_UPDATE_MUTATION = """
mutation orderUpdate($input: OrderInput!) {
  orderUpdate(input: $input) {
    order { id note tags }
    userErrors { field message }
  }
}
"""


def order_gid(order_id: str) -> str:
    """Shopify global id for a numeric order id."""
    if order_id.startswith("gid://"):
        return order_id
    return f"gid://shopify/Order/{order_id}"


@runtime_checkable
class PlatformClient(Protocol):
    """Protocol for commerce platform write-backs."""

    async def update_order_note(self, order_id: str, secrets: TenantSecrets, note: str) -> bool:
        ...


class ShopifyClient:
    """Shopify Admin API wrapper for order note updates."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self._client = client
        self._api_version = settings.shopify_api_version
        self._timeout = settings.http_timeout_seconds

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    async def _graphql_request(self, shop: str, access_token: str, query: str, variables: dict) -> dict:
        """Execute a Shopify GraphQL Admin API request."""
        endpoint = f"https://{shop}/admin/api/{self._api_version}/graphql.json"
        response = await self._client.post(
            endpoint,
            json={"query": query, "variables": variables},
            headers={
                "X-Shopify-Access-Token": access_token,
                "Content-Type": "application/json",
            },
            timeout=self._timeout,
        )
        response.raise_for_status()
        return response.json()

    async def update_order_note(self, order_id: str, secrets: TenantSecrets, note: str) -> bool:
        """Set the order note and add the same text as a tag."""
        if not secrets.shop or not secrets.access_token:
            logger.warning("Shopify credentials missing — note not written for order %s", order_id)
            return False

        variables = {"input": {"id": order_gid(order_id), "note": note, "tags": [note]}}
        try:
            result = await self._graphql_request(
                secrets.shop, secrets.access_token, _ORDER_UPDATE_MUTATION, variables
            )
        except httpx.HTTPError as e:
            logger.error("Shopify note update failed for order %s: %s", order_id, type(e).__name__)
            return False

        payload = (result.get("data") or {}).get("orderUpdate") or {}
        errors = payload.get("userErrors") or []
        errors = errors or result.get("errors") or []
        if errors:
            logger.error("Shopify rejected note update for order %s: %s", order_id, errors[0])
            return False

        logger.info("Shopify note set on order %s: %s", order_id, note)
        return True
