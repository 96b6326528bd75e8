"""Tenant registry — resolves inbound identities to tenants and secrets.

Layout:
    domainIndex/{domain}      -> {"tenantId": ...}
    tenants/{tenantId}/secrets -> provisioned credentials

Secrets are read fresh for every event and never cached in-process, so a
re-provisioned tenant takes effect on the next webhook.
"""

from __future__ import annotations

import logging

from pydantic import ValidationError

from orderflow.models import Tenant, TenantSecrets
from orderflow.store.documents import DocumentStore

logger = logging.getLogger(__name__)

_PLATFORM_DOMAIN_SUFFIX = ".myshopify.com"


def normalize_domain(domain: str | None) -> str:
    """``Acme-Store.myshopify.com`` -> ``acme-store``."""
    if not domain:
        return ""
    value = domain.strip().lower()
    if value.endswith(_PLATFORM_DOMAIN_SUFFIX):
        value = value[: -len(_PLATFORM_DOMAIN_SUFFIX)]
    return value


class TenantRegistry:
    """Read-only view over provisioned tenants."""

    def __init__(self, documents: DocumentStore):
        self._documents = documents

    async def resolve_by_domain(self, domain: str | None) -> Tenant | None:
        """Map a storefront domain header to its tenant. None on a miss."""
        key = normalize_domain(domain)
        if not key:
            return None
        entry = await self._documents.get(f"domainIndex/{key}")
        tenant_id = (entry or {}).get("tenantId")
        if not tenant_id:
            logger.info("No tenant registered for domain %r", key)
            return None
        return Tenant(tenant_id=str(tenant_id), domain=key)

    async def load_secrets(self, tenant_id: str) -> TenantSecrets | None:
        if not tenant_id:
            return None
        raw = await self._documents.get(f"tenants/{tenant_id}/secrets")
        if raw is None:
            logger.warning("Tenant %s has no secrets document", tenant_id)
            return None
        try:
            return TenantSecrets.model_validate(raw)
        except ValidationError:
            logger.warning("Tenant %s secrets failed validation", tenant_id, exc_info=True)
            return None

    async def list_tenants(self) -> list[str]:
        return await self._documents.children("tenants")
