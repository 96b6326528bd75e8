"""Webhook HTTP handlers — FastAPI routes for inbound webhooks.

Each POST handler:
1. Reads the raw body (needed for HMAC verification)
2. Schedules processing as a background task
3. Returns 200 {"status": "received"} immediately

The background task then resolves the tenant, verifies the provider
signature, checks idempotency, normalizes the payload and hands the
canonical event to the state machine.

Security contract:
- Never return error details to webhook caller (info disclosure)
- Acknowledge every POST the same way, verified or not, so the
  response doesn't leak which tenants or events exist
- Log all webhook activity for audit trail
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Mapping

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from orderflow.config import Settings
from orderflow.errors import MalformedPayload, OrderflowError, SignatureInvalid, UnknownTenant
from orderflow.machine import OrderStateMachine, TransitionResult, now_millis
from orderflow.models import Tenant, TenantSecrets
from orderflow.tenants import TenantRegistry
from orderflow.webhooks.idempotency import WebhookDeduplicator
from orderflow.webhooks.normalizer import (
    parse_courier_status,
    parse_customer_reply,
    parse_fulfillment,
    parse_order_created,
)
from orderflow.webhooks.verification import (
    COURIER_TOKEN_HEADER,
    META_SIGNATURE_HEADER,
    SHOPIFY_DOMAIN_HEADER,
    SHOPIFY_HMAC_HEADER,
    SHOPIFY_WEBHOOK_ID_HEADER,
    verify_meta,
    verify_shopify,
    verify_subscription,
    verify_token,
)

logger = logging.getLogger(__name__)

RECEIVED = {"status": "received"}

# Webhook receive counter for monitoring (simple in-memory, per process)
_webhook_counts: dict[str, int] = {}


def webhook_counts() -> dict[str, int]:
    return dict(_webhook_counts)


def _log_webhook(provider: str, event_type: str, ref: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[provider] = _webhook_counts.get(provider, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT provider=%s event=%s ref=%s status=%s count=%d",
        provider,
        event_type,
        ref,
        status,
        _webhook_counts[provider],
    )


def _json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"body is not JSON: {e}") from e


class WebhookProcessor:
    """Turns verified webhook bodies into state machine events.

    Every ``process_*`` method is a task boundary: it never raises, and
    returns the transition result or None when the webhook was dropped.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        registry: TenantRegistry,
        machine: OrderStateMachine,
        deduplicator: WebhookDeduplicator | None = None,
        clock: Callable[[], int] = now_millis,
    ):
        self._settings = settings
        self._registry = registry
        self._machine = machine
        self._dedup = deduplicator or WebhookDeduplicator(None)
        self._clock = clock

    async def _shopify_tenant(self, body: bytes, headers: Mapping[str, str]) -> tuple[Tenant, TenantSecrets]:
        domain = headers.get(SHOPIFY_DOMAIN_HEADER)
        tenant = await self._registry.resolve_by_domain(domain)
        if tenant is None:
            raise UnknownTenant(f"no tenant for shop domain {domain!r}")
        secrets = await self._registry.load_secrets(tenant.tenant_id)
        if secrets is None:
            raise UnknownTenant(f"tenant {tenant.tenant_id} has no secrets")
        if not verify_shopify(secrets.webhook_secret, body, headers.get(SHOPIFY_HMAC_HEADER)):
            raise SignatureInvalid(f"shopify signature mismatch for tenant {tenant.tenant_id}")
        return tenant, secrets

    def _dropped(self, provider: str, event_type: str, error: OrderflowError) -> None:
        if isinstance(error, SignatureInvalid):
            logger.warning("SECURITY: rejected %s/%s webhook: %s", provider, event_type, error)
            _log_webhook(provider, event_type, "-", "signature_failed")
        elif isinstance(error, UnknownTenant):
            logger.warning("Dropped %s/%s webhook: %s", provider, event_type, error)
            _log_webhook(provider, event_type, "-", "unknown_tenant")
        else:
            logger.warning("Dropped %s/%s webhook: %s", provider, event_type, error)
            _log_webhook(provider, event_type, "-", "malformed")

    async def process_order_created(self, body: bytes, headers: Mapping[str, str]) -> TransitionResult | None:
        """Shopify ``orders/create``."""
        try:
            tenant, secrets = await self._shopify_tenant(body, headers)
            webhook_id = headers.get(SHOPIFY_WEBHOOK_ID_HEADER)
            if await self._dedup.is_duplicate("shopify", webhook_id):
                _log_webhook("shopify", "orders/create", webhook_id or "-", "duplicate")
                return None
            event = parse_order_created(
                tenant.tenant_id,
                body,
                country_code=secrets.country_code or self._settings.default_country_code,
                created_at=self._clock(),
            )
        except OrderflowError as e:
            self._dropped("shopify", "orders/create", e)
            return None

        _log_webhook("shopify", "orders/create", f"{tenant.tenant_id}/{event.order.order_id}", "dispatched")
        return await self._machine.handle(event, secrets=secrets)

    async def process_fulfillment(self, body: bytes, headers: Mapping[str, str]) -> TransitionResult | None:
        """Shopify fulfillment / order-updated webhook."""
        try:
            tenant, secrets = await self._shopify_tenant(body, headers)
            webhook_id = headers.get(SHOPIFY_WEBHOOK_ID_HEADER)
            if await self._dedup.is_duplicate("shopify", webhook_id):
                _log_webhook("shopify", "fulfillment", webhook_id or "-", "duplicate")
                return None
            event = parse_fulfillment(tenant.tenant_id, _json(body))
        except OrderflowError as e:
            self._dropped("shopify", "fulfillment", e)
            return None

        if event is None:
            _log_webhook("shopify", "fulfillment", tenant.tenant_id, "skipped")
            return None
        _log_webhook("shopify", "fulfillment", f"{tenant.tenant_id}/{event.order_id}", "dispatched")
        return await self._machine.handle(event, secrets=secrets)

    async def process_customer_reply(self, body: bytes, headers: Mapping[str, str]) -> TransitionResult | None:
        """WhatsApp Cloud API message callback."""
        try:
            if self._settings.meta_app_secret and not verify_meta(
                self._settings.meta_app_secret, body, headers.get(META_SIGNATURE_HEADER)
            ):
                raise SignatureInvalid("meta signature mismatch")
            event = parse_customer_reply(_json(body), country_code=self._settings.default_country_code)
        except OrderflowError as e:
            self._dropped("whatsapp", "message", e)
            return None

        if event is None:
            # Delivery/read receipts carry no message
            _log_webhook("whatsapp", "status", "-", "skipped")
            return None
        _log_webhook("whatsapp", "message", event.phone, "dispatched")
        return await self._machine.handle(event)

    async def process_courier_status(
        self, tenant_id: str, body: bytes, headers: Mapping[str, str]
    ) -> TransitionResult | None:
        """Courier status callback, scoped to a tenant by URL."""
        try:
            secrets = await self._registry.load_secrets(tenant_id)
            if secrets is None:
                raise UnknownTenant(f"unknown tenant {tenant_id!r}")
            if not verify_token(secrets.courier_token, headers.get(COURIER_TOKEN_HEADER)):
                raise SignatureInvalid(f"courier token mismatch for tenant {tenant_id}")
            event = parse_courier_status(tenant_id, _json(body))
        except OrderflowError as e:
            self._dropped("courier", "status", e)
            return None

        _log_webhook("courier", "status", f"{tenant_id}/{event.order_id}", "dispatched")
        return await self._machine.handle(event, secrets=secrets)


def _headers(request: Request) -> dict[str, str]:
    return {k.lower(): v for k, v in request.headers.items()}


def register_webhook_routes(app: FastAPI, processor: WebhookProcessor, settings: Settings) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.get("/webhook/whatsapp")
    async def whatsapp_subscribe(request: Request):
        """Meta subscription handshake."""
        params = request.query_params
        challenge = verify_subscription(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            params.get("hub.challenge"),
            settings.verify_token_meta,
        )
        if challenge is None:
            _log_webhook("whatsapp", "subscribe", "-", "rejected")
            return PlainTextResponse("Forbidden", status_code=403)
        _log_webhook("whatsapp", "subscribe", "-", "verified")
        return PlainTextResponse(challenge, status_code=200)

    @app.post("/webhook/whatsapp")
    async def whatsapp_webhook(request: Request, background: BackgroundTasks):
        """Receive WhatsApp customer replies."""
        start = time.time()
        body = await request.body()
        background.add_task(processor.process_customer_reply, body, _headers(request))
        logger.debug("Webhook acknowledged in %.1fms: whatsapp", (time.time() - start) * 1000)
        return JSONResponse(RECEIVED, status_code=200)

    @app.post("/webhook/shopify/order")
    async def shopify_order_webhook(request: Request, background: BackgroundTasks):
        """Receive Shopify orders/create (signature verified in the task)."""
        body = await request.body()
        background.add_task(processor.process_order_created, body, _headers(request))
        return JSONResponse(RECEIVED, status_code=200)

    @app.post("/webhook/shopify/fulfillment")
    async def shopify_fulfillment_webhook(request: Request, background: BackgroundTasks):
        """Receive Shopify fulfillment updates."""
        body = await request.body()
        background.add_task(processor.process_fulfillment, body, _headers(request))
        return JSONResponse(RECEIVED, status_code=200)

    @app.post("/webhook/courier/{tenant_id}")
    async def courier_webhook(tenant_id: str, request: Request, background: BackgroundTasks):
        """Receive courier status callbacks for one tenant."""
        body = await request.body()
        background.add_task(processor.process_courier_status, tenant_id, body, _headers(request))
        return JSONResponse(RECEIVED, status_code=200)

    logger.info("Webhook routes registered: /webhook/{whatsapp,shopify/order,shopify/fulfillment,courier}")
