"""FastAPI application: webhook ingress, health endpoint and the poller.

``create_app`` wires every component from one ``Settings`` instance. The
lifespan owns the shared resources: one httpx.AsyncClient for all outbound
calls, the Redis connection behind the document store, locks, dead
letters and webhook dedup, and the APScheduler instance that runs the
courier reconciliation sweep.

Tests pass in-memory stores and fake integrations through the keyword
arguments; nothing here connects anywhere at import time.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any

import httpx
import redis.asyncio as redis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from orderflow import __version__
from orderflow.config import Settings, load_settings
from orderflow.deadletter import DeadLetterSink, MemoryDeadLetters, RedisDeadLetters
from orderflow.locks import LocalOrderLocks, OrderLocks, RedisOrderLocks
from orderflow.log import configure_logging
from orderflow.machine import OrderStateMachine
from orderflow.poller import ReconciliationPoller, schedule_reconciliation
from orderflow.store.documents import DocumentStore, MemoryDocumentStore, RedisDocumentStore
from orderflow.store.orders import OrderStore
from orderflow.tenants import TenantRegistry
from orderflow.tools.courier_tool import CourierClient, CourierIntegration
from orderflow.tools.shopify_tool import PlatformClient, ShopifyClient
from orderflow.tools.whatsapp_tool import NotificationDispatcher, WhatsAppDispatcher
from orderflow.webhooks.handlers import WebhookProcessor, register_webhook_routes, webhook_counts
from orderflow.webhooks.idempotency import WebhookDeduplicator

logger = logging.getLogger(__name__)


class _Components:
    """Late-bound wiring, filled in by the lifespan and read by routes."""

    def __init__(self) -> None:
        self.processor: WebhookProcessor | None = None
        self.poller: ReconciliationPoller | None = None
        self.machine: OrderStateMachine | None = None
        self.scheduler: AsyncIOScheduler | None = None


class _LateProcessor:
    """Routes are registered before the lifespan runs; resolve on call."""

    def __init__(self, components: _Components):
        self._components = components

    def __getattr__(self, name: str) -> Any:
        if self._components.processor is None:
            raise RuntimeError("application not started")
        return getattr(self._components.processor, name)


def create_app(
    settings: Settings | None = None,
    *,
    documents: DocumentStore | None = None,
    notifier: NotificationDispatcher | None = None,
    courier: CourierIntegration | None = None,
    platform: PlatformClient | None = None,
    locks: OrderLocks | None = None,
    dead_letters: DeadLetterSink | None = None,
    redis_client: redis.Redis | None = None,
    start_scheduler: bool | None = None,
) -> FastAPI:
    """Build the application.

    Any component left as None is built from ``settings`` at startup.
    """
    settings = settings or load_settings()
    components = _Components()
    run_scheduler = settings.poller_enabled if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        client = redis_client
        owns_redis = False
        needs_redis = documents is None and settings.store_backend == "redis"
        needs_redis = needs_redis or (locks is None and settings.lock_backend == "redis")
        if client is None and needs_redis:
            client = redis.from_url(settings.redis_url, decode_responses=True)
            owns_redis = True

        docs = documents
        if docs is None:
            if settings.store_backend == "redis":
                docs = RedisDocumentStore(client, prefix=settings.store_key_prefix)
            else:
                logger.warning("Using in-memory document store — state is lost on restart")
                docs = MemoryDocumentStore()

        if locks is not None:
            order_locks = locks
        elif settings.lock_backend == "redis":
            order_locks = RedisOrderLocks(
                client,
                prefix=settings.store_key_prefix,
                timeout=settings.lock_timeout_seconds,
                blocking_timeout=settings.lock_blocking_timeout_seconds,
            )
        else:
            order_locks = LocalOrderLocks()

        if dead_letters is not None:
            sink = dead_letters
        elif client is not None:
            sink = RedisDeadLetters(client, prefix=settings.store_key_prefix)
        else:
            sink = MemoryDeadLetters()

        registry = TenantRegistry(docs)
        orders = OrderStore(docs)
        courier_api = courier or CourierClient(settings, http)
        machine = OrderStateMachine(
            settings=settings,
            registry=registry,
            orders=orders,
            notifier=notifier or WhatsAppDispatcher(settings, http),
            courier=courier_api,
            platform=platform or ShopifyClient(settings, http),
            locks=order_locks,
            dead_letters=sink,
        )
        components.machine = machine
        components.processor = WebhookProcessor(
            settings=settings,
            registry=registry,
            machine=machine,
            deduplicator=WebhookDeduplicator(client, prefix=settings.store_key_prefix),
        )
        components.poller = ReconciliationPoller(
            registry=registry, orders=orders, courier=courier_api, machine=machine
        )

        if run_scheduler:
            scheduler = AsyncIOScheduler()
            schedule_reconciliation(scheduler, components.poller, settings.poll_interval_seconds)
            scheduler.start()
            components.scheduler = scheduler

        logger.info("orderflow %s started (store=%s)", __version__, settings.store_backend)
        try:
            yield
        finally:
            if components.scheduler is not None:
                components.scheduler.shutdown(wait=False)
                components.scheduler = None
            await http.aclose()
            if owns_redis:
                await client.aclose()
            logger.info("orderflow stopped")

    app = FastAPI(title="orderflow", version=__version__, docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.components = components

    register_webhook_routes(app, _LateProcessor(components), settings)

    @app.get("/health")
    async def health():
        """Liveness plus webhook and poller counters."""
        return {
            "status": "ok",
            "version": __version__,
            "poller": {
                "scheduled": components.scheduler is not None,
                "running": bool(components.poller and components.poller.is_running),
            },
            "webhooks": webhook_counts(),
        }

    return app


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_level)
    missing = settings.missing_required()
    if missing:
        logger.error("Missing required configuration: %s", ", ".join(missing))
        sys.exit(1)

    import uvicorn

    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
