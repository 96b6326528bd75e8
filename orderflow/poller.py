"""Reconciliation poller — advances shipped orders without courier webhooks.

Runs every 5 minutes (configurable) via APScheduler. For each tenant, for
each order holding a tracking number and a non-terminal status, it queries
the courier and feeds a ``CourierStatusObserved`` event to the state
machine whenever the courier reports something other than the last stored
courier status.

Failure isolation: a tenant whose secrets can't be read, or an order whose
courier query raises, is logged and skipped; the sweep continues.

Overlap: the job is registered with ``max_instances=1`` and
``coalesce=True``, and ``run_once`` additionally refuses to start while a
previous sweep still holds the in-process lock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from orderflow.events import CourierStatusObserved
from orderflow.machine import OrderStateMachine, Outcome
from orderflow.models import Order
from orderflow.store.orders import OrderStore
from orderflow.tenants import TenantRegistry
from orderflow.tools.courier_tool import CourierIntegration, canonical_status

logger = logging.getLogger(__name__)

JOB_ID = "courier_reconciliation"


@dataclass
class SweepReport:
    """Summary of one reconciliation sweep."""
    tenants: int = 0
    orders_checked: int = 0
    events_emitted: int = 0
    transitions: int = 0
    failures: list[str] = field(default_factory=list)
    skipped: bool = False
    duration_s: float = 0.0


def needs_reconciliation(order: Order) -> bool:
    return bool(order.courier.tracking_number) and not order.is_terminal


class ReconciliationPoller:
    """Periodic courier status sweep across all tenants."""

    def __init__(
        self,
        *,
        registry: TenantRegistry,
        orders: OrderStore,
        courier: CourierIntegration,
        machine: OrderStateMachine,
    ):
        self._registry = registry
        self._orders = orders
        self._courier = courier
        self._machine = machine
        self._running = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._running.locked()

    async def run_once(self) -> SweepReport:
        """Run one sweep. Returns immediately if a sweep is in progress."""
        if self._running.locked():
            logger.warning("Reconciliation sweep still running — skipping this tick")
            return SweepReport(skipped=True)
        async with self._running:
            start = time.monotonic()
            report = SweepReport()
            try:
                tenant_ids = await self._registry.list_tenants()
            except Exception:
                logger.exception("Reconciliation sweep could not list tenants")
                report.failures.append("list_tenants")
                return report
            for tenant_id in tenant_ids:
                report.tenants += 1
                await self._sweep_tenant(tenant_id, report)
            report.duration_s = time.monotonic() - start
            logger.info(
                "Reconciliation sweep complete: %d tenants, %d orders checked, "
                "%d status changes, %d transitions, %d failures (%.1fs)",
                report.tenants,
                report.orders_checked,
                report.events_emitted,
                report.transitions,
                len(report.failures),
                report.duration_s,
            )
            return report

    async def _sweep_tenant(self, tenant_id: str, report: SweepReport) -> None:
        try:
            secrets = await self._registry.load_secrets(tenant_id)
            if secrets is None:
                return
            orders = [o for o in await self._orders.list_orders(tenant_id) if needs_reconciliation(o)]
        except Exception:
            logger.exception("Reconciliation skipped tenant %s", tenant_id)
            report.failures.append(tenant_id)
            return

        for order in orders:
            report.orders_checked += 1
            try:
                observed = await self._courier.query_status(order.courier.tracking_number, secrets)
                if not observed:
                    continue
                if canonical_status(observed) == canonical_status(order.courier.last_status):
                    continue
                report.events_emitted += 1
                result = await self._machine.handle(
                    CourierStatusObserved(tenant_id=tenant_id, order_id=order.order_id, status=observed),
                    secrets=secrets,
                )
                if result.outcome == Outcome.FAILED:
                    report.failures.append(f"{tenant_id}/{order.order_id}")
                elif result.outcome == Outcome.APPLIED and result.status != order.status:
                    report.transitions += 1
            except Exception:
                logger.exception(
                    "Reconciliation failed for order %s/%s", tenant_id, order.order_id
                )
                report.failures.append(f"{tenant_id}/{order.order_id}")


def schedule_reconciliation(
    scheduler: AsyncIOScheduler,
    poller: ReconciliationPoller,
    interval_seconds: int = 300,
) -> None:
    """Register the sweep as a single, non-overlapping interval job."""
    scheduler.add_job(
        poller.run_once,
        "interval",
        seconds=interval_seconds,
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Courier reconciliation scheduled every %ds", interval_seconds)
