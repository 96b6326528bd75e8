"""Order state machine — the only place order status changes.

States:
    pending -> {confirmed, cancelled}
    confirmed -> fulfilled -> out_for_delivery -> delivered
``cancelled`` and ``delivered`` are terminal.

Every event is handled in two phases:

1. *plan*: a pure function of (event, current order, tenant settings) that
   returns the field writes and the ordered side effects. A failed
   precondition plans nothing; it is a no-op, not an error.
2. *apply*: the authoritative state write first, then each side effect in
   order (platform note, courier booking, customer notification). Effects
   are isolated: a failure is logged and dead-lettered and the remaining
   effects still run. Nothing is rolled back.

Customer notifications are gated by per-order flags read before the send
and written after a successful send, which bounds duplicate messages under
at-least-once webhook delivery. The read-plan-write sequence runs under a
per-order advisory lock.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from orderflow.config import Settings
from orderflow.deadletter import DeadLetter, DeadLetterSink, MemoryDeadLetters
from orderflow.errors import ExternalCallFailure, LockUnavailable
from orderflow.events import (
    CanonicalEvent,
    CourierStatusObserved,
    CustomerReplied,
    FulfillmentReported,
    OrderCreated,
    ReplyAction,
    reply_payload,
)
from orderflow.locks import LocalOrderLocks, OrderLocks
from orderflow.models import (
    Order,
    OrderStatus,
    TenantSecrets,
    can_advance,
    courier_path,
    flag_path,
    timeline_path,
)
from orderflow.store.orders import OrderStore
from orderflow.tenants import TenantRegistry
from orderflow.tools.courier_tool import DELIVERED, OUT_FOR_DELIVERY, CourierIntegration, canonical_status
from orderflow.tools.shopify_tool import PlatformClient
from orderflow.tools.whatsapp_tool import NotificationDispatcher, Templates

logger = logging.getLogger(__name__)

NOTE_CONFIRMED = "✅ Order Confirmed"
NOTE_CANCELLED = "❌ Order Cancelled"

# Free-text replies are quoted this far into the ORDER_EVENT line
REPLY_EXCERPT_CHARS = 80

_STATUS_LABELS = {
    OrderStatus.PENDING: "awaiting confirmation",
    OrderStatus.CONFIRMED: "confirmed",
    OrderStatus.CANCELLED: "cancelled",
    OrderStatus.FULFILLED: "shipped",
    OrderStatus.OUT_FOR_DELIVERY: "out for delivery",
    OrderStatus.DELIVERED: "delivered",
}


def now_millis() -> int:
    return int(time.time() * 1000)


class Outcome(str, Enum):
    """How an event ended."""
    APPLIED = "applied"        # state or courier fields written
    RESTATED = "restated"      # reply to a non-pending order, status re-sent
    ACKNOWLEDGED = "acknowledged"  # free-text reply matched to an order
    NOOP = "noop"              # precondition not met
    UNMATCHED = "unmatched"    # no order for the event
    DROPPED = "dropped"        # tenant or secrets missing
    FAILED = "failed"          # state write or unexpected error


@dataclass(frozen=True)
class Effect:
    """A side effect planned by a transition."""
    kind: str  # note, book, notify
    template: str = ""
    params: tuple[str, ...] = ()
    quick_replies: tuple[str, ...] = ()
    flag: str | None = None
    note: str = ""

    @property
    def name(self) -> str:
        return f"notify:{self.template}" if self.kind == "notify" else self.kind


@dataclass
class Transition:
    """Planned result of one event against one order."""
    outcome: Outcome
    target: OrderStatus | None = None
    updates: dict[str, Any] = field(default_factory=dict)
    effects: list[Effect] = field(default_factory=list)
    reason: str = ""


@dataclass
class TransitionResult:
    """What actually happened while applying a transition."""
    outcome: Outcome
    tenant_id: str = ""
    order_id: str = ""
    status: OrderStatus | None = None
    sent: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)
    reason: str = ""


# ---------------------------------------------------------------------------
# Planning (pure)
# ---------------------------------------------------------------------------


def _notify(template: str, params: list[str], *, flag: str | None = None, quick_replies: tuple[str, ...] = ()) -> Effect:
    return Effect(kind="notify", template=template, params=tuple(params), flag=flag, quick_replies=quick_replies)


def plan_confirmation(order: Order, shop_name: str) -> Transition:
    """Confirmation request with confirm/cancel quick replies."""
    if order.status != OrderStatus.PENDING:
        return Transition(Outcome.NOOP, reason=f"order already {order.status.value}")
    if order.flags.confirmation_sent:
        return Transition(Outcome.NOOP, reason="confirmation already sent")
    params = [
        order.customer.name,
        order.order_name,
        order.product.name,
        str(order.product.qty),
        shop_name,
        order.amount.total,
        order.amount.currency,
    ]
    actions = (
        reply_payload(ReplyAction.CONFIRM, order.tenant_id, order.order_id),
        reply_payload(ReplyAction.CANCEL, order.tenant_id, order.order_id),
    )
    return Transition(
        Outcome.APPLIED,
        effects=[_notify(Templates.ORDER_CONFIRMATION, params, flag="confirmation_sent", quick_replies=actions)],
    )


def plan_reply(
    order: Order,
    action: ReplyAction | None,
    secrets: TenantSecrets,
    now: int,
    text: str = "",
) -> Transition:
    replied = {timeline_path("last_customer_reply_at"): now}

    if action is None:
        effects = []
        if secrets.owner_phone:
            effects.append(_notify(Templates.CALL_US, [secrets.owner_phone]))
        reason = f"free-text reply {text[:REPLY_EXCERPT_CHARS]!r}" if text else "free-text reply"
        return Transition(Outcome.ACKNOWLEDGED, updates=replied, effects=effects, reason=reason)

    if order.status != OrderStatus.PENDING:
        label = _STATUS_LABELS[order.status]
        return Transition(
            Outcome.RESTATED,
            updates=replied,
            effects=[_notify(Templates.ORDER_STATUS_UPDATE, [order.order_name, label])],
            reason=f"reply {action.value} on {order.status.value} order",
        )

    if action == ReplyAction.CONFIRM:
        effects = [Effect(kind="note", note=NOTE_CONFIRMED)]
        if secrets.auto_book_courier:
            effects.append(Effect(kind="book"))
        effects.append(
            _notify(
                Templates.ORDER_CONFIRMED_REPLY,
                [order.customer.name, order.order_name],
                flag="confirmation_reply",
            )
        )
        return Transition(
            Outcome.APPLIED,
            target=OrderStatus.CONFIRMED,
            updates={
                "status": OrderStatus.CONFIRMED.value,
                timeline_path("confirmed_at"): now,
                **replied,
            },
            effects=effects,
        )

    return Transition(
        Outcome.APPLIED,
        target=OrderStatus.CANCELLED,
        updates={
            "status": OrderStatus.CANCELLED.value,
            timeline_path("cancelled_at"): now,
            **replied,
        },
        effects=[
            Effect(kind="note", note=NOTE_CANCELLED),
            _notify(Templates.ORDER_CANCELLED_REPLY, [order.order_name], flag="confirmation_reply"),
        ],
    )


def plan_fulfillment(order: Order, now: int) -> Transition:
    shipped = _notify(Templates.ORDER_SHIPPED, [order.order_name], flag="fulfilled_sent")
    if order.status == OrderStatus.FULFILLED:
        # Redelivered webhook: only retry a send that never went out
        if order.flags.fulfilled_sent:
            return Transition(Outcome.NOOP, reason="already fulfilled")
        return Transition(Outcome.APPLIED, effects=[shipped], reason="resend shipped notice")
    if not can_advance(order.status, OrderStatus.FULFILLED):
        return Transition(Outcome.NOOP, reason=f"cannot fulfil a {order.status.value} order")
    return Transition(
        Outcome.APPLIED,
        target=OrderStatus.FULFILLED,
        updates={"status": OrderStatus.FULFILLED.value, timeline_path("fulfilled_at"): now},
        effects=[shipped],
    )


def plan_courier_status(order: Order, observed: str, now: int) -> Transition:
    if order.status in (OrderStatus.DELIVERED, OrderStatus.CANCELLED):
        return Transition(Outcome.NOOP, reason=f"order already {order.status.value}")

    status = canonical_status(observed)
    changed = status != canonical_status(order.courier.last_status)
    updates: dict[str, Any] = {}
    if changed:
        updates[courier_path("last_status")] = observed

    if status == DELIVERED:
        updates.update({"status": OrderStatus.DELIVERED.value, timeline_path("delivered_at"): now})
        return Transition(
            Outcome.APPLIED,
            target=OrderStatus.DELIVERED,
            updates=updates,
            effects=[
                _notify(
                    Templates.ORDER_DELIVERED,
                    [order.customer.name, order.order_name],
                    flag="delivered_sent",
                )
            ],
        )

    if status == OUT_FOR_DELIVERY and changed and can_advance(order.status, OrderStatus.OUT_FOR_DELIVERY):
        updates.update({
            "status": OrderStatus.OUT_FOR_DELIVERY.value,
            timeline_path("out_for_delivery_at"): now,
        })
        return Transition(
            Outcome.APPLIED,
            target=OrderStatus.OUT_FOR_DELIVERY,
            updates=updates,
            effects=[_notify(Templates.ORDER_SHIPPED, [order.order_name], flag="out_for_delivery_sent")],
        )

    if updates:
        return Transition(Outcome.APPLIED, updates=updates, reason=f"courier status {observed!r}")
    return Transition(Outcome.NOOP, reason="courier status unchanged")


# ---------------------------------------------------------------------------
# Machine
# ---------------------------------------------------------------------------


class OrderStateMachine:
    """Applies canonical events to orders."""

    def __init__(
        self,
        *,
        settings: Settings,
        registry: TenantRegistry,
        orders: OrderStore,
        notifier: NotificationDispatcher,
        courier: CourierIntegration,
        platform: PlatformClient,
        locks: OrderLocks | None = None,
        dead_letters: DeadLetterSink | None = None,
        clock: Callable[[], int] = now_millis,
    ):
        self._settings = settings
        self._registry = registry
        self._orders = orders
        self._notifier = notifier
        self._courier = courier
        self._platform = platform
        self._locks = locks or LocalOrderLocks()
        self._dead_letters = dead_letters or MemoryDeadLetters()
        self._clock = clock

    async def handle(self, event: CanonicalEvent, secrets: TenantSecrets | None = None) -> TransitionResult:
        """Process one event to completion. Never raises.

        ``secrets`` may be passed when the caller already loaded them for
        this same event (signature verification); otherwise they are read
        fresh.
        """
        kind = type(event).__name__
        try:
            if isinstance(event, OrderCreated):
                result = await self._on_order_created(event, secrets)
            elif isinstance(event, CustomerReplied):
                result = await self._on_customer_replied(event)
            elif isinstance(event, FulfillmentReported):
                result = await self._on_fulfillment(event, secrets)
            elif isinstance(event, CourierStatusObserved):
                result = await self._on_courier_status(event, secrets)
            else:
                logger.error("Unsupported event type: %s", kind)
                return TransitionResult(Outcome.DROPPED, reason=f"unsupported event {kind}")
        except LockUnavailable as e:
            logger.error("Event %s dropped: %s", kind, e)
            await self._dead_letter("lock", e.tenant_id, e.order_id, kind, e)
            return TransitionResult(Outcome.FAILED, e.tenant_id, e.order_id, reason=str(e))
        except Exception as e:
            logger.exception("Event %s failed", kind)
            return TransitionResult(Outcome.FAILED, reason=f"{type(e).__name__}: {e}")

        logger.info(
            "ORDER_EVENT event=%s tenant=%s order=%s outcome=%s status=%s sent=%s failures=%s %s",
            kind,
            result.tenant_id,
            result.order_id,
            result.outcome.value,
            result.status.value if result.status else "-",
            ",".join(result.sent) or "-",
            ",".join(result.failures) or "-",
            result.reason,
        )
        return result

    async def _secrets_for(self, tenant_id: str, secrets: TenantSecrets | None) -> TenantSecrets | None:
        if secrets is not None:
            return secrets
        return await self._registry.load_secrets(tenant_id)

    # -- handlers ---------------------------------------------------------

    async def _on_order_created(self, event: OrderCreated, secrets: TenantSecrets | None) -> TransitionResult:
        order = event.order
        secrets = await self._secrets_for(event.tenant_id, secrets)
        if secrets is None:
            return TransitionResult(Outcome.DROPPED, event.tenant_id, order.order_id, reason="tenant has no secrets")
        shop_name = secrets.shop_name or self._settings.default_shop_name

        async with self._locks.hold(event.tenant_id, order.order_id):
            existing = await self._orders.get(event.tenant_id, order.order_id)
            if existing is None:
                await self._orders.create_if_absent(order)
                current = order
            else:
                current = existing
            transition = plan_confirmation(current, shop_name)
            if existing is not None and transition.outcome == Outcome.NOOP:
                transition.reason = f"duplicate order webhook: {transition.reason}"
            return await self._apply(event, current, secrets, transition)

    async def _on_customer_replied(self, event: CustomerReplied) -> TransitionResult:
        match = None
        if event.tenant_hint and event.order_hint:
            match = await self._orders.get(event.tenant_hint, event.order_hint)
            if match is not None and match.customer.phone != event.phone:
                # Payload ids only select among the sender's own orders
                logger.warning(
                    "Reply phone %s does not own order %s/%s — ignoring payload ids",
                    event.phone,
                    match.tenant_id,
                    match.order_id,
                )
                match = None
        if match is None:
            logger.info(
                "Reply from %s has no resolvable order context — falling back to phone scan",
                event.phone,
            )
            tenants = await self._registry.list_tenants()
            match = await self._orders.find_latest_by_phone(event.phone, tenants)
        if match is None:
            return TransitionResult(Outcome.UNMATCHED, reason=f"no order for phone {event.phone}")

        secrets = await self._registry.load_secrets(match.tenant_id)
        if secrets is None:
            return TransitionResult(Outcome.DROPPED, match.tenant_id, match.order_id, reason="tenant has no secrets")

        async with self._locks.hold(match.tenant_id, match.order_id):
            order = await self._orders.get(match.tenant_id, match.order_id)
            if order is None:
                return TransitionResult(Outcome.UNMATCHED, match.tenant_id, match.order_id)
            transition = plan_reply(order, event.action, secrets, self._clock(), text=event.text)
            return await self._apply(event, order, secrets, transition)

    async def _on_fulfillment(self, event: FulfillmentReported, secrets: TenantSecrets | None) -> TransitionResult:
        async with self._locks.hold(event.tenant_id, event.order_id):
            order = await self._orders.get(event.tenant_id, event.order_id)
            if order is None:
                return TransitionResult(Outcome.UNMATCHED, event.tenant_id, event.order_id, reason="unknown order")
            secrets = await self._secrets_for(event.tenant_id, secrets)
            if secrets is None:
                return TransitionResult(Outcome.DROPPED, event.tenant_id, event.order_id, reason="tenant has no secrets")
            transition = plan_fulfillment(order, self._clock())
            return await self._apply(event, order, secrets, transition)

    async def _on_courier_status(self, event: CourierStatusObserved, secrets: TenantSecrets | None) -> TransitionResult:
        async with self._locks.hold(event.tenant_id, event.order_id):
            order = await self._orders.get(event.tenant_id, event.order_id)
            if order is None:
                return TransitionResult(Outcome.UNMATCHED, event.tenant_id, event.order_id, reason="unknown order")
            secrets = await self._secrets_for(event.tenant_id, secrets)
            if secrets is None:
                return TransitionResult(Outcome.DROPPED, event.tenant_id, event.order_id, reason="tenant has no secrets")
            transition = plan_courier_status(order, event.status, self._clock())
            return await self._apply(event, order, secrets, transition)

    # -- apply ------------------------------------------------------------

    async def _apply(
        self,
        event: CanonicalEvent,
        order: Order,
        secrets: TenantSecrets,
        transition: Transition,
    ) -> TransitionResult:
        result = TransitionResult(
            outcome=transition.outcome,
            tenant_id=order.tenant_id,
            order_id=order.order_id,
            status=transition.target or order.status,
            reason=transition.reason,
        )
        event_name = type(event).__name__

        if transition.updates:
            try:
                await self._orders.update(order.tenant_id, order.order_id, transition.updates)
            except Exception as e:
                logger.exception("State write failed for %s/%s", order.tenant_id, order.order_id)
                await self._dead_letter("persist", order.tenant_id, order.order_id, event_name, e)
                result.outcome = Outcome.FAILED
                result.status = order.status
                result.failures.append("persist")
                return result
            if transition.target is not None:
                order.status = transition.target

        for effect in transition.effects:
            try:
                ok = await self._run_effect(effect, order, secrets, result, event_name)
                error: Exception | None = None
            except Exception as e:
                logger.exception(
                    "Side effect %s failed for %s/%s", effect.name, order.tenant_id, order.order_id
                )
                ok, error = False, e
            if not ok:
                if error is None:
                    error = ExternalCallFailure(effect.name, "call reported failure")
                result.failures.append(effect.name)
                await self._dead_letter(effect.name, order.tenant_id, order.order_id, event_name, error)
        return result

    async def _run_effect(
        self,
        effect: Effect,
        order: Order,
        secrets: TenantSecrets,
        result: TransitionResult,
        event_name: str,
    ) -> bool:
        if effect.kind == "note":
            return await self._platform.update_order_note(order.order_id, secrets, effect.note)

        if effect.kind == "book":
            if order.courier.tracking_number:
                logger.info("Order %s/%s already booked — skipping", order.tenant_id, order.order_id)
                return True
            tracking = await self._courier.book(order, secrets)
            if not tracking:
                return False
            now = self._clock()
            await self._orders.update(
                order.tenant_id,
                order.order_id,
                {courier_path("tracking_number"): tracking, courier_path("booked_at"): now},
            )
            order.courier.tracking_number = tracking
            order.courier.booked_at = now
            return True

        if effect.kind == "notify":
            if effect.flag and getattr(order.flags, effect.flag):
                logger.info(
                    "Skipping %s for %s/%s: %s already set",
                    effect.template,
                    order.tenant_id,
                    order.order_id,
                    effect.flag,
                )
                return True
            sent = await self._notifier.send(
                order.customer.phone,
                effect.template,
                list(effect.params),
                list(effect.quick_replies),
            )
            if not sent:
                return False
            now = self._clock()
            fields: dict[str, Any] = {timeline_path("last_msg_sent_at"): now}
            if effect.flag:
                fields[flag_path(effect.flag)] = True
                setattr(order.flags, effect.flag, True)
            order.timeline.last_msg_sent_at = now
            result.sent.append(effect.template)
            try:
                await self._orders.update(order.tenant_id, order.order_id, fields)
            except Exception as e:
                # The message went out; only the bookkeeping is lost
                name = f"flag:{effect.flag}" if effect.flag else "flag:last_msg_sent_at"
                logger.exception(
                    "Flag write after %s failed for %s/%s", effect.template, order.tenant_id, order.order_id
                )
                result.failures.append(name)
                await self._dead_letter(name, order.tenant_id, order.order_id, event_name, e)
            return True

        raise ValueError(f"unknown effect kind {effect.kind!r}")

    async def _dead_letter(
        self, effect: str, tenant_id: str, order_id: str, event_name: str, error: Exception
    ) -> None:
        await self._dead_letters.record(
            DeadLetter(
                effect=effect,
                tenant_id=tenant_id,
                order_id=order_id,
                event=event_name,
                error=f"{type(error).__name__}: {error}",
                recorded_at=time.time(),
            )
        )
