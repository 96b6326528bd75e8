"""Error taxonomy for inbound event processing.

None of these reach a webhook caller: every inbound request is acknowledged
before processing starts, and the event task catches them at its boundary.
A failed transition precondition is not an error and has no class here.
"""

from __future__ import annotations


class OrderflowError(Exception):
    """Base exception for orderflow processing errors."""

    pass


class UnknownTenant(OrderflowError):
    """The inbound identity (domain, tenant id) maps to no tenant."""

    pass


class SignatureInvalid(OrderflowError):
    """Webhook body failed HMAC verification."""

    pass


class MalformedPayload(OrderflowError):
    """Payload could not be parsed into a canonical event."""

    pass


class ExternalCallFailure(OrderflowError):
    """A notification, courier or platform call failed or timed out."""

    def __init__(self, target: str, message: str = "") -> None:
        self.target = target
        super().__init__(f"{target}: {message}" if message else target)


class LockUnavailable(OrderflowError):
    """The per-order lock could not be taken in time."""

    def __init__(self, tenant_id: str, order_id: str, message: str = "") -> None:
        self.tenant_id = tenant_id
        self.order_id = order_id
        detail = f"lock for {tenant_id}/{order_id} not acquired"
        super().__init__(f"{detail}: {message}" if message else detail)
