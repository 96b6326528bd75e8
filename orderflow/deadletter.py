"""Dead-letter records for side effects that failed.

A failed notification, note update or booking never reverts the state
change that caused it. It is logged and recorded here so operators can see
(and replay by hand) what the customer or merchant never received.

The Redis sink appends to a capped stream; if Redis is unreachable the
record is dropped after logging (fail-open).
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

STREAM_DEAD_LETTERS = "deadletter"
_STREAM_MAXLEN = 5000


@dataclass(frozen=True)
class DeadLetter:
    """One failed side effect."""
    effect: str  # notify:<template>, note, book_courier, persist
    tenant_id: str
    order_id: str
    event: str
    error: str = ""
    recorded_at: float = 0.0


class DeadLetterSink(Protocol):
    async def record(self, entry: DeadLetter) -> None:
        ...


class MemoryDeadLetters:
    """Keeps dead letters in a list (tests and local runs)."""

    def __init__(self) -> None:
        self.entries: list[DeadLetter] = []

    async def record(self, entry: DeadLetter) -> None:
        self.entries.append(entry)


class RedisDeadLetters:
    """Appends dead letters to a Redis stream via XADD."""

    def __init__(self, client: redis.Redis, prefix: str = "orderflow:"):
        self._redis = client
        self._stream = f"{prefix}{STREAM_DEAD_LETTERS}"

    async def record(self, entry: DeadLetter) -> None:
        fields = {k: str(v) for k, v in asdict(entry).items()}
        if entry.recorded_at == 0.0:
            fields["recorded_at"] = str(time.time())
        try:
            await self._redis.xadd(
                self._stream, fields, maxlen=_STREAM_MAXLEN, approximate=True
            )
        except Exception:
            logger.warning(
                "Dead letter dropped (Redis unavailable): %s %s/%s",
                entry.effect,
                entry.tenant_id,
                entry.order_id,
                exc_info=True,
            )
