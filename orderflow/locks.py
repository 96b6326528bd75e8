"""Per-order advisory locks around the read-compute-write of a transition.

``LocalOrderLocks`` serializes coroutines within one process.
``RedisOrderLocks`` serializes across processes sharing a Redis.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from orderflow.errors import LockUnavailable

logger = logging.getLogger(__name__)


class OrderLocks(Protocol):
    def hold(self, tenant_id: str, order_id: str) -> AbstractAsyncContextManager[None]:
        ...


class LocalOrderLocks:
    """In-process lock registry keyed by (tenant_id, order_id).

    Entries are dropped when the last holder or waiter leaves, so the
    registry only ever contains orders currently being processed.
    """

    def __init__(self) -> None:
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._users: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: str, order_id: str) -> AsyncIterator[None]:
        key = (tenant_id, order_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisOrderLocks:
    """Redis lock per order (SET NX with expiry, released by token).

    Failing to acquire within ``blocking_timeout`` raises
    ``LockUnavailable`` so the caller can dead-letter the event. A lock that
    expired before release is logged, not raised: the work it guarded has
    already been written.
    """

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "orderflow:",
        timeout: float = 180.0,
        blocking_timeout: float = 30.0,
    ):
        self._redis = client
        self._prefix = prefix
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    @asynccontextmanager
    async def hold(self, tenant_id: str, order_id: str) -> AsyncIterator[None]:
        name = f"{self._prefix}lock:{tenant_id}:{order_id}"
        lock = self._redis.lock(
            name, timeout=self._timeout, blocking_timeout=self._blocking_timeout
        )
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise LockUnavailable(tenant_id, order_id, str(e)) from e
        if not acquired:
            raise LockUnavailable(tenant_id, order_id, f"timed out after {self._blocking_timeout}s")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                logger.warning(
                    "Lock %s expired before release (timeout %ss): %s", name, self._timeout, e
                )
            except RedisError as e:
                # Left to expire on its own
                logger.warning("Lock %s release failed: %s", name, e)
