"""Webhook idempotency — Redis-based deduplication of Shopify deliveries.

Security contract:
- Tracks webhook IDs (X-Shopify-Webhook-Id) in Redis with 24h TTL
- Checked only after signature verification, so forged requests can't
  burn real webhook ids
- Key pattern: {prefix}webhook:seen:{provider}:{webhook_id}
- If Redis is down, falls back to allowing (fail-open for availability);
  the state machine's flag gating still bounds duplicate sends
"""

from __future__ import annotations

import logging

import redis.asyncio as redis

logger = logging.getLogger(__name__)

_DEDUP_TTL_SECONDS = 86400  # 24 hours


class WebhookDeduplicator:
    """SETNX-based seen-set for provider webhook ids."""

    def __init__(self, client: redis.Redis | None, prefix: str = "orderflow:"):
        self._redis = client
        self._prefix = f"{prefix}webhook:seen"

    async def is_duplicate(self, provider: str, webhook_id: str | None) -> bool:
        """Check-and-mark a webhook id. True if it was already seen."""
        if not webhook_id or self._redis is None:
            return False  # No ID = can't dedup, allow through

        key = f"{self._prefix}:{provider}:{webhook_id}"
        try:
            was_set = await self._redis.set(key, "1", nx=True, ex=_DEDUP_TTL_SECONDS)
        except Exception:
            logger.warning(
                "Redis unavailable for webhook dedup — allowing %s/%s",
                provider,
                webhook_id,
                exc_info=True,
            )
            return False
        if not was_set:
            logger.info("Duplicate webhook rejected: %s/%s", provider, webhook_id)
            return True
        return False
