"""Tests for Redis-backed webhook deduplication."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import redis

from orderflow.webhooks.idempotency import WebhookDeduplicator


class TestWebhookDeduplicator:
    """SETNX seen-set with 24h TTL, fail-open."""

    def _redis(self, set_result=True) -> MagicMock:
        client = MagicMock()
        client.set = AsyncMock(return_value=set_result)
        return client

    @pytest.mark.asyncio
    async def test_new_webhook_not_duplicate(self):
        client = self._redis(set_result=True)
        dedup = WebhookDeduplicator(client, prefix="of:")
        assert await dedup.is_duplicate("shopify", "wh-1") is False
        client.set.assert_awaited_once_with("of:webhook:seen:shopify:wh-1", "1", nx=True, ex=86400)

    @pytest.mark.asyncio
    async def test_seen_webhook_is_duplicate(self):
        dedup = WebhookDeduplicator(self._redis(set_result=None))
        assert await dedup.is_duplicate("shopify", "wh-1") is True

    @pytest.mark.asyncio
    async def test_redis_down_allows_through(self):
        client = MagicMock()
        client.set = AsyncMock(side_effect=redis.ConnectionError("down"))
        dedup = WebhookDeduplicator(client)
        assert await dedup.is_duplicate("shopify", "wh-1") is False

    @pytest.mark.asyncio
    async def test_empty_webhook_id_not_duplicate(self):
        client = self._redis()
        dedup = WebhookDeduplicator(client)
        assert await dedup.is_duplicate("shopify", None) is False
        assert await dedup.is_duplicate("shopify", "") is False
        client.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_without_redis_never_duplicate(self):
        assert await WebhookDeduplicator(None).is_duplicate("shopify", "wh-1") is False
