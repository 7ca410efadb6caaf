"""Tracking cache: keys, expiry and failure tolerance."""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from order_service import cache as cache_module
from order_service.cache import TrackingCache


@pytest.fixture
def redis_client():
    return AsyncMock()


async def test_hit_returns_decoded_view(redis_client):
    redis_client.get.return_value = json.dumps({"orderId": "o-1", "status": "PENDING"})
    cache = TrackingCache(redis_client, ttl_seconds=30)

    assert await cache.get("o-1") == {"orderId": "o-1", "status": "PENDING"}
    redis_client.get.assert_awaited_once_with("order_tracking:o-1")


async def test_miss(redis_client):
    redis_client.get.return_value = None
    assert await TrackingCache(redis_client).get("o-1") is None


async def test_set_uses_ttl(redis_client):
    cache = TrackingCache(redis_client, ttl_seconds=45)
    await cache.set("o-1", {"status": "DELIVERED"})

    redis_client.setex.assert_awaited_once_with("order_tracking:o-1", 45, json.dumps({"status": "DELIVERED"}))


async def test_invalidate(redis_client):
    await TrackingCache(redis_client).invalidate("o-1")
    redis_client.delete.assert_awaited_once_with("order_tracking:o-1")


async def test_redis_failures_are_treated_as_misses(redis_client):
    redis_client.get.side_effect = RedisConnectionError("redis is down")
    redis_client.setex.side_effect = RedisConnectionError("redis is down")
    redis_client.delete.side_effect = RedisConnectionError("redis is down")
    cache = TrackingCache(redis_client)

    assert await cache.get("o-1") is None
    await cache.set("o-1", {"status": "PENDING"})
    await cache.invalidate("o-1")


def test_disabled_by_default(monkeypatch):
    monkeypatch.setattr(cache_module.config, "TRACKING_CACHE_ENABLED", False)
    assert cache_module.create_tracking_cache() is None
