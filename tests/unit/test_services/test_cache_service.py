"""Unit tests for the fail-soft Redis cache wrapper."""

import json

import pytest

from portfolio_rag.services.cache_service import CacheService
from portfolio_rag.services.rag_config_service import CacheConfig


@pytest.fixture
def cache(fake_redis):
    return CacheService(fake_redis, config=CacheConfig(key_prefix="test:", default_ttl_seconds=300))


@pytest.mark.asyncio
async def test_set_and_get_round_trip_json_with_prefix_and_ttl(cache, fake_redis):
    assert await cache.set("rag:search:abc", {"chunks": [], "total_results": 0}) is True

    assert json.loads(fake_redis.data["test:rag:search:abc"]) == {"chunks": [], "total_results": 0}
    assert fake_redis.ttls["test:rag:search:abc"] == 300
    assert await cache.get("rag:search:abc") == {"chunks": [], "total_results": 0}
    assert await cache.exists("rag:search:abc") is True

    await cache.set("short", [1, 2], ttl=5)
    assert fake_redis.ttls["test:short"] == 5


@pytest.mark.asyncio
async def test_miss_and_delete_update_metrics(cache):
    assert await cache.get("missing") is None
    await cache.set("key", "value")
    assert await cache.get("key") == "value"
    assert await cache.delete("key") is True
    assert await cache.exists("key") is False

    metrics = cache.get_metrics()
    assert metrics["hits"] == 1
    assert metrics["misses"] == 1
    assert metrics["sets"] == 1
    assert metrics["deletes"] == 1
    assert metrics["hit_ratio"] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_outage_fails_soft(cache, fake_redis):
    fake_redis.fail = True

    assert await cache.get("key") is None
    assert await cache.set("key", {"a": 1}) is False
    assert await cache.delete("key") is False
    assert await cache.exists("key") is False
    assert await cache.invalidate_pattern("*") == 0
    assert await cache.ping() is False
    assert cache.get_metrics()["errors"] == 5


@pytest.mark.asyncio
async def test_corrupt_entry_is_treated_as_miss(cache, fake_redis):
    fake_redis.data["test:bad"] = "{not json"

    assert await cache.get("bad") is None


@pytest.mark.asyncio
async def test_invalidate_pattern_removes_matching_keys_only(cache, fake_redis):
    await cache.set("rag:search:1", 1)
    await cache.set("rag:search:2", 2)
    await cache.set("embedding:1", [0.1])

    removed = await cache.invalidate_pattern("rag:search:*")

    assert removed == 2
    assert list(fake_redis.data) == ["test:embedding:1"]


@pytest.mark.asyncio
async def test_disabled_cache_is_a_no_op():
    cache = CacheService(None)

    assert cache.enabled is False
    assert await cache.get("key") is None
    assert await cache.set("key", 1) is False
    assert await cache.invalidate_pattern("*") == 0


@pytest.mark.asyncio
async def test_close_releases_client(cache, fake_redis):
    await cache.close()

    assert fake_redis.closed is True
