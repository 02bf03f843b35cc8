"""Tests for the TTL result cache."""

import pytest

from geoenrich.errors import StorageError
from geoenrich.models.enrichment import ProviderErrorKind, ProviderResponse
from geoenrich.services.kv_store import InMemoryKeyValueStore
from geoenrich.services.result_cache import ResultCache, enrichment_key, failure_key, geocode_key


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class BrokenStore(InMemoryKeyValueStore):
    async def get(self, key):
        raise StorageError("disk on fire")

    async def set(self, key, value):
        raise StorageError("disk on fire")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(store, clock):
    return ResultCache(store, clock=clock)


class TestResultCache:
    @pytest.mark.asyncio
    async def test_put_then_get(self, cache):
        await cache.put("cache:geo:mapbox:a", {"x": 1}, ttl_seconds=60)
        assert await cache.get("cache:geo:mapbox:a") == {"x": 1}

    @pytest.mark.asyncio
    async def test_expired_entry_evicted_on_read(self, cache, store, clock):
        await cache.put("k", {"x": 1}, ttl_seconds=60)
        clock.now += 61
        assert await cache.get("k") is None
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_overwrite(self, cache):
        await cache.put("k", {"x": 1}, ttl_seconds=60)
        await cache.put("k", {"x": 2}, ttl_seconds=60)
        assert await cache.get("k") == {"x": 2}

    @pytest.mark.asyncio
    async def test_response_round_trip_marks_cached(self, cache):
        await cache.put_response("k", ProviderResponse.ok("mapbox", latitude=1.0), ttl_days=30)
        cached = await cache.get_response("k")
        assert cached.success and cached.from_cache
        assert cached.data["latitude"] == 1.0

    @pytest.mark.asyncio
    async def test_failure_response_keeps_kind(self, cache):
        failure = ProviderResponse.fail("gemini", ProviderErrorKind.RATE_LIMITED, "slow down", status_code=429)
        await cache.put_response("k", failure, ttl_days=7)
        cached = await cache.get_response("k")
        assert cached.error_kind == ProviderErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_purge_expired(self, cache, clock):
        await cache.put("cache:geo:a", {}, ttl_seconds=10)
        await cache.put("cache:geo:b", {}, ttl_seconds=1000)
        clock.now += 100
        assert await cache.purge_expired() == 1

    @pytest.mark.asyncio
    async def test_storage_errors_are_misses(self, clock):
        cache = ResultCache(BrokenStore(), clock=clock)
        await cache.put("k", {"x": 1}, ttl_seconds=60)
        assert await cache.get("k") is None


def test_key_namespaces():
    assert geocode_key("mapbox", "1 main st") == "cache:geo:mapbox:1 main st"
    assert enrichment_key("full", "1 main st") == "cache:ai:full:1 main st"
    assert failure_key("cache:geo:mapbox:1 main st") == "cache:fail:geo:mapbox:1 main st"
