"""TTL cache of provider responses on top of the key-value store."""

import time
from typing import Any

import structlog

from geoenrich.errors import StorageError
from geoenrich.models.enrichment import ProviderResponse
from geoenrich.services.kv_store import KeyValueStore

logger = structlog.get_logger()

DAY_SECONDS = 86_400

GEOCODE_NAMESPACE = "cache:geo:"
ENRICHMENT_NAMESPACE = "cache:ai:"
FAILURE_NAMESPACE = "cache:fail:"


class ResultCache:
    """
    Key -> last result, evicted lazily on read once its TTL has passed.

    No size bound and no LRU: entries only leave when they expire or are
    overwritten. Storage errors are logged and treated as a miss.
    """

    def __init__(self, store: KeyValueStore, clock=time.time):
        self._store = store
        self._clock = clock

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            entry = await self._store.get(key)
        except StorageError as e:
            logger.warning("Cache read failed", key=key, error=str(e))
            return None
        if not entry:
            return None

        stored_at = entry.get("stored_at", 0)
        ttl = entry.get("ttl", 0)
        if self._clock() - stored_at > ttl:
            await self._evict(key)
            return None
        return entry.get("result")

    async def put(self, key: str, result: dict[str, Any], ttl_seconds: float) -> None:
        entry = {"key": key, "result": result, "stored_at": self._clock(), "ttl": ttl_seconds}
        try:
            await self._store.set(key, entry)
        except StorageError as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def _evict(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except StorageError as e:
            logger.warning("Cache evict failed", key=key, error=str(e))

    async def purge_expired(self, prefix: str = "cache:") -> int:
        """Delete every expired entry under ``prefix``. Returns how many went."""
        try:
            entries = await self._store.list_by_prefix(prefix)
        except StorageError as e:
            logger.warning("Cache scan failed", prefix=prefix, error=str(e))
            return 0
        now = self._clock()
        removed = 0
        for key, entry in entries.items():
            if now - entry.get("stored_at", 0) > entry.get("ttl", 0):
                await self._evict(key)
                removed += 1
        return removed

    # Provider-response helpers

    async def get_response(self, key: str) -> ProviderResponse | None:
        payload = await self.get(key)
        if payload is None:
            return None
        try:
            return ProviderResponse.from_dict(payload)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning("Discarding malformed cache entry", key=key, error=str(e))
            await self._evict(key)
            return None

    async def put_response(self, key: str, response: ProviderResponse, ttl_days: float) -> None:
        await self.put(key, response.to_dict(), ttl_days * DAY_SECONDS)


def geocode_key(provider: str, normalized_key: str) -> str:
    return f"{GEOCODE_NAMESPACE}{provider}:{normalized_key}"


def enrichment_key(mode: str, normalized_key: str) -> str:
    return f"{ENRICHMENT_NAMESPACE}{mode}:{normalized_key}"


def failure_key(cache_key: str) -> str:
    """Failure-namespace twin of a response cache key."""
    return FAILURE_NAMESPACE + cache_key.removeprefix("cache:")
