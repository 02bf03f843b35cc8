"""Per-provider daily call ceilings.

Usage is counted in memory the moment a call is granted, so concurrent
callers can never overshoot a limit. Persistence of a provider's counter is
coalesced: at most one store write per debounce window, carrying the latest
count. Counters reset when the persisted date differs from today.
"""

import asyncio
import threading
from collections.abc import Callable
from datetime import date

import structlog

from geoenrich.errors import StorageError
from geoenrich.services.kv_store import KeyValueStore

logger = structlog.get_logger()

QUOTA_PREFIX = "quota:"

LimitReachedCallback = Callable[[str, int, int], None]


class QuotaGovernor:
    def __init__(
        self,
        store: KeyValueStore,
        limits: dict[str, int],
        debounce_ms: int = 100,
        today: Callable[[], date] = date.today,
        on_limit_reached: LimitReachedCallback | None = None,
    ):
        self._store = store
        self._limits = dict(limits)
        self._used: dict[str, int] = {p: 0 for p in limits}
        self._date = today()
        self._today = today
        self._debounce = debounce_ms / 1000
        self._lock = threading.Lock()
        self._pending: dict[str, asyncio.Task] = {}
        self._limit_notified: set[str] = set()
        self.on_limit_reached = on_limit_reached

    async def load(self) -> None:
        """Read persisted counters. Entries from an earlier date are ignored."""
        today = self._today().isoformat()
        for provider in self._limits:
            try:
                state = await self._store.get(f"{QUOTA_PREFIX}{provider}")
            except StorageError as e:
                logger.warning("Quota state read failed", provider=provider, error=str(e))
                continue
            if state and state.get("date") == today:
                with self._lock:
                    self._used[provider] = int(state.get("used", 0))
        self._date = self._today()
        logger.info("Quota state loaded", usage=self.usage())

    def _roll_date(self) -> None:
        today = self._today()
        if today != self._date:
            logger.info("Quota day rolled over, resetting counters", previous=self._date.isoformat())
            self._date = today
            self._used = {p: 0 for p in self._limits}
            self._limit_notified.clear()

    def check_limit(self, provider: str) -> bool:
        """True when another call to ``provider`` is allowed."""
        with self._lock:
            self._roll_date()
            allowed, reached = self._check_locked(provider)
        if reached:
            self._notify(provider, *reached)
        return allowed

    def _check_locked(self, provider: str) -> tuple[bool, tuple[int, int] | None]:
        """Whether a call is allowed, plus ``(used, limit)`` the first time it is not."""
        limit = self._limits.get(provider)
        if limit is None:
            return True, None
        used = self._used.get(provider, 0)
        if used < limit:
            return True, None
        if provider in self._limit_notified:
            return False, None
        self._limit_notified.add(provider)
        return False, (used, limit)

    def consume(self, provider: str, n: int = 1) -> int:
        with self._lock:
            self._roll_date()
            self._used[provider] = self._used.get(provider, 0) + n
            used = self._used[provider]
        self._schedule_persist(provider)
        return used

    def try_acquire(self, provider: str) -> bool:
        """Check and consume one call atomically."""
        with self._lock:
            self._roll_date()
            allowed, reached = self._check_locked(provider)
            if allowed:
                self._used[provider] = self._used.get(provider, 0) + 1
        # Handlers may call back into the governor, so notify after releasing the lock
        if reached:
            self._notify(provider, *reached)
        if not allowed:
            logger.warning(
                "Quota exhausted",
                provider=provider,
                used=self._used.get(provider, 0),
                limit=self._limits.get(provider),
            )
            return False
        self._schedule_persist(provider)
        return True

    def _notify(self, provider: str, used: int, limit: int) -> None:
        if self.on_limit_reached is None:
            return
        try:
            self.on_limit_reached(provider, used, limit)
        except Exception as e:
            logger.error("limit_reached handler failed", provider=provider, error=str(e))

    def usage(self) -> dict[str, dict[str, int]]:
        with self._lock:
            return {
                p: {
                    "used": self._used.get(p, 0),
                    "limit": limit,
                    "remaining": max(limit - self._used.get(p, 0), 0),
                }
                for p, limit in self._limits.items()
            }

    async def reset(self, provider: str | None = None) -> None:
        """Zero one provider's counter (or all) and persist immediately."""
        providers = [provider] if provider else list(self._limits)
        with self._lock:
            for p in providers:
                self._used[p] = 0
                self._limit_notified.discard(p)
        for p in providers:
            await self._persist(p)
        logger.info("Quota reset", providers=providers)

    # Persistence

    def _schedule_persist(self, provider: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        pending = self._pending.get(provider)
        if pending is not None and not pending.done():
            return
        self._pending[provider] = loop.create_task(self._persist_later(provider))

    async def _persist_later(self, provider: str) -> None:
        await asyncio.sleep(self._debounce)
        await self._persist(provider)

    async def _persist(self, provider: str) -> None:
        with self._lock:
            state = {"date": self._date.isoformat(), "used": self._used.get(provider, 0)}
        try:
            await self._store.set(f"{QUOTA_PREFIX}{provider}", state)
        except StorageError as e:
            logger.warning("Quota state write failed", provider=provider, error=str(e))

    async def flush(self) -> None:
        """Wait for pending coalesced writes and persist final counters."""
        pending = [t for t in self._pending.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        for provider in self._limits:
            await self._persist(provider)
