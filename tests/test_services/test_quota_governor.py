"""Tests for per-provider daily quotas."""

import asyncio
import threading
from datetime import date

import pytest

from geoenrich.services.quota_governor import QuotaGovernor


class Today:
    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value


@pytest.fixture
def events():
    return []


@pytest.fixture
def governor(store, events):
    return QuotaGovernor(
        store,
        {"mapbox": 5, "gemini": 100},
        debounce_ms=10,
        on_limit_reached=lambda provider, used, limit: events.append((provider, used, limit)),
    )


class TestLimits:
    def test_sixth_call_rejected(self, governor, events):
        for _ in range(5):
            assert governor.check_limit("mapbox")
            governor.consume("mapbox")
        assert governor.check_limit("mapbox") is False
        assert events == [("mapbox", 5, 5)]

    def test_limit_event_fires_once(self, governor, events):
        for _ in range(5):
            assert governor.try_acquire("mapbox")
        for _ in range(3):
            assert governor.try_acquire("mapbox") is False
        assert governor.check_limit("mapbox") is False
        assert len(events) == 1
        assert governor.usage()["mapbox"] == {"used": 5, "limit": 5, "remaining": 0}

    def test_limit_handler_may_read_usage(self, store):
        seen = []
        governor = QuotaGovernor(store, {"mapbox": 1})
        governor.on_limit_reached = lambda provider, used, limit: seen.append(governor.usage()[provider])
        assert governor.try_acquire("mapbox")

        outcome = []
        worker = threading.Thread(target=lambda: outcome.append(governor.try_acquire("mapbox")), daemon=True)
        worker.start()
        worker.join(timeout=2)

        assert not worker.is_alive()
        assert outcome == [False]
        assert seen == [{"used": 1, "limit": 1, "remaining": 0}]
        assert governor.check_limit("mapbox") is False
        assert len(seen) == 1

    def test_other_providers_unaffected(self, governor):
        for _ in range(5):
            governor.try_acquire("mapbox")
        assert governor.try_acquire("gemini")

    def test_unknown_provider_unlimited(self, governor):
        assert governor.check_limit("somebody")


class TestPersistence:
    @pytest.mark.asyncio
    async def test_coalesced_write(self, store, governor):
        for _ in range(3):
            governor.consume("gemini")
        await asyncio.sleep(0.05)
        state = await store.get("quota:gemini")
        assert state == {"date": date.today().isoformat(), "used": 3}

    @pytest.mark.asyncio
    async def test_load_same_day(self, store):
        await store.set("quota:mapbox", {"date": date.today().isoformat(), "used": 4})
        governor = QuotaGovernor(store, {"mapbox": 5})
        await governor.load()
        assert governor.try_acquire("mapbox")
        assert governor.try_acquire("mapbox") is False

    @pytest.mark.asyncio
    async def test_load_ignores_previous_day(self, store):
        await store.set("quota:mapbox", {"date": "2000-01-01", "used": 5})
        governor = QuotaGovernor(store, {"mapbox": 5})
        await governor.load()
        assert governor.usage()["mapbox"]["used"] == 0

    @pytest.mark.asyncio
    async def test_day_rollover_resets(self, store):
        today = Today(date(2026, 3, 1))
        governor = QuotaGovernor(store, {"mapbox": 1}, today=today)
        assert governor.try_acquire("mapbox")
        assert governor.try_acquire("mapbox") is False
        today.value = date(2026, 3, 2)
        assert governor.try_acquire("mapbox")
        await governor.flush()
        assert (await store.get("quota:mapbox")) == {"date": "2026-03-02", "used": 1}

    @pytest.mark.asyncio
    async def test_reset(self, store, governor):
        for _ in range(5):
            governor.try_acquire("mapbox")
        await governor.reset("mapbox")
        assert governor.check_limit("mapbox")
        assert (await store.get("quota:mapbox"))["used"] == 0
