"""Tests for the per-address enrichment state machine."""

import pytest

from geoenrich.models.enrichment import NONE_VALUE, FieldSource, ProviderErrorKind, ProviderResponse, ResultStatus
from geoenrich.services.circuit_breaker import CircuitState
from geoenrich.tasks.runner import RunContext
from tests.fakes import FakeProvider, gemini_text, geocode_ok, make_unit, sequence


def build(settings, store, sleeper, primary=None, fallback=None, gemini=None):
    context = RunContext.build(
        settings,
        store,
        sleep=sleeper,
        primary=primary or FakeProvider("mapbox"),
        fallback=fallback or FakeProvider("geocodio"),
        text_provider=gemini or FakeProvider("gemini", sequence(gemini_text('{"neighborhood": "N/A", "community": "N/A"}'))),
    )
    return context, context.orchestrator()


class TestPrimaryWithNeighborhood:
    @pytest.mark.asyncio
    async def test_community_only_query(self, settings, store, sleeper):
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox", neighborhood="Kendall Green")))
        gemini = FakeProvider("gemini", sequence(gemini_text('{"neighborhood": "Kendall Green", "community": "Kendall Lake Sec 2"}')))
        _, orchestrator = build(settings, store, sleeper, primary=primary, gemini=gemini)

        result = await orchestrator.enrich(make_unit("1920 NW 3rd Ave"))

        assert result.status == ResultStatus.SUCCESS
        assert result.neighborhood == "Kendall Green"
        assert result.neighborhood_source == FieldSource.PRIMARY
        assert result.community == "Kendall Lake"
        assert result.community_source == FieldSource.TEXT_ENRICHMENT
        assert result.house_number == "1920"
        assert result.provider_chain == ["mapbox", "gemini"]
        _, hints = gemini.calls[0]
        assert hints["mode"] == "community_only"
        assert hints["neighborhood"] == "Kendall Green"

    @pytest.mark.asyncio
    async def test_heuristic_after_one_permissive_pass(self, settings, store, sleeper):
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox", neighborhood="Ives Estates")))
        gemini = FakeProvider("gemini", sequence(gemini_text('{"neighborhood": "Ives Estates", "community": "N/A"}')))
        _, orchestrator = build(settings, store, sleeper, primary=primary, gemini=gemini)

        result = await orchestrator.enrich(make_unit("100 Ives Dairy Rd"))

        assert len(gemini.calls) == 2
        assert gemini.calls[1][1]["reinforced"] is True
        assert result.community == "Ives Estates"
        assert result.community_source == FieldSource.HEURISTIC

    @pytest.mark.asyncio
    async def test_heuristic_disabled(self, settings, store, sleeper):
        settings.enable_community_heuristic = False
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox", neighborhood="Ives Estates")))
        _, orchestrator = build(settings, store, sleeper, primary=primary)

        result = await orchestrator.enrich(make_unit("100 Ives Dairy Rd"))

        assert result.community == NONE_VALUE
        assert result.community_source == FieldSource.NONE

    @pytest.mark.asyncio
    async def test_neighborhood_suffix_cleaned(self, settings, store, sleeper):
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox", neighborhood="Highland Lakes Sec 1")))
        _, orchestrator = build(settings, store, sleeper, primary=primary)

        result = await orchestrator.enrich(make_unit("1 Lake Dr"))

        assert result.neighborhood == "Highland Lakes"


class TestPrimaryWithoutNeighborhood:
    @pytest.mark.asyncio
    async def test_full_query(self, settings, store, sleeper):
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox")))
        gemini = FakeProvider("gemini", sequence(gemini_text('{"neighborhood": "West Gate Estate", "community": "Presidential Estates"}')))
        _, orchestrator = build(settings, store, sleeper, primary=primary, gemini=gemini)

        result = await orchestrator.enrich(make_unit("3763 Saginaw Avenue"))

        assert len(gemini.calls) == 1
        assert gemini.calls[0][1]["mode"] == "full"
        assert result.neighborhood == "West Gate Estate"
        assert result.community == "Presidential Estates"
        assert result.neighborhood_source == result.community_source == FieldSource.TEXT_ENRICHMENT

    @pytest.mark.asyncio
    async def test_exactly_one_reinforced_call(self, settings, store, sleeper):
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox")))
        gemini = FakeProvider("gemini", sequence(gemini_text("No disponible")))
        _, orchestrator = build(settings, store, sleeper, primary=primary, gemini=gemini)

        result = await orchestrator.enrich(make_unit("2021 Wilmington St"))

        assert len(gemini.calls) == 2
        assert result.status == ResultStatus.SUCCESS
        assert result.neighborhood == result.community == NONE_VALUE
        assert result.neighborhood_source == FieldSource.NONE

    @pytest.mark.asyncio
    async def test_text_provider_quota_exhausted_still_success(self, settings, store, sleeper):
        settings.gemini_daily_limit = 0
        primary = FakeProvider("mapbox", sequence(geocode_ok("mapbox")))
        gemini = FakeProvider("gemini")
        _, orchestrator = build(settings, store, sleeper, primary=primary, gemini=gemini)

        result = await orchestrator.enrich(make_unit("5 Elm St"))

        assert result.status == ResultStatus.SUCCESS
        assert result.latitude == 26.1
        assert gemini.calls == []


class TestFallback:
    @pytest.mark.asyncio
    async def test_fallback_then_full(self, settings, store, sleeper):
        fallback = FakeProvider("geocodio", sequence(geocode_ok("geocodio", neighborhood="Ignored", latitude=25.0)))
        gemini = FakeProvider("gemini", sequence(gemini_text('{"neighborhood": "Silver Palm", "community": "Silver Palms"}')))
        _, orchestrator = build(settings, store, sleeper, fallback=fallback, gemini=gemini)

        result = await orchestrator.enrich(make_unit("9 Palm Way"))

        assert result.status == ResultStatus.SUCCESS
        assert result.latitude == 25.0
        assert result.provider_chain == ["mapbox", "geocodio", "gemini"]
        assert result.neighborhood == "Silver Palm"
        assert result.neighborhood_source == FieldSource.TEXT_ENRICHMENT
        assert result.community_source == FieldSource.TEXT_ENRICHMENT

    @pytest.mark.asyncio
    async def test_both_geocoders_fail(self, settings, store, sleeper):
        gemini = FakeProvider("gemini")
        _, orchestrator = build(settings, store, sleeper, gemini=gemini)

        result = await orchestrator.enrich(make_unit("0 Nowhere Rd"))

        assert result.status == ResultStatus.ERROR
        assert result.neighborhood == result.community == NONE_VALUE
        assert "mapbox: No results found" in result.error
        assert "geocodio: No results found" in result.error
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_blank_key(self, settings, store, sleeper):
        _, orchestrator = build(settings, store, sleeper)
        unit = make_unit("")
        unit.key = ""
        result = await orchestrator.enrich(unit)
        assert result.error == "Missing address"


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_primary_disabled_after_three_auth_failures(self, settings, store, sleeper):
        primary = FakeProvider(
            "mapbox",
            sequence(ProviderResponse.fail("mapbox", ProviderErrorKind.AUTHORIZATION, "bad token", status_code=401)),
        )
        fallback = FakeProvider("geocodio", sequence(geocode_ok("geocodio")))
        context, orchestrator = build(settings, store, sleeper, primary=primary, fallback=fallback)

        for i in range(3):
            await orchestrator.enrich(make_unit(f"{i} Main St", index=i))
        assert context.breakers["mapbox"].state == CircuitState.TRIPPED

        result = await orchestrator.enrich(make_unit("99 Main St", index=3))
        assert len(primary.calls) == 3
        assert result.status == ResultStatus.SUCCESS
        assert result.provider_chain[0] == "geocodio"


class TestCrashContainment:
    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_error_result(self, settings, store, sleeper):
        _, orchestrator = build(settings, store, sleeper)

        async def broken(*args, **kwargs):
            raise RuntimeError("cache exploded")

        orchestrator.retry.execute = broken
        result = await orchestrator.enrich(make_unit("1 Main St"))
        assert result.status == ResultStatus.ERROR
        assert "cache exploded" in result.error
