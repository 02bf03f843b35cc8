"""Per-address enrichment state machine.

    START -> GEOCODE_PRIMARY
      success, has neighborhood -> AI_COMMUNITY_ONLY -> DONE
      success, no neighborhood  -> AI_FULL -> DONE
      failure                   -> GEOCODE_FALLBACK
          success -> AI_FULL -> DONE
          failure -> DONE(error)

Steps of one unit run strictly in sequence. Every provider call goes through
the RetryController, which owns caching, quota and backoff. Every output
field records which component produced it.
"""

from typing import Any

import structlog

from geoenrich.clients.gemini import MODE_COMMUNITY_ONLY, MODE_FULL
from geoenrich.models.enrichment import (
    NONE_VALUE,
    EnrichmentResult,
    FieldSource,
    ProviderErrorKind,
    ProviderResponse,
    ResultStatus,
    WorkUnit,
)
from geoenrich.services.circuit_breaker import CircuitBreaker
from geoenrich.services.result_cache import enrichment_key, geocode_key
from geoenrich.services.retry_controller import RetryController
from geoenrich.utils.address import extract_house_number, truncate
from geoenrich.utils.heuristics import community_from_neighborhood
from geoenrich.utils.response_cleaner import ParsedEnrichment, clean_field, parse_enrichment_text

logger = structlog.get_logger()


class EnrichmentOrchestrator:
    def __init__(
        self,
        primary,
        fallback,
        text_provider,
        retry: RetryController,
        breakers: dict[str, CircuitBreaker] | None = None,
        geocode_ttl_days: float = 30,
        enrichment_ttl_days: float = 7,
        enable_heuristic: bool = True,
    ):
        self.primary = primary
        self.fallback = fallback
        self.text_provider = text_provider
        self.retry = retry
        self.breakers = breakers or {}
        self.geocode_ttl_days = geocode_ttl_days
        self.enrichment_ttl_days = enrichment_ttl_days
        self.enable_heuristic = enable_heuristic

    async def enrich(self, unit: WorkUnit) -> EnrichmentResult:
        """Resolve one work unit. Always returns a result, never raises."""
        try:
            result = await self._enrich(unit)
        except Exception as e:
            logger.error("Unit enrichment crashed", key=truncate(unit.key), error=str(e))
            result = EnrichmentResult.failure(unit.key, f"Unexpected error: {e}")

        logger.info(
            "Unit enriched",
            key=truncate(unit.key),
            status=result.status.value,
            neighborhood_source=result.neighborhood_source.value,
            community_source=result.community_source.value,
            chain=result.provider_chain,
        )
        return result

    async def _enrich(self, unit: WorkUnit) -> EnrichmentResult:
        if not unit.key:
            return EnrichmentResult.failure(unit.key, "Missing address")

        chain: list[str] = []

        primary = await self._geocode(self.primary, unit, chain)
        if primary.success:
            result = self._geocoded_result(unit, primary, chain)
            neighborhood = clean_field(primary.data.get("neighborhood"))
            if neighborhood != NONE_VALUE:
                result.neighborhood = neighborhood
                result.neighborhood_source = FieldSource.PRIMARY
                await self._community_only(unit, result, chain)
            else:
                await self._full(unit, result, chain)
            return result

        fallback = await self._geocode(self.fallback, unit, chain)
        if fallback.success:
            result = self._geocoded_result(unit, fallback, chain)
            await self._full(unit, result, chain)
            return result

        return EnrichmentResult.failure(
            unit.key,
            f"All geocoders failed - {primary.provider}: {primary.error}; {fallback.provider}: {fallback.error}",
            chain,
        )

    # Provider steps

    async def _guarded(self, client, unit: WorkUnit, chain: list[str], cache_key: str, ttl_days: float, **hints: Any) -> ProviderResponse:
        breaker = self.breakers.get(client.name)
        if breaker is not None and not breaker.allow():
            return ProviderResponse.fail(client.name, ProviderErrorKind.CIRCUIT_OPEN, f"{client.name} disabled after repeated authorization failures")

        chain.append(client.name)
        response = await self.retry.execute(client, unit.fields, cache_key=cache_key, ttl_days=ttl_days, **hints)
        if breaker is not None and not response.from_cache:
            breaker.record(response)
        return response

    async def _geocode(self, client, unit: WorkUnit, chain: list[str]) -> ProviderResponse:
        return await self._guarded(
            client, unit, chain, geocode_key(client.name, unit.key), self.geocode_ttl_days
        )

    async def _ask(self, unit: WorkUnit, chain: list[str], mode: str, reinforced: bool = False, **hints: Any) -> ParsedEnrichment | None:
        """One text-enrichment call, parsed. None when the call itself failed."""
        cache_mode = f"{mode}:reinforced" if reinforced else mode
        response = await self._guarded(
            self.text_provider,
            unit,
            chain,
            enrichment_key(cache_mode, unit.key),
            self.enrichment_ttl_days,
            mode=mode,
            reinforced=reinforced,
            **hints,
        )
        if not response.success:
            return None
        parsed = parse_enrichment_text(response.data.get("text"))
        logger.debug(
            "Enrichment text parsed",
            key=truncate(unit.key),
            mode=cache_mode,
            method=parsed.method,
            neighborhood=parsed.neighborhood,
            community=parsed.community,
        )
        return parsed

    async def _community_only(self, unit: WorkUnit, result: EnrichmentResult, chain: list[str]) -> None:
        hints = {
            "neighborhood": result.neighborhood,
            "latitude": result.latitude,
            "longitude": result.longitude,
        }
        parsed = await self._ask(unit, chain, MODE_COMMUNITY_ONLY, **hints)
        if parsed is not None and parsed.community == NONE_VALUE:
            parsed = await self._ask(unit, chain, MODE_COMMUNITY_ONLY, reinforced=True, **hints)

        if parsed is not None and parsed.community != NONE_VALUE:
            result.community = parsed.community
            result.community_source = FieldSource.TEXT_ENRICHMENT
            return

        if self.enable_heuristic:
            guess = community_from_neighborhood(result.neighborhood)
            if guess != NONE_VALUE:
                result.community = guess
                result.community_source = FieldSource.HEURISTIC

    async def _full(self, unit: WorkUnit, result: EnrichmentResult, chain: list[str]) -> None:
        hints = {"latitude": result.latitude, "longitude": result.longitude}
        parsed = await self._ask(unit, chain, MODE_FULL, **hints)
        if parsed is not None and parsed.both_missing:
            parsed = await self._ask(unit, chain, MODE_FULL, reinforced=True, **hints)
        if parsed is None:
            return

        if parsed.neighborhood != NONE_VALUE:
            result.neighborhood = parsed.neighborhood
            result.neighborhood_source = FieldSource.TEXT_ENRICHMENT
        if parsed.community != NONE_VALUE:
            result.community = parsed.community
            result.community_source = FieldSource.TEXT_ENRICHMENT

    @staticmethod
    def _geocoded_result(unit: WorkUnit, response: ProviderResponse, chain: list[str]) -> EnrichmentResult:
        data = response.data
        formatted = data.get("formatted_address", "")
        house_number, street = extract_house_number(unit.fields.address, formatted)
        return EnrichmentResult(
            status=ResultStatus.SUCCESS,
            key=unit.key,
            formatted_address=formatted,
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            provider_chain=chain,
            house_number=house_number or data.get("house_number", ""),
            street=street or data.get("street", ""),
            confidence=data.get("confidence"),
            locality=data.get("locality", ""),
            postcode=data.get("postcode", ""),
        )
