"""Single retry/backoff policy wrapped around every provider call.

Per attempt: quota check-and-consume, then the network call. Outcomes:

* rate limited / overloaded: exponential backoff ``base * 2**(attempt-1)``
  (or the provider's Retry-After if longer). Exhausting the attempts returns
  a terminal failure that is cached in the failure namespace so the same
  request is not retried again within the TTL.
* other transient errors: fixed short delay, then retry.
* anything else (malformed request, auth, not found, quota...): terminal.

Successful responses are cached under the caller's key. Nothing here raises.
"""

import asyncio
from typing import Any

import structlog
from tenacity import AsyncRetrying, retry_if_result, stop_after_attempt

from geoenrich.models.enrichment import AddressFields, ProviderErrorKind, ProviderResponse
from geoenrich.services.quota_governor import QuotaGovernor
from geoenrich.services.result_cache import ResultCache, failure_key
from geoenrich.services.stats import StatsAggregator
from geoenrich.utils.address import truncate

logger = structlog.get_logger()

RETRYABLE = {ProviderErrorKind.RATE_LIMITED, ProviderErrorKind.TRANSIENT}


def _should_retry(response: ProviderResponse) -> bool:
    return not response.success and response.error_kind in RETRYABLE


class RetryController:
    def __init__(
        self,
        quota: QuotaGovernor,
        cache: ResultCache,
        stats: StatsAggregator | None = None,
        max_attempts: int = 3,
        base_delay: float = 6.0,
        transient_delay: float = 3.0,
        max_retry_after: float = 60.0,
        sleep=asyncio.sleep,
    ):
        self.quota = quota
        self.cache = cache
        self.stats = stats
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.transient_delay = transient_delay
        self.max_retry_after = max_retry_after
        self._sleep = sleep

    def backoff_delay(self, response: ProviderResponse, attempt: int) -> float:
        if response.error_kind == ProviderErrorKind.RATE_LIMITED:
            delay = self.base_delay * 2 ** (attempt - 1)
            if response.retry_after:
                # A server-supplied Retry-After is honoured up to the configured ceiling
                delay = max(delay, min(response.retry_after, self.max_retry_after))
            return delay
        return self.transient_delay

    def _wait(self, retry_state) -> float:
        return self.backoff_delay(retry_state.outcome.result(), retry_state.attempt_number)

    async def execute(
        self,
        provider,
        fields: AddressFields,
        cache_key: str | None = None,
        ttl_days: float = 0,
        **hints: Any,
    ) -> ProviderResponse:
        """Call ``provider`` for ``fields`` under the retry policy."""
        name = provider.name
        address = truncate(fields.full_address)

        if cache_key:
            cached = await self.cache.get_response(cache_key)
            if cached is not None:
                if self.stats:
                    self.stats.record_cache_hit(name)
                logger.debug("Cache hit", provider=name, address=address)
                return cached

            cached_failure = await self.cache.get_response(failure_key(cache_key))
            if cached_failure is not None:
                logger.info("Skipping provider, recent terminal failure cached", provider=name, address=address)
                return cached_failure

        if not provider.configured:
            return ProviderResponse.fail(name, ProviderErrorKind.CONFIGURATION, f"{name} credential not configured")

        attempts = 0

        async def _attempt() -> ProviderResponse:
            nonlocal attempts
            attempts += 1
            if not self.quota.try_acquire(name):
                response = ProviderResponse.fail(name, ProviderErrorKind.QUOTA_EXCEEDED, f"{name} daily quota exhausted")
            else:
                try:
                    response = await provider.call(fields, **hints)
                except Exception as e:
                    logger.error("Provider client raised", provider=name, address=address, error=str(e))
                    response = ProviderResponse.fail(name, ProviderErrorKind.TRANSIENT, f"Unexpected error: {e}")
                if self.stats:
                    self.stats.record_call(name, response.success)
                    if response.error_kind == ProviderErrorKind.RATE_LIMITED:
                        self.stats.record_rate_limited(name)

            if response.success:
                logger.debug("Provider call succeeded", provider=name, attempt=attempts, max_attempts=self.max_attempts)
            else:
                logger.warning(
                    "Provider call failed",
                    provider=name,
                    address=address,
                    attempt=attempts,
                    max_attempts=self.max_attempts,
                    kind=response.error_kind.value if response.error_kind else None,
                    error=response.error,
                )
            return response

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_result(_should_retry),
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
            sleep=self._sleep,
        )
        response: ProviderResponse = await retrying(_attempt)

        if response.success:
            if cache_key:
                await self.cache.put_response(cache_key, response, ttl_days)
            return response

        logger.warning(
            "Provider call terminal failure",
            provider=name,
            address=address,
            attempts=attempts,
            max_attempts=self.max_attempts,
            kind=response.error_kind.value if response.error_kind else None,
        )
        if cache_key and response.error_kind == ProviderErrorKind.RATE_LIMITED:
            await self.cache.put_response(failure_key(cache_key), response, ttl_days)
        return response
