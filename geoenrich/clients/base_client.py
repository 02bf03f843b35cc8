"""Base async HTTP client shared by the provider integrations.

Provider clients translate one call to and from a provider's wire format.
They never retry and never raise: every failure comes back as a
``ProviderResponse`` whose ``error_kind`` tells the retry controller what to
do with it.
"""

from typing import Any

import httpx
import structlog

from geoenrich.models.enrichment import AddressFields, ProviderErrorKind, ProviderResponse

logger = structlog.get_logger()

RATE_LIMITED_STATUSES = {429, 503}
MALFORMED_STATUSES = {400, 404, 422}
AUTH_STATUSES = {401, 403}


def classify_status(status_code: int) -> ProviderErrorKind:
    if status_code in RATE_LIMITED_STATUSES:
        return ProviderErrorKind.RATE_LIMITED
    if status_code in AUTH_STATUSES:
        return ProviderErrorKind.AUTHORIZATION
    if status_code in MALFORMED_STATUSES:
        return ProviderErrorKind.MALFORMED_REQUEST
    return ProviderErrorKind.TRANSIENT


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class BaseAPIClient:
    """
    Async HTTP client base using httpx.AsyncClient.
    Subclasses set ``name`` and implement ``call``.
    """

    name = "base"

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self._headers = {"User-Agent": "geoenrich/1.0", **(headers or {})}
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return True

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=self._timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> tuple[Any, ProviderResponse | None]:
        """
        Make one HTTP request.

        Returns ``(payload, None)`` for a 2xx JSON body, otherwise
        ``(None, failure)`` with the failure already classified.
        """
        client = await self._get_client()
        logger.debug("API request", provider=self.name, method=method, path=path[:80])

        try:
            response = await client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as e:
            return None, ProviderResponse.fail(self.name, ProviderErrorKind.TRANSIENT, f"Timeout: {e}")
        except httpx.TransportError as e:
            return None, ProviderResponse.fail(self.name, ProviderErrorKind.TRANSIENT, f"Network error: {e}")

        logger.debug("API response", provider=self.name, status=response.status_code)

        if response.is_error:
            kind = classify_status(response.status_code)
            return None, ProviderResponse.fail(
                self.name,
                kind,
                self._error_message(response),
                status_code=response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )

        try:
            return response.json(), None
        except ValueError:
            return None, ProviderResponse.fail(
                self.name,
                ProviderErrorKind.INVALID_RESPONSE,
                "Response body is not JSON",
                status_code=response.status_code,
            )

    def _error_message(self, response: httpx.Response) -> str:
        return f"{self.name} API error: {response.status_code}"

    def _not_configured(self) -> ProviderResponse:
        return ProviderResponse.fail(
            self.name, ProviderErrorKind.CONFIGURATION, f"{self.name} credential not configured"
        )

    async def call(self, fields: AddressFields, **hints: Any) -> ProviderResponse:
        raise NotImplementedError

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
