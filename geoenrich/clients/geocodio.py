"""
Geocodio API client (fallback geocoder).

API Documentation: https://www.geocod.io/docs/
Base URL: https://api.geocod.io
Authentication: api_key query parameter
"""

from typing import Any

from geoenrich.clients.base_client import BaseAPIClient
from geoenrich.models.enrichment import AddressFields, ProviderErrorKind, ProviderResponse

ERROR_MESSAGES = {
    401: "Invalid Geocodio API key",
    403: "Geocodio API key does not have sufficient permissions",
    429: "Geocodio rate limit exceeded",
}


class GeocodioClient(BaseAPIClient):
    """Geocodio forward geocoding with structured address components."""

    name = "geocodio"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.geocod.io",
        api_version: str = "v1.7",
        timeout: float = 15.0,
        transport=None,
    ):
        super().__init__(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._api_key = api_key
        self._api_version = api_version

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def _error_message(self, response) -> str:
        return ERROR_MESSAGES.get(response.status_code) or super()._error_message(response)

    async def call(self, fields: AddressFields, **hints: Any) -> ProviderResponse:
        if not self.configured:
            return self._not_configured()

        payload, failure = await self._request(
            "GET",
            f"/{self._api_version}/geocode",
            params={"q": fields.full_address, "api_key": self._api_key},
        )
        if failure:
            return failure
        return self.parse(payload)

    @classmethod
    def parse(cls, payload: Any) -> ProviderResponse:
        results = payload.get("results") if isinstance(payload, dict) else None
        if not results:
            return ProviderResponse.fail(cls.name, ProviderErrorKind.NOT_FOUND, "No results found")

        result = results[0]
        location = result.get("location") or {}
        if "lat" not in location or "lng" not in location:
            return ProviderResponse.fail(
                cls.name, ProviderErrorKind.INVALID_RESPONSE, "Result has no location"
            )
        components = result.get("address_components") or {}

        return ProviderResponse.ok(
            cls.name,
            formatted_address=result.get("formatted_address", ""),
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            neighborhood=components.get("neighborhood") or components.get("suburb") or "",
            house_number=components.get("number") or "",
            street=components.get("formatted_street") or components.get("street") or "",
            city=components.get("city") or "",
            county=components.get("county") or "",
            state=components.get("state") or "",
            postcode=components.get("zip") or "",
            confidence=result.get("accuracy"),
            accuracy_type=result.get("accuracy_type") or "",
        )
