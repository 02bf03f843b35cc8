"""
Mapbox Geocoding API client (primary geocoder).

API Documentation: https://docs.mapbox.com/api/search/geocoding-v5/
Base URL: https://api.mapbox.com
Authentication: access_token query parameter

Returns coordinates, the formatted place name, a relevance score and the
administrative context (neighborhood, locality, place, district, region,
postcode) of the best match.
"""

from typing import Any
from urllib.parse import quote

from geoenrich.clients.base_client import BaseAPIClient
from geoenrich.models.enrichment import AddressFields, ProviderErrorKind, ProviderResponse

CONTEXT_FIELDS = {
    "neighborhood": "neighborhood",
    "locality": "locality",
    "place": "city",
    "district": "county",
    "region": "state",
    "postcode": "postcode",
}


class MapboxClient(BaseAPIClient):
    """Mapbox forward geocoding, US addresses only."""

    name = "mapbox"

    def __init__(
        self,
        access_token: str,
        base_url: str = "https://api.mapbox.com",
        timeout: float = 15.0,
        transport=None,
    ):
        super().__init__(base_url=base_url, timeout=timeout, transport=transport)
        self._access_token = access_token

    @property
    def configured(self) -> bool:
        return bool(self._access_token)

    def _error_message(self, response) -> str:
        message = super()._error_message(response)
        if response.status_code == 401:
            message += " (token invalid, expired, or missing geocoding scope)"
        return message

    async def call(self, fields: AddressFields, **hints: Any) -> ProviderResponse:
        if not self.configured:
            return self._not_configured()

        query = fields.full_address
        payload, failure = await self._request(
            "GET",
            f"/geocoding/v5/mapbox.places/{quote(query, safe='')}.json",
            params={
                "access_token": self._access_token,
                "country": "us",
                "types": "address,place,locality,neighborhood",
                "limit": 1,
                "autocomplete": "false",
            },
        )
        if failure:
            return failure
        return self.parse(payload)

    @classmethod
    def parse(cls, payload: Any) -> ProviderResponse:
        """Turn a Mapbox FeatureCollection into a ProviderResponse."""
        features = payload.get("features") if isinstance(payload, dict) else None
        if not features:
            return ProviderResponse.fail(cls.name, ProviderErrorKind.NOT_FOUND, "No results found")

        feature = features[0]
        center = feature.get("center") or []
        if len(center) != 2:
            return ProviderResponse.fail(
                cls.name, ProviderErrorKind.INVALID_RESPONSE, "Feature has no center"
            )
        longitude, latitude = center

        context: dict[str, str] = {}
        for entry in feature.get("context") or []:
            prefix = str(entry.get("id", "")).split(".", 1)[0]
            target = CONTEXT_FIELDS.get(prefix)
            if target and target not in context:
                context[target] = entry.get("text", "")

        neighborhood = context.get("neighborhood") or (feature.get("properties") or {}).get("neighborhood") or ""

        return ProviderResponse.ok(
            cls.name,
            formatted_address=feature.get("place_name", ""),
            latitude=float(latitude),
            longitude=float(longitude),
            neighborhood=neighborhood,
            locality=context.get("locality", ""),
            city=context.get("city", ""),
            county=context.get("county", ""),
            state=context.get("state", ""),
            postcode=context.get("postcode", ""),
            confidence=feature.get("relevance"),
        )
