import httpx
import pytest

from geoenrich.clients.geocodio import GeocodioClient
from geoenrich.models.enrichment import AddressFields, ProviderErrorKind

FIELDS = AddressFields(address="3763 Saginaw Avenue", city="Memphis", zip="38118")

RESULT = {
    "results": [
        {
            "formatted_address": "3763 Saginaw Ave, Memphis, TN 38118",
            "location": {"lat": 35.05, "lng": -89.95},
            "accuracy": 1,
            "accuracy_type": "rooftop",
            "address_components": {
                "number": "3763",
                "formatted_street": "Saginaw Ave",
                "city": "Memphis",
                "county": "Shelby County",
                "state": "TN",
                "zip": "38118",
            },
        }
    ]
}


def client_for(handler):
    return GeocodioClient("geo-key", transport=httpx.MockTransport(handler))


class TestGeocodioClient:
    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json=RESULT)

        response = await client_for(handler).call(FIELDS)

        assert response.success
        assert response.data["house_number"] == "3763"
        assert response.data["street"] == "Saginaw Ave"
        assert response.data["county"] == "Shelby County"
        assert response.data["neighborhood"] == ""
        assert response.data["confidence"] == 1
        assert seen["path"] == "/v1.7/geocode"
        assert seen["params"]["q"] == "3763 Saginaw Avenue, 38118, Memphis"
        assert seen["params"]["api_key"] == "geo-key"

    @pytest.mark.asyncio
    async def test_empty_results(self):
        response = await client_for(lambda request: httpx.Response(200, json={"results": []})).call(FIELDS)
        assert response.error_kind == ProviderErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_forbidden(self):
        response = await client_for(lambda request: httpx.Response(403)).call(FIELDS)
        assert response.error_kind == ProviderErrorKind.AUTHORIZATION
        assert response.error == "Geocodio API key does not have sufficient permissions"

    @pytest.mark.asyncio
    async def test_unprocessable(self):
        response = await client_for(lambda request: httpx.Response(422, json={"error": "Could not geocode"})).call(FIELDS)
        assert response.error_kind == ProviderErrorKind.MALFORMED_REQUEST

    def test_missing_location(self):
        response = GeocodioClient.parse({"results": [{"formatted_address": "x"}]})
        assert response.error_kind == ProviderErrorKind.INVALID_RESPONSE
