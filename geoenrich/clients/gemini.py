"""
Google Gemini client (text-enrichment provider).

API Documentation: https://ai.google.dev/api/generate-content
Base URL: https://generativelanguage.googleapis.com
Authentication: key query parameter

The model is asked for neighborhood / community names of an address and
answers in free text. This client only returns that text; extraction is
done by ``geoenrich.utils.response_cleaner``.
"""

from typing import Any

from geoenrich.clients.base_client import BaseAPIClient
from geoenrich.models.enrichment import AddressFields, ProviderErrorKind, ProviderResponse

MODE_FULL = "full"
MODE_COMMUNITY_ONLY = "community_only"

GENERATION_CONFIG = {
    "temperature": 0.1,
    "topK": 10,
    "topP": 0.8,
    "maxOutputTokens": 300,
}

RESPONSE_FORMAT = '{"neighborhood": "<name or N/A>", "community": "<name or N/A>"}'


def build_prompt(
    fields: AddressFields,
    mode: str = MODE_FULL,
    neighborhood: str | None = None,
    latitude: float | None = None,
    longitude: float | None = None,
    reinforced: bool = False,
) -> str:
    lines = [
        "You enrich US property records with local place names.",
        f"Address: {fields.full_address}",
    ]
    if latitude is not None and longitude is not None:
        lines.append(f"Coordinates: {latitude:.6f}, {longitude:.6f}")

    if mode == MODE_COMMUNITY_ONLY and neighborhood:
        lines.append(f"The neighborhood is already known: {neighborhood}.")
        lines.append("Identify only the subdivision or community this property belongs to.")
    else:
        lines.append("Identify the general neighborhood and the specific subdivision or community.")

    lines.append("Give names as they appear in official records, without section, phase or unit numbers.")
    if reinforced:
        lines.append(
            "If no exact record exists, give the most plausible name used locally for this area. "
            "Only answer N/A when nothing reasonable can be offered."
        )
    else:
        lines.append("Answer N/A for a field you cannot determine.")
    lines.append(f"Respond with JSON only: {RESPONSE_FORMAT}")
    return "\n".join(lines)


class GeminiClient(BaseAPIClient):
    """Gemini generateContent wrapper returning raw model text."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash",
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 15.0,
        transport=None,
    ):
        super().__init__(
            base_url=base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )
        self._api_key = api_key
        self.model = model

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def call(self, fields: AddressFields, **hints: Any) -> ProviderResponse:
        """
        Ask the model about one address.

        Hints: ``mode`` (full | community_only), ``neighborhood``,
        ``latitude``, ``longitude``, ``reinforced``.
        """
        if not self.configured:
            return self._not_configured()

        prompt = build_prompt(
            fields,
            mode=hints.get("mode", MODE_FULL),
            neighborhood=hints.get("neighborhood"),
            latitude=hints.get("latitude"),
            longitude=hints.get("longitude"),
            reinforced=hints.get("reinforced", False),
        )
        payload, failure = await self._request(
            "POST",
            f"/v1beta/models/{self.model}:generateContent",
            params={"key": self._api_key},
            json={
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": GENERATION_CONFIG,
            },
        )
        if failure:
            return failure
        return self.parse(payload)

    @classmethod
    def parse(cls, payload: Any) -> ProviderResponse:
        candidates = payload.get("candidates") if isinstance(payload, dict) else None
        if not candidates:
            return ProviderResponse.fail(cls.name, ProviderErrorKind.INVALID_RESPONSE, "No candidates returned")

        candidate = candidates[0]
        if candidate.get("finishReason") == "SAFETY":
            return ProviderResponse.fail(
                cls.name, ProviderErrorKind.INVALID_RESPONSE, "Response blocked by safety filters"
            )

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        if not text.strip():
            return ProviderResponse.fail(cls.name, ProviderErrorKind.INVALID_RESPONSE, "Empty response text")

        return ProviderResponse.ok(cls.name, text=text, finish_reason=candidate.get("finishReason", ""))
