"""Extract neighborhood / community names from free-form model output.

The text-generation provider is asked for a small JSON object but returns
whatever it likes: fenced code blocks, prose around the object, Spanish keys,
or placeholders such as "No disponible". Everything here is synchronous and
pure so it can run between awaits without yielding.
"""

import json
import re
from dataclasses import dataclass

from geoenrich.models.enrichment import NONE_VALUE

_FENCE = re.compile(r"```(?:json)?\n?", re.IGNORECASE)
_JSON_OBJECT = re.compile(r'\{[^}]*"neighborhood"[^}]*"community"[^}]*\}', re.DOTALL)

_FIELD_PATTERNS = {
    "neighborhood": re.compile(r'"neighborhood"\s*:\s*"([^"]+)"'),
    "community": re.compile(r'"community"\s*:\s*"([^"]+)"'),
}
_LOOSE_PATTERNS = {
    "neighborhood": re.compile(r"""(?:neighborhood|vecindario)['":\s]*["']([^"']+?)["']""", re.IGNORECASE),
    "community": re.compile(r"""(?:community|comunidad|subdivision)['":\s]*["']([^"']+?)["']""", re.IGNORECASE),
}

# Matched against the whole value
NO_DATA_TOKENS = frozenset({
    "", "n/a", "na", "none", "null", "undefined", "unknown", "no data",
    "not available", "no disponible", "no encontrado", "no específico", "no especifico",
})
# Matched anywhere inside the value
NO_DATA_PHRASES = (
    "no disponible", "no data", "not available", "no encontrado",
    "no específico", "no especifico", "not found",
)

SUFFIX_PATTERNS = [
    re.compile(r"\s+(Sec|Section)\s+\d+[A-Z]*", re.IGNORECASE),
    re.compile(r"\s+(Phase|Ph)\s+\d+[A-Z]*", re.IGNORECASE),
    re.compile(r"\s+\d+(st|nd|rd|th)\s+(Sec|Section)", re.IGNORECASE),
    re.compile(r"\s+(Unit|Tract)\s+\d+[A-Z]*", re.IGNORECASE),
    re.compile(r"\s+(Plat|Block)\s+\d+[A-Z]*", re.IGNORECASE),
    re.compile(r"\s+(Addition|Add)\b\s*\d*", re.IGNORECASE),
    re.compile(r"\s+(Subdivision|Sub)\b\s*\d*", re.IGNORECASE),
    re.compile(r"\s+(Parcel|Lot)\s+\d+[A-Z]*", re.IGNORECASE),
]


@dataclass
class ParsedEnrichment:
    neighborhood: str = NONE_VALUE
    community: str = NONE_VALUE
    method: str = "none"

    @property
    def both_missing(self) -> bool:
        return self.neighborhood == NONE_VALUE and self.community == NONE_VALUE


def strip_fences(text: str) -> str:
    """Remove markdown code fences and flatten newlines."""
    return _FENCE.sub("", text or "").replace("\r", " ").replace("\n", " ").strip()


def is_no_data(value: str | None) -> bool:
    if value is None:
        return True
    lowered = value.strip().lower()
    if lowered in NO_DATA_TOKENS:
        return True
    return any(phrase in lowered for phrase in NO_DATA_PHRASES)


def strip_admin_suffixes(name: str) -> str:
    """
    Drop plat / section / phase style qualifiers from a place name.

    "Highland Lakes Sec 1" -> "Highland Lakes"
    "Cresthaven 6th Sec" -> "Cresthaven"
    """
    cleaned = name.strip()
    for pattern in SUFFIX_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def clean_field(value) -> str:
    """Map placeholders to NONE_VALUE and strip suffixes from real names."""
    if not isinstance(value, str) or is_no_data(value):
        return NONE_VALUE
    cleaned = strip_admin_suffixes(value)
    return cleaned if cleaned and not is_no_data(cleaned) else NONE_VALUE


def _parse_json_object(text: str) -> dict | None:
    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _extract(patterns: dict[str, re.Pattern], text: str) -> dict[str, str]:
    found = {}
    for name, pattern in patterns.items():
        match = pattern.search(text)
        if match:
            found[name] = match.group(1)
    return found


def parse_enrichment_text(raw: str | None) -> ParsedEnrichment:
    """
    Pull neighborhood and community out of model output.

    Tries, in order: a JSON object holding both keys, per-field JSON-style
    patterns, then loose bilingual key/value patterns. Values are cleaned
    with ``clean_field``.
    """
    text = strip_fences(raw or "")
    if not text:
        return ParsedEnrichment()

    values: dict | None = _parse_json_object(text)
    method = "json"
    if values is None:
        values = _extract(_FIELD_PATTERNS, text)
        method = "field_pattern"
    if not values:
        values = _extract(_LOOSE_PATTERNS, text)
        method = "loose"
    if not values:
        return ParsedEnrichment()

    return ParsedEnrichment(
        neighborhood=clean_field(values.get("neighborhood")),
        community=clean_field(values.get("community")),
        method=method,
    )
