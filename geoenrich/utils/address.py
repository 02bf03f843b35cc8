"""US street address helpers: dedup keys, query strings and house numbers."""

import re

_WHITESPACE = re.compile(r"\s+")
_HOUSE_NUMBER = re.compile(r"^(\d+)\s+(.+?)(?:,|$)")


def normalize_key(raw: str | None) -> str:
    """
    Canonical dedup / cache key for an address.

    Lowercases, trims and collapses runs of whitespace to one space.
    Textual variants of the same place ("St" vs "Street") stay distinct keys.
    """
    if not raw:
        return ""
    return _WHITESPACE.sub(" ", raw.strip().lower())


def compose_full_address(fields) -> str:
    """Join address, zip, city and county into the provider query string, skipping blanks."""
    parts = [fields.address, fields.zip, fields.city, fields.county]
    return ", ".join(p.strip() for p in parts if p and p.strip())


def extract_house_number(address: str | None, formatted_address: str | None = None) -> tuple[str, str]:
    """
    Return (house_number, street) from the leading digits of an address.

    Falls back to the provider's formatted address when the input has none.
    """
    for candidate in (address, formatted_address):
        if not candidate:
            continue
        match = _HOUSE_NUMBER.match(candidate.strip())
        if match:
            return match.group(1), match.group(2).strip()
    return "", ""


def truncate(text: str, length: int = 60) -> str:
    """Shorten an address for log context."""
    return text if len(text) <= length else text[: length - 3] + "..."
