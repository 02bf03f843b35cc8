"""Best-effort community guess derived from a neighborhood name.

Florida subdivisions are frequently marketed under the same name as the
surrounding neighborhood ("Ives Estates", "Pine Ridge"). When the model
returns no community, a neighborhood whose name ends in one of these
development keywords is reused as the community and tagged as heuristic.
"""

import re

from geoenrich.models.enrichment import NONE_VALUE

DEVELOPMENT_KEYWORDS = (
    "Estates", "Estate", "Lakes", "Lake", "Gardens", "Garden", "Village", "Villas",
    "Park", "Heights", "Shores", "Isles", "Island", "Pointe", "Point", "Ridge",
    "Woods", "Manor", "Acres", "Hills", "Landing", "Preserve", "Club", "Bay",
    "Harbor", "Harbour", "Cove", "Grove", "Oaks", "Pines", "Palms", "Plantation",
    "Trace", "Crossing", "Commons", "Meadows", "Springs", "Creek", "Glen",
)

_KEYWORD_PATTERN = re.compile(
    r"\b(" + "|".join(DEVELOPMENT_KEYWORDS) + r")\b", re.IGNORECASE
)


def looks_like_development(name: str) -> bool:
    return bool(_KEYWORD_PATTERN.search(name or ""))


def community_from_neighborhood(neighborhood: str) -> str:
    """Return the neighborhood as a community stand-in, or NONE_VALUE."""
    if not neighborhood or neighborhood == NONE_VALUE:
        return NONE_VALUE
    return neighborhood if looks_like_development(neighborhood) else NONE_VALUE
