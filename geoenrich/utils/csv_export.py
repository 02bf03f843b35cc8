import csv
import io
from collections.abc import Iterable

from geoenrich.models.enrichment import EnrichmentResult

ENRICHMENT_COLUMNS = [
    "house_number",
    "formatted_address",
    "latitude",
    "longitude",
    "neighborhood",
    "neighborhood_source",
    "community",
    "community_source",
    "confidence",
    "status",
    "error",
    "provider_chain",
]


def results_to_csv(results: Iterable[EnrichmentResult]) -> str:
    """Original row fields first (in first-seen order), then enrichment columns."""
    results = sorted(
        (r for r in results if r is not None),
        key=lambda r: r.row_index if r.row_index is not None else -1,
    )

    row_columns: list[str] = []
    seen = set()
    for r in results:
        for column in r.row:
            if column not in seen:
                seen.add(column)
                row_columns.append(column)
    enrichment_columns = [c for c in ENRICHMENT_COLUMNS if c not in seen]

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(row_columns + enrichment_columns)

    for r in results:
        payload = r.to_dict()
        payload["provider_chain"] = " > ".join(r.provider_chain)
        writer.writerow(
            [r.row.get(c, "") for c in row_columns]
            + ["" if payload.get(c) is None else payload.get(c) for c in enrichment_columns]
        )

    csv_content = output.getvalue()
    output.close()
    return csv_content
