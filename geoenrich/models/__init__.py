from geoenrich.models.kv_entry import KVEntry
from geoenrich.models.enrichment import (
    NONE_VALUE,
    AddressFields,
    AddressRecord,
    ColumnMapping,
    EnrichmentResult,
    FieldSource,
    ProviderErrorKind,
    ProviderResponse,
    ResultStatus,
    WorkUnit,
)

__all__ = [
    "KVEntry",
    "NONE_VALUE",
    "AddressFields",
    "AddressRecord",
    "ColumnMapping",
    "EnrichmentResult",
    "FieldSource",
    "ProviderErrorKind",
    "ProviderResponse",
    "ResultStatus",
    "WorkUnit",
]
