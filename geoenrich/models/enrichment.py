"""Domain types shared by providers, orchestrator, scheduler and run layer."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

# Canonical "no data" sentinel for neighborhood / community
NONE_VALUE = "N/A"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ResultStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class FieldSource(str, Enum):
    PRIMARY = "primary"
    TEXT_ENRICHMENT = "text_enrichment"
    HEURISTIC = "heuristic"
    NONE = "none"


class ProviderErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    MALFORMED_REQUEST = "malformed_request"
    AUTHORIZATION = "authorization"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"
    CONFIGURATION = "configuration"
    QUOTA_EXCEEDED = "quota_exceeded"
    CIRCUIT_OPEN = "circuit_open"
    INVALID_RESPONSE = "invalid_response"


@dataclass(frozen=True)
class ColumnMapping:
    """Which row fields hold the address parts. Detection happens upstream."""

    address: str
    zip: str | None = None
    city: str | None = None
    county: str | None = None


@dataclass(frozen=True)
class AddressFields:
    address: str
    zip: str = ""
    city: str = ""
    county: str = ""

    @property
    def full_address(self) -> str:
        from geoenrich.utils.address import compose_full_address

        return compose_full_address(self)


@dataclass(frozen=True)
class AddressRecord:
    """One input row plus the address parts read out of it."""

    row_index: int
    row: dict[str, Any]
    fields: AddressFields

    @classmethod
    def from_row(cls, row_index: int, row: dict[str, Any], columns: ColumnMapping) -> "AddressRecord":
        def _read(column: str | None) -> str:
            if not column:
                return ""
            value = row.get(column)
            return "" if value is None else str(value).strip()

        return cls(
            row_index=row_index,
            row=dict(row),
            fields=AddressFields(
                address=_read(columns.address),
                zip=_read(columns.zip),
                city=_read(columns.city),
                county=_read(columns.county),
            ),
        )


@dataclass
class WorkUnit:
    """A unique normalized address and every row that shares it."""

    index: int
    key: str
    fields: AddressFields
    row_indices: list[int] = field(default_factory=list)


@dataclass
class ProviderResponse:
    """Uniform outcome of one provider call. Clients return this, never raise."""

    provider: str
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_kind: ProviderErrorKind | None = None
    status_code: int | None = None
    retry_after: float | None = None
    from_cache: bool = False

    @classmethod
    def ok(cls, provider: str, **data: Any) -> "ProviderResponse":
        return cls(provider=provider, success=True, data=data)

    @classmethod
    def fail(
        cls,
        provider: str,
        kind: ProviderErrorKind,
        error: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> "ProviderResponse":
        return cls(
            provider=provider,
            success=False,
            error=error,
            error_kind=kind,
            status_code=status_code,
            retry_after=retry_after,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["error_kind"] = self.error_kind.value if self.error_kind else None
        payload.pop("from_cache")
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ProviderResponse":
        kind = payload.get("error_kind")
        return cls(
            provider=payload["provider"],
            success=bool(payload["success"]),
            data=dict(payload.get("data") or {}),
            error=payload.get("error"),
            error_kind=ProviderErrorKind(kind) if kind else None,
            status_code=payload.get("status_code"),
            retry_after=payload.get("retry_after"),
            from_cache=True,
        )


@dataclass
class EnrichmentResult:
    status: ResultStatus
    key: str = ""
    formatted_address: str = ""
    latitude: float | None = None
    longitude: float | None = None
    neighborhood: str = NONE_VALUE
    community: str = NONE_VALUE
    neighborhood_source: FieldSource = FieldSource.NONE
    community_source: FieldSource = FieldSource.NONE
    provider_chain: list[str] = field(default_factory=list)
    error: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)
    house_number: str = ""
    street: str = ""
    confidence: float | None = None
    locality: str = ""
    postcode: str = ""
    row_index: int | None = None
    row: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.status == ResultStatus.ERROR:
            self.neighborhood = NONE_VALUE
            self.community = NONE_VALUE
            self.neighborhood_source = FieldSource.NONE
            self.community_source = FieldSource.NONE

    @classmethod
    def failure(cls, key: str, message: str, provider_chain: list[str] | None = None) -> "EnrichmentResult":
        return cls(
            status=ResultStatus.ERROR,
            key=key,
            error=message,
            provider_chain=list(provider_chain or []),
        )

    @property
    def is_success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        payload["neighborhood_source"] = self.neighborhood_source.value
        payload["community_source"] = self.community_source.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EnrichmentResult":
        data = dict(payload)
        data["status"] = ResultStatus(data["status"])
        data["neighborhood_source"] = FieldSource(data.get("neighborhood_source", "none"))
        data["community_source"] = FieldSource(data.get("community_source", "none"))
        data["provider_chain"] = list(data.get("provider_chain") or [])
        data["row"] = dict(data.get("row") or {})
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in known})
