"""Running counters for one enrichment run."""

import time
from collections import Counter
from typing import Any

from geoenrich.models.enrichment import EnrichmentResult, FieldSource


class StatsAggregator:
    def __init__(self, total_units: int = 0, clock=time.monotonic):
        self._clock = clock
        self.total_units = total_units
        self.total_processed = 0
        self.success_count = 0
        self.error_count = 0
        self.cache_hit_count = 0
        self.provider_calls: Counter[str] = Counter()
        self.provider_failures: Counter[str] = Counter()
        self.rate_limit_events: Counter[str] = Counter()
        self.heuristic_count = 0
        self._started_at: float | None = None
        # Units restored from a checkpoint don't count toward throughput
        self._restored = 0

    def start(self, total_units: int) -> None:
        self.total_units = total_units
        self._started_at = self._clock()

    def record_result(self, result: EnrichmentResult) -> None:
        self.total_processed += 1
        if result.is_success:
            self.success_count += 1
        else:
            self.error_count += 1
        if result.community_source == FieldSource.HEURISTIC:
            self.heuristic_count += 1

    def record_call(self, provider: str, success: bool) -> None:
        self.provider_calls[provider] += 1
        if not success:
            self.provider_failures[provider] += 1

    def record_cache_hit(self, provider: str) -> None:
        self.cache_hit_count += 1

    def record_rate_limited(self, provider: str) -> None:
        self.rate_limit_events[provider] += 1

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        return max(self._clock() - self._started_at, 0.0)

    @property
    def throughput(self) -> float:
        """Units per second processed in this session."""
        elapsed = self.elapsed_seconds
        fresh = self.total_processed - self._restored
        return fresh / elapsed if elapsed > 0 and fresh > 0 else 0.0

    @property
    def success_rate(self) -> float:
        return self.success_count / self.total_processed if self.total_processed else 0.0

    @property
    def eta_seconds(self) -> float | None:
        rate = self.throughput
        if rate <= 0:
            return None
        return max(self.total_units - self.total_processed, 0) / rate

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_units": self.total_units,
            "total_processed": self.total_processed,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "cache_hit_count": self.cache_hit_count,
            "heuristic_count": self.heuristic_count,
            "per_provider_counts": dict(self.provider_calls),
            "per_provider_failures": dict(self.provider_failures),
            "rate_limit_events": dict(self.rate_limit_events),
            "elapsed_seconds": round(self.elapsed_seconds, 2),
            "throughput": round(self.throughput, 3),
            "success_rate": round(self.success_rate, 4),
            "eta_seconds": round(self.eta_seconds, 1) if self.eta_seconds is not None else None,
        }

    def restore(self, snapshot: dict[str, Any]) -> None:
        """Continue counting from a checkpoint's stats."""
        self.total_processed = int(snapshot.get("total_processed", 0))
        self.success_count = int(snapshot.get("success_count", 0))
        self.error_count = int(snapshot.get("error_count", 0))
        self.cache_hit_count = int(snapshot.get("cache_hit_count", 0))
        self.heuristic_count = int(snapshot.get("heuristic_count", 0))
        self.provider_calls = Counter(snapshot.get("per_provider_counts") or {})
        self.provider_failures = Counter(snapshot.get("per_provider_failures") or {})
        self.rate_limit_events = Counter(snapshot.get("rate_limit_events") or {})
        self._restored = self.total_processed
