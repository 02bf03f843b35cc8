"""Durable progress snapshots for interrupted runs.

A snapshot is written every few completed units and deleted when a run
finishes. On startup a well-formed snapshot younger than the max age is
*offered* to the operator, who picks resume, discard, or export-then-discard.
It is never applied automatically.
"""

import atexit
import signal
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from geoenrich.errors import StorageError
from geoenrich.models.enrichment import EnrichmentResult
from geoenrich.services.kv_store import KeyValueStore
from geoenrich.utils.csv_export import results_to_csv

logger = structlog.get_logger()

CHECKPOINT_KEY = "checkpoint:current"


@dataclass
class CheckpointSnapshot:
    source_id: str
    cursor: int
    total_units: int
    total_rows: int = 0
    completed_units: list[int] = field(default_factory=list)
    results: list[dict[str, Any]] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CheckpointSnapshot":
        return cls(
            source_id=payload["source_id"],
            cursor=payload["cursor"],
            total_units=payload["total_units"],
            total_rows=payload.get("total_rows", 0),
            completed_units=list(payload.get("completed_units") or []),
            results=list(payload.get("results") or []),
            stats=dict(payload.get("stats") or {}),
            timestamp=payload["timestamp"],
        )

    @property
    def saved_at(self) -> datetime:
        return datetime.fromisoformat(self.timestamp)

    def enrichment_results(self) -> list[EnrichmentResult]:
        return [EnrichmentResult.from_dict(r) for r in self.results]


def validate_snapshot(payload: Any) -> str | None:
    """Return why a stored snapshot is unusable, or None when it is well formed."""
    if not isinstance(payload, dict):
        return "not an object"
    if not payload.get("source_id"):
        return "missing source_id"
    cursor = payload.get("cursor")
    total = payload.get("total_units")
    if not isinstance(cursor, int) or isinstance(cursor, bool):
        return "missing cursor"
    if not isinstance(total, int) or total <= 0:
        return "no units"
    if not 0 <= cursor <= total:
        return "cursor out of range"
    completed = payload.get("completed_units")
    if not isinstance(completed, list) or len(completed) != cursor:
        return "completed units do not match cursor"
    if not isinstance(payload.get("results"), list):
        return "missing results"
    try:
        saved_at = datetime.fromisoformat(payload.get("timestamp", ""))
    except (TypeError, ValueError):
        return "bad timestamp"
    if saved_at.tzinfo is None:
        return "bad timestamp"
    return None


@dataclass
class RecoveryOffer:
    snapshot: CheckpointSnapshot
    age: timedelta

    def summary(self) -> dict[str, Any]:
        s = self.snapshot
        return {
            "available": True,
            "source_id": s.source_id,
            "cursor": s.cursor,
            "total_units": s.total_units,
            "total_rows": s.total_rows,
            "results": len(s.results),
            "progress": round(s.cursor / s.total_units * 100, 1),
            "saved_at": s.timestamp,
            "age_hours": round(self.age.total_seconds() / 3600, 1),
            "stats": s.stats,
        }


class CheckpointStore:
    def __init__(
        self,
        store: KeyValueStore,
        max_age_days: float = 7,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._store = store
        self.max_age = timedelta(days=max_age_days)
        self._clock = clock
        self._last_cursor: dict[str, int] = {}

    async def save(self, snapshot: CheckpointSnapshot, run_id: str | None = None) -> bool:
        """Persist ``snapshot``. Within one run the cursor never moves backwards."""
        if run_id is not None:
            last = self._last_cursor.get(run_id, -1)
            if snapshot.cursor < last:
                logger.warning("Refusing to move checkpoint backwards", run_id=run_id, cursor=snapshot.cursor, last=last)
                return False
        try:
            await self._store.set(CHECKPOINT_KEY, snapshot.to_dict())
        except StorageError as e:
            logger.warning("Checkpoint write failed", error=str(e))
            return False
        if run_id is not None:
            self._last_cursor[run_id] = snapshot.cursor
        logger.debug("Checkpoint saved", source_id=snapshot.source_id, cursor=snapshot.cursor, total=snapshot.total_units)
        return True

    def save_sync(self, snapshot: CheckpointSnapshot) -> bool:
        """Blocking best-effort write for process shutdown."""
        try:
            self._store.set_sync(CHECKPOINT_KEY, snapshot.to_dict())
        except StorageError as e:
            logger.warning("Emergency checkpoint failed", error=str(e))
            return False
        logger.info("Emergency checkpoint saved", source_id=snapshot.source_id, cursor=snapshot.cursor)
        return True

    async def load(self) -> CheckpointSnapshot | None:
        try:
            payload = await self._store.get(CHECKPOINT_KEY)
        except StorageError as e:
            logger.warning("Checkpoint read failed", error=str(e))
            return None
        if payload is None:
            return None

        reason = validate_snapshot(payload)
        if reason:
            logger.warning("Discarding invalid checkpoint", reason=reason)
            await self.discard()
            return None
        return CheckpointSnapshot.from_dict(payload)

    async def offer(self) -> RecoveryOffer | None:
        """A resumable snapshot, if one exists and is recent enough."""
        snapshot = await self.load()
        if snapshot is None:
            return None
        age = self._clock() - snapshot.saved_at
        if age > self.max_age:
            logger.info("Discarding expired checkpoint", age_days=round(age.total_seconds() / 86400, 1))
            await self.discard()
            return None
        return RecoveryOffer(snapshot=snapshot, age=age)

    async def discard(self) -> None:
        self._last_cursor.clear()
        try:
            await self._store.delete(CHECKPOINT_KEY)
        except StorageError as e:
            logger.warning("Checkpoint delete failed", error=str(e))

    async def export_partial(self) -> str | None:
        """CSV of the offered snapshot's results, then discard it."""
        offer = await self.offer()
        if offer is None:
            return None
        content = results_to_csv(offer.snapshot.enrichment_results())
        await self.discard()
        logger.info("Partial results exported", rows=len(offer.snapshot.results))
        return content


_emergency_hooks: list[Callable[[], None]] = []
_signal_installed = False


def _run_emergency_hooks() -> None:
    for hook in list(_emergency_hooks):
        try:
            hook()
        except Exception as e:
            logger.error("Emergency snapshot hook failed", error=str(e))


def register_emergency_snapshot(hook: Callable[[], None]) -> None:
    """Run ``hook`` once on interpreter exit or SIGTERM."""
    global _signal_installed
    if hook not in _emergency_hooks:
        _emergency_hooks.append(hook)
    if _signal_installed:
        return
    atexit.register(_run_emergency_hooks)

    try:
        previous = signal.getsignal(signal.SIGTERM)

        def _on_sigterm(signum, frame):
            _run_emergency_hooks()
            _emergency_hooks.clear()
            if callable(previous):
                previous(signum, frame)
            else:
                raise SystemExit(128 + signum)

        signal.signal(signal.SIGTERM, _on_sigterm)
    except ValueError:
        # Not in the main thread
        pass
    _signal_installed = True


def unregister_emergency_snapshot(hook: Callable[[], None]) -> None:
    if hook in _emergency_hooks:
        _emergency_hooks.remove(hook)
