"""Enrichment runs as background asyncio tasks.

Includes:
- RunContext: everything one run shares (store, cache, quota, stats, events,
  circuit breakers, retry controller, providers, stop flag)
- EnrichmentRun: rows in, one result per row out, with checkpoints and resume
- RunManager: starts runs in the background and keeps track of them
"""

import asyncio
import dataclasses
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import structlog

from geoenrich.clients.gemini import GeminiClient
from geoenrich.clients.geocodio import GeocodioClient
from geoenrich.clients.mapbox import MapboxClient
from geoenrich.config import Settings
from geoenrich.errors import CheckpointMismatchError, RowSourceError, RunInProgressError
from geoenrich.models.enrichment import AddressRecord, ColumnMapping, EnrichmentResult, WorkUnit
from geoenrich.services import events as ev
from geoenrich.services.checkpoint_store import (
    CheckpointSnapshot,
    CheckpointStore,
    register_emergency_snapshot,
    unregister_emergency_snapshot,
)
from geoenrich.services.circuit_breaker import CircuitBreaker
from geoenrich.services.events import EventBus
from geoenrich.services.kv_store import KeyValueStore
from geoenrich.services.orchestrator import EnrichmentOrchestrator
from geoenrich.services.quota_governor import QuotaGovernor
from geoenrich.services.result_cache import ResultCache
from geoenrich.services.retry_controller import RetryController
from geoenrich.services.stats import StatsAggregator
from geoenrich.tasks.scheduler import WorkScheduler, build_work_units

logger = structlog.get_logger()


def read_records(rows: Iterable[dict[str, Any]], columns: ColumnMapping) -> list[AddressRecord]:
    """Turn row-source rows into AddressRecords. Unreadable input raises RowSourceError."""
    try:
        rows = list(rows)
    except Exception as e:
        raise RowSourceError(f"Could not read rows: {e}") from e
    if not all(isinstance(row, dict) for row in rows):
        raise RowSourceError("Every row must be an object of named fields")
    if rows and not any(columns.address in row for row in rows):
        raise RowSourceError(f"Address column '{columns.address}' not found")
    return [AddressRecord.from_row(i, row, columns) for i, row in enumerate(rows)]


def default_providers(settings: Settings, transport=None) -> dict[str, Any]:
    timeout = settings.provider_timeout_seconds
    return {
        "primary": MapboxClient(settings.mapbox_access_token, settings.mapbox_base_url, timeout=timeout, transport=transport),
        "fallback": GeocodioClient(settings.geocodio_api_key, settings.geocodio_base_url, timeout=timeout, transport=transport),
        "text_provider": GeminiClient(
            settings.gemini_api_key,
            model=settings.gemini_model,
            base_url=settings.gemini_base_url,
            timeout=timeout,
            transport=transport,
        ),
    }


@dataclass
class RunContext:
    settings: Settings
    store: KeyValueStore
    primary: Any
    fallback: Any
    text_provider: Any
    quota: QuotaGovernor
    cache: ResultCache
    checkpoints: CheckpointStore
    events: EventBus = field(default_factory=EventBus)
    stats: StatsAggregator = field(default_factory=StatsAggregator)
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    retry: RetryController | None = None
    sleep: Any = asyncio.sleep

    @classmethod
    def build(
        cls,
        settings: Settings,
        store: KeyValueStore,
        quota: QuotaGovernor | None = None,
        checkpoints: CheckpointStore | None = None,
        sleep=asyncio.sleep,
        **providers: Any,
    ) -> "RunContext":
        clients = default_providers(settings)
        clients.update({k: v for k, v in providers.items() if v is not None})

        quota = quota or QuotaGovernor(store, settings.provider_limits(), debounce_ms=settings.quota_debounce_ms)
        context = cls(
            settings=settings,
            store=store,
            primary=clients["primary"],
            fallback=clients["fallback"],
            text_provider=clients["text_provider"],
            quota=quota,
            cache=ResultCache(store),
            checkpoints=checkpoints or CheckpointStore(store, max_age_days=settings.checkpoint_max_age_days),
            sleep=sleep,
        )
        context.breakers = {
            client.name: CircuitBreaker(client.name, settings.auth_failure_threshold)
            for client in (context.primary, context.fallback, context.text_provider)
        }
        context.retry = RetryController(
            quota=quota,
            cache=context.cache,
            stats=context.stats,
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            transient_delay=settings.transient_retry_delay_seconds,
            max_retry_after=settings.retry_after_max_seconds,
            sleep=sleep,
        )
        quota.on_limit_reached = lambda provider, used, limit: context.events.emit(
            ev.LIMIT_REACHED, provider=provider, used=used, limit=limit
        )
        return context

    def orchestrator(self) -> EnrichmentOrchestrator:
        return EnrichmentOrchestrator(
            primary=self.primary,
            fallback=self.fallback,
            text_provider=self.text_provider,
            retry=self.retry,
            breakers=self.breakers,
            geocode_ttl_days=self.settings.geocode_cache_ttl_days,
            enrichment_ttl_days=self.settings.enrichment_cache_ttl_days,
            enable_heuristic=self.settings.enable_community_heuristic,
        )

    def provider_status(self) -> dict[str, dict[str, Any]]:
        return {
            client.name: {
                "configured": client.configured,
                "circuit": self.breakers[client.name].state.value if client.name in self.breakers else "closed",
            }
            for client in (self.primary, self.fallback, self.text_provider)
        }

    async def close(self) -> None:
        for client in (self.primary, self.fallback, self.text_provider):
            close = getattr(client, "close", None)
            if close is not None:
                await close()


class EnrichmentRun:
    def __init__(
        self,
        source_id: str,
        records: list[AddressRecord],
        context: RunContext,
        run_id: str | None = None,
        resume_from: CheckpointSnapshot | None = None,
    ):
        self.id = run_id or str(uuid.uuid4())
        self.source_id = source_id
        self.records = records
        self.context = context
        self.units: list[WorkUnit] = build_work_units(records)
        self.results: list[EnrichmentResult | None] = [None] * len(records)
        self.completed_units: list[int] = []
        self.resume_from = resume_from
        self.status = "pending"
        self.error: str | None = None
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self._lock = asyncio.Lock()
        self._orchestrator = context.orchestrator()
        self.orchestrator_calls = 0
        if resume_from is not None:
            self._apply_resume(resume_from)

    @property
    def total_units(self) -> int:
        return len(self.units)

    @property
    def cursor(self) -> int:
        return len(self.completed_units)

    def stop(self) -> None:
        logger.info("Stop requested", run_id=self.id, cursor=self.cursor, total=self.total_units)
        self.context.stop_event.set()

    def snapshot(self) -> CheckpointSnapshot:
        return CheckpointSnapshot(
            source_id=self.source_id,
            cursor=self.cursor,
            total_units=self.total_units,
            total_rows=len(self.records),
            completed_units=list(self.completed_units),
            results=[r.to_dict() for r in self.results if r is not None],
            stats=self.context.stats.snapshot(),
        )

    def status_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "status": self.status,
            "current": self.cursor,
            "total": self.total_units,
            "rows": len(self.records),
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stats": self.context.stats.snapshot(),
            "providers": self.context.provider_status(),
        }

    def _apply_resume(self, snapshot: CheckpointSnapshot) -> None:
        if snapshot.source_id != self.source_id or snapshot.total_units != self.total_units:
            raise CheckpointMismatchError(self.source_id, snapshot.source_id)
        for payload in snapshot.results:
            result = EnrichmentResult.from_dict(payload)
            if result.row_index is not None and 0 <= result.row_index < len(self.results):
                self.results[result.row_index] = result
        self.completed_units = list(snapshot.completed_units)
        self.context.stats.restore(snapshot.stats)
        logger.info("Resuming from checkpoint", run_id=self.id, cursor=snapshot.cursor, total=snapshot.total_units)

    def _fill_missing_addresses(self) -> None:
        for record in self.records:
            if not record.fields.address and self.results[record.row_index] is None:
                result = EnrichmentResult.failure("", "Missing address")
                result.row_index = record.row_index
                result.row = record.row
                self.results[record.row_index] = result

    async def _enrich(self, unit: WorkUnit) -> EnrichmentResult:
        self.orchestrator_calls += 1
        return await self._orchestrator.enrich(unit)

    async def _record(self, unit: WorkUnit, result: EnrichmentResult) -> None:
        async with self._lock:
            for row_index in unit.row_indices:
                row_result = dataclasses.replace(
                    result,
                    row_index=row_index,
                    row=self.records[row_index].row,
                    provider_chain=list(result.provider_chain),
                )
                self.results[row_index] = row_result
                self.context.events.emit(ev.RESULT, result=row_result)

            self.completed_units.append(unit.index)
            self.context.stats.record_result(result)
            self.context.events.emit(ev.PROGRESS, current=self.cursor, total=self.total_units)

            interval = self.context.settings.checkpoint_interval
            if interval > 0 and self.cursor % interval == 0:
                await self.context.checkpoints.save(self.snapshot(), run_id=self.id)

    def _emergency_save(self) -> None:
        if self.status == "running":
            self.context.checkpoints.save_sync(self.snapshot())

    async def run(self) -> list[EnrichmentResult | None]:
        """Process every pending unit. Returns one result per input row."""
        self.status = "running"
        self.started_at = datetime.now(timezone.utc)
        settings = self.context.settings

        self._fill_missing_addresses()

        done = set(self.completed_units)
        pending = [u for u in self.units if u.index not in done]
        self.context.stats.start(self.total_units)
        logger.info(
            "Enrichment run started",
            run_id=self.id,
            source_id=self.source_id,
            rows=len(self.records),
            units=self.total_units,
            pending=len(pending),
        )

        scheduler = WorkScheduler(
            concurrency=settings.concurrency_limit,
            pacing_delay=settings.pacing_delay_seconds,
            stop_event=self.context.stop_event,
            sleep=self.context.sleep,
        )
        register_emergency_snapshot(self._emergency_save)
        try:
            await scheduler.run(pending, self._enrich, self._record)

            stats = self.context.stats.snapshot()
            if scheduler.stopped and self.cursor < self.total_units:
                self.status = "stopped"
                await self.context.checkpoints.save(self.snapshot(), run_id=self.id)
                self.context.events.emit(ev.STOPPED, stats=stats)
                logger.info("Enrichment run stopped", run_id=self.id, cursor=self.cursor, total=self.total_units)
            else:
                self.status = "completed"
                await self.context.checkpoints.discard()
                self.context.events.emit(ev.COMPLETED, stats=stats)
                logger.info("Enrichment run completed", run_id=self.id, **stats)
        except Exception as e:
            self.status = "failed"
            self.error = str(e)[:500]
            await self.context.checkpoints.save(self.snapshot(), run_id=self.id)
            logger.error("Enrichment run failed", run_id=self.id, error=str(e))
        finally:
            unregister_emergency_snapshot(self._emergency_save)
            self.finished_at = datetime.now(timezone.utc)
            await self.context.quota.flush()

        return self.results


class RunManager:
    """Keeps at most one active run and the finished ones for lookup."""

    def __init__(self, settings: Settings, store: KeyValueStore, quota: QuotaGovernor | None = None, **providers: Any):
        self.settings = settings
        self.store = store
        self.quota = quota or QuotaGovernor(store, settings.provider_limits(), debounce_ms=settings.quota_debounce_ms)
        self.checkpoints = CheckpointStore(store, max_age_days=settings.checkpoint_max_age_days)
        self._providers = providers
        self._runs: dict[str, EnrichmentRun] = {}
        self._running_tasks: dict[str, asyncio.Task] = {}

    @property
    def active_run(self) -> EnrichmentRun | None:
        for run_id, task in self._running_tasks.items():
            if not task.done():
                return self._runs[run_id]
        return None

    async def create_run(
        self,
        source_id: str,
        rows: Iterable[dict[str, Any]],
        columns: ColumnMapping,
        resume: bool = False,
    ) -> EnrichmentRun:
        if self.active_run is not None:
            raise RunInProgressError(f"Run {self.active_run.id} is still active")

        records = read_records(rows, columns)
        snapshot = None
        if resume:
            offer = await self.checkpoints.offer()
            if offer is None:
                logger.info("No checkpoint to resume, starting fresh", source_id=source_id)
            else:
                snapshot = offer.snapshot
                if snapshot.source_id != source_id:
                    raise CheckpointMismatchError(source_id, snapshot.source_id)

        context = RunContext.build(
            self.settings,
            self.store,
            quota=self.quota,
            checkpoints=self.checkpoints,
            **self._providers,
        )
        run = EnrichmentRun(source_id, records, context, resume_from=snapshot)
        self._runs[run.id] = run
        return run

    def dispatch(self, run: EnrichmentRun) -> asyncio.Task:
        """Run in the background on the current loop."""
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._run_and_close(run))
        self._running_tasks[run.id] = task
        task.add_done_callback(lambda t: self._running_tasks.pop(run.id, None))
        logger.info("Dispatched enrichment run", run_id=run.id, units=run.total_units)
        return task

    async def _run_and_close(self, run: EnrichmentRun) -> None:
        try:
            await run.run()
        finally:
            await run.context.close()

    async def start(self, source_id: str, rows, columns: ColumnMapping, resume: bool = False) -> EnrichmentRun:
        run = await self.create_run(source_id, rows, columns, resume=resume)
        self.dispatch(run)
        return run

    def get(self, run_id: str) -> EnrichmentRun | None:
        return self._runs.get(run_id)

    def get_task_status(self, run_id: str) -> str | None:
        """Check if a run's task is still running."""
        task = self._running_tasks.get(run_id)
        if task is None:
            return None
        if task.done():
            return "done"
        return "running"

    async def shutdown(self) -> None:
        for run_id, task in list(self._running_tasks.items()):
            run = self._runs[run_id]
            run.stop()
            await asyncio.gather(task, return_exceptions=True)
        await self.quota.flush()


_manager: RunManager | None = None


def get_run_manager() -> RunManager:
    if _manager is None:
        raise RuntimeError("Run manager not initialised")
    return _manager


def set_run_manager(manager: RunManager | None) -> None:
    global _manager
    _manager = manager
