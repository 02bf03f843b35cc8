"""Deduplication and the bounded worker pool.

Units are launched as soon as a slot frees (continuous replenishment, not
lock-step batches). Each slot runs worker -> on_complete -> pacing delay
before it counts as free, so the pacing delay throttles the sustained rate
independent of the burst concurrency.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

import structlog

from geoenrich.models.enrichment import AddressRecord, WorkUnit
from geoenrich.utils.address import normalize_key

logger = structlog.get_logger()


def build_work_units(records: Iterable[AddressRecord]) -> list[WorkUnit]:
    """
    One unit per distinct normalized address, in first-seen order.

    Every unit lists all row indices sharing its key. Rows with a blank
    address are left out.
    """
    units: dict[str, WorkUnit] = {}
    for record in records:
        if not record.fields.address:
            continue
        key = normalize_key(record.fields.full_address)
        unit = units.get(key)
        if unit is None:
            unit = WorkUnit(index=len(units), key=key, fields=record.fields)
            units[key] = unit
        unit.row_indices.append(record.row_index)
    return list(units.values())


class WorkScheduler:
    def __init__(
        self,
        concurrency: int = 8,
        pacing_delay: float = 1.5,
        stop_event: asyncio.Event | None = None,
        sleep=asyncio.sleep,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.concurrency = concurrency
        self.pacing_delay = pacing_delay
        self.stop_event = stop_event or asyncio.Event()
        self._sleep = sleep
        self.in_flight = 0
        self.dispatched = 0

    @property
    def stopped(self) -> bool:
        return self.stop_event.is_set()

    def stop(self) -> None:
        self.stop_event.set()

    async def _slot(
        self,
        unit: WorkUnit,
        worker: Callable[[WorkUnit], Awaitable[Any]],
        on_complete: Callable[[WorkUnit, Any], Awaitable[None]],
    ) -> None:
        self.in_flight += 1
        try:
            result = await worker(unit)
            await on_complete(unit, result)
        except Exception as e:
            logger.error("Unit slot failed", unit=unit.index, key=unit.key[:60], error=str(e))
        finally:
            self.in_flight -= 1
        if self.pacing_delay > 0 and not self.stopped:
            await self._sleep(self.pacing_delay)

    async def run(
        self,
        units: Iterable[WorkUnit],
        worker: Callable[[WorkUnit], Awaitable[Any]],
        on_complete: Callable[[WorkUnit, Any], Awaitable[None]],
    ) -> int:
        """Process ``units`` until exhausted or stopped. Returns how many were launched."""
        pending = iter(units)
        active: set[asyncio.Task] = set()
        exhausted = False

        while True:
            if self.stopped:
                break

            while not exhausted and len(active) < self.concurrency:
                if self.stopped:
                    break
                unit = next(pending, None)
                if unit is None:
                    exhausted = True
                    break
                active.add(asyncio.create_task(self._slot(unit, worker, on_complete)))
                self.dispatched += 1

            if not active:
                break
            _, active = await asyncio.wait(active, return_when=asyncio.FIRST_COMPLETED)

        if active:
            logger.info("Stop requested, letting in-flight units finish", in_flight=len(active))
            await asyncio.gather(*active)

        logger.info("Scheduler finished", dispatched=self.dispatched, stopped=self.stopped)
        return self.dispatched
