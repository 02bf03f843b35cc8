"""Tests for deduplication and the bounded worker pool."""

import asyncio

import pytest

from geoenrich.models.enrichment import AddressRecord, ColumnMapping
from geoenrich.tasks.scheduler import WorkScheduler, build_work_units
from tests.fakes import RecordingSleep, make_unit

COLUMNS = ColumnMapping(address="Address", city="City")


def records(*addresses):
    return [
        AddressRecord.from_row(i, {"Address": a, "City": "Miami"}, COLUMNS)
        for i, a in enumerate(addresses)
    ]


class TestBuildWorkUnits:
    def test_dedup_groups_rows_in_first_seen_order(self):
        units = build_work_units(records("1 Main St", "2 Oak Ave", "1  MAIN st ", "3 Elm Rd"))
        assert [u.key for u in units] == ["1 main st, miami", "2 oak ave, miami", "3 elm rd, miami"]
        assert units[0].row_indices == [0, 2]
        assert [u.index for u in units] == [0, 1, 2]

    def test_blank_address_skipped(self):
        units = build_work_units(records("", "   ", "4 Pine Ln"))
        assert len(units) == 1
        assert units[0].row_indices == [2]


class TestWorkScheduler:
    @pytest.mark.asyncio
    async def test_concurrency_ceiling(self):
        scheduler = WorkScheduler(concurrency=3, pacing_delay=0)
        peak = 0
        done = []

        async def worker(unit):
            nonlocal peak
            peak = max(peak, scheduler.in_flight)
            await asyncio.sleep(0.01)
            return unit.index

        async def on_complete(unit, result):
            done.append(result)

        units = [make_unit(f"{i} Main St", index=i) for i in range(10)]
        launched = await scheduler.run(units, worker, on_complete)

        assert launched == 10
        assert sorted(done) == list(range(10))
        assert peak == 3

    @pytest.mark.asyncio
    async def test_pacing_after_each_unit(self):
        sleeper = RecordingSleep()
        scheduler = WorkScheduler(concurrency=2, pacing_delay=1.5, sleep=sleeper)

        async def worker(unit):
            return None

        async def on_complete(unit, result):
            pass

        await scheduler.run([make_unit(f"{i} Main St", index=i) for i in range(4)], worker, on_complete)
        assert sleeper.delays == [1.5] * 4

    @pytest.mark.asyncio
    async def test_stop_lets_in_flight_finish_and_starts_nothing_new(self):
        scheduler = WorkScheduler(concurrency=2, pacing_delay=0)
        started, finished = [], []
        release = asyncio.Event()

        async def worker(unit):
            started.append(unit.index)
            if unit.index == 0:
                scheduler.stop()
            await release.wait()
            return unit.index

        async def on_complete(unit, result):
            finished.append(result)

        units = [make_unit(f"{i} Main St", index=i) for i in range(6)]
        run = asyncio.create_task(scheduler.run(units, worker, on_complete))
        await asyncio.sleep(0.01)
        release.set()
        launched = await run

        assert launched == 2
        assert sorted(started) == [0, 1]
        assert sorted(finished) == [0, 1]

    @pytest.mark.asyncio
    async def test_failing_worker_does_not_stop_the_pool(self):
        scheduler = WorkScheduler(concurrency=2, pacing_delay=0)
        finished = []

        async def worker(unit):
            if unit.index == 1:
                raise RuntimeError("boom")
            return unit.index

        async def on_complete(unit, result):
            finished.append(result)

        await scheduler.run([make_unit(f"{i} Main St", index=i) for i in range(4)], worker, on_complete)
        assert sorted(finished) == [0, 2, 3]

    def test_rejects_zero_concurrency(self):
        with pytest.raises(ValueError):
            WorkScheduler(concurrency=0)
