"""HTTP surface tests, driven through httpx's ASGI transport."""

import asyncio

import httpx
import pytest
import pytest_asyncio

from geoenrich.main import create_app
from geoenrich.models.enrichment import EnrichmentResult, ResultStatus
from geoenrich.services.checkpoint_store import CheckpointSnapshot
from geoenrich.tasks.runner import RunManager, set_run_manager
from tests.fakes import fake_providers

ROWS = [
    {"Address": "1 Main St", "City": "Springfield", "Price": "100"},
    {"Address": "2 Oak Ave", "City": "Springfield", "Price": "200"},
    {"Address": "1 Main St", "City": "Springfield", "Price": "300"},
]
COLUMNS = {"address": "Address", "city": "City"}


@pytest.fixture
def manager(settings, store):
    return RunManager(settings, store, **fake_providers())


@pytest_asyncio.fixture
async def client(manager):
    set_run_manager(manager)
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await manager.shutdown()
    set_run_manager(None)


async def wait_for(manager, run_id):
    task = manager._running_tasks.get(run_id)
    if task is not None:
        await task
    await asyncio.sleep(0)


class TestRuns:
    @pytest.mark.asyncio
    async def test_start_poll_and_export(self, client, manager):
        response = await client.post("/api/v1/runs", json={"source_id": "listings.csv", "rows": ROWS, "columns": COLUMNS})
        assert response.status_code == 202
        body = response.json()
        assert body["rows"] == 3
        assert body["units"] == 2

        await wait_for(manager, body["id"])

        status = (await client.get(f"/api/v1/runs/{body['id']}")).json()
        assert status["status"] == "completed"
        assert status["current"] == status["total"] == 2
        assert status["task_running"] is False
        assert any(e["event"] == "completed" for e in status["events"])

        results = (await client.get(f"/api/v1/runs/{body['id']}/results", params={"limit": 2})).json()
        assert results["total"] == 3
        assert len(results["results"]) == 2
        assert results["results"][0]["result"]["neighborhood"] == "Kendall Green"

        export = await client.get(f"/api/v1/runs/{body['id']}/export")
        assert export.headers["content-type"].startswith("text/csv")
        lines = export.text.strip().splitlines()
        assert lines[0].startswith("Address,City,Price,house_number")
        assert len(lines) == 4

    @pytest.mark.asyncio
    async def test_missing_address_column(self, client):
        response = await client.post(
            "/api/v1/runs", json={"source_id": "listings.csv", "rows": ROWS, "columns": {"address": "Street"}}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        assert (await client.get("/api/v1/runs/nope")).status_code == 404

    @pytest.mark.asyncio
    async def test_resume_with_other_source_conflicts(self, client, manager):
        await manager.checkpoints.save(
            CheckpointSnapshot(source_id="other.csv", cursor=0, total_units=2, total_rows=3)
        )
        response = await client.post(
            "/api/v1/runs",
            json={"source_id": "listings.csv", "rows": ROWS, "columns": COLUMNS, "resume": True},
        )
        assert response.status_code == 409


class TestRecovery:
    @pytest.mark.asyncio
    async def test_offer_export_then_gone(self, client, manager):
        assert (await client.get("/api/v1/recovery")).json() == {"available": False}

        await manager.checkpoints.save(
            CheckpointSnapshot(
                source_id="listings.csv",
                cursor=1,
                total_units=2,
                total_rows=3,
                completed_units=[0],
                results=[
                    EnrichmentResult(status=ResultStatus.SUCCESS, key="1 main st", row_index=0, row=ROWS[0]).to_dict()
                ],
            )
        )
        offer = (await client.get("/api/v1/recovery")).json()
        assert offer["available"] is True
        assert offer["cursor"] == 1
        assert offer["total_units"] == 2

        export = await client.get("/api/v1/recovery/export")
        assert export.status_code == 200
        assert "1 Main St" in export.text
        assert (await client.get("/api/v1/recovery")).json() == {"available": False}
        assert (await client.get("/api/v1/recovery/export")).status_code == 404


class TestQuotaAndHealth:
    @pytest.mark.asyncio
    async def test_quota_reset(self, client, manager):
        manager.quota.consume("mapbox", 5)
        usage = (await client.get("/api/v1/quota")).json()["usage"]
        assert usage["mapbox"]["used"] == 5

        assert (await client.post("/api/v1/quota/reset", params={"provider": "bing"})).status_code == 404
        reset = (await client.post("/api/v1/quota/reset", params={"provider": "mapbox"})).json()
        assert reset["usage"]["mapbox"]["used"] == 0

    @pytest.mark.asyncio
    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert set(body["providers"]) == {"mapbox", "geocodio", "gemini"}
        assert body["active_run"] is None
        assert body["recovery_available"] is False
        assert "mapbox" in body["quota"]
