from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from geoenrich.api.deps import get_manager, verify_api_key
from geoenrich.errors import CheckpointMismatchError, RowSourceError, RunInProgressError
from geoenrich.models.enrichment import ColumnMapping
from geoenrich.tasks.runner import RunManager
from geoenrich.utils.csv_export import results_to_csv

router = APIRouter()


class ColumnsBody(BaseModel):
    address: str
    zip: str | None = None
    city: str | None = None
    county: str | None = None


class StartRunRequest(BaseModel):
    source_id: str = Field(min_length=1)
    rows: list[dict[str, Any]]
    columns: ColumnsBody
    resume: bool = False


@router.post("", status_code=202, dependencies=[Depends(verify_api_key)])
async def start_run(body: StartRunRequest, manager: RunManager = Depends(get_manager)):
    """Start enriching the uploaded rows in the background."""
    columns = ColumnMapping(**body.columns.model_dump())
    try:
        run = await manager.start(body.source_id, body.rows, columns, resume=body.resume)
    except RunInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except CheckpointMismatchError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RowSourceError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "id": run.id,
        "status": run.status,
        "rows": len(run.records),
        "units": run.total_units,
        "resumed_units": run.cursor,
    }


def _get_run(run_id: str, manager: RunManager):
    run = manager.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/{run_id}")
async def get_run(run_id: str, manager: RunManager = Depends(get_manager)):
    run = _get_run(run_id, manager)
    status = run.status_dict()
    status["task_running"] = manager.get_task_status(run_id) == "running"
    status["events"] = list(run.context.events.history)[-20:]
    return status


@router.get("/{run_id}/results")
async def get_results(
    run_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    manager: RunManager = Depends(get_manager),
):
    """Results keyed by original row position. Rows still pending are null."""
    run = _get_run(run_id, manager)
    window = run.results[offset:offset + limit]
    return {
        "total": len(run.results),
        "offset": offset,
        "results": [
            {"row_index": offset + i, "result": r.to_dict() if r else None}
            for i, r in enumerate(window)
        ],
    }


@router.post("/{run_id}/stop", dependencies=[Depends(verify_api_key)])
async def stop_run(run_id: str, manager: RunManager = Depends(get_manager)):
    run = _get_run(run_id, manager)
    if run.status != "running":
        return {"id": run.id, "status": run.status, "message": "Run is not active"}
    run.stop()
    return {"id": run.id, "status": "stopping", "current": run.cursor, "total": run.total_units}


@router.get("/{run_id}/export")
async def export_run(run_id: str, manager: RunManager = Depends(get_manager)):
    """Export the run's results so far as CSV."""
    run = _get_run(run_id, manager)
    csv_content = results_to_csv(r for r in run.results if r is not None)
    return StreamingResponse(
        iter([csv_content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=enriched_{run.source_id}.csv"},
    )
