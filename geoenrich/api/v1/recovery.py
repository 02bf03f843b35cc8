from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from geoenrich.api.deps import get_manager, verify_api_key
from geoenrich.tasks.runner import RunManager

router = APIRouter()


@router.get("")
async def get_recovery(manager: RunManager = Depends(get_manager)):
    """Describe a resumable checkpoint, if any. Nothing is applied here."""
    offer = await manager.checkpoints.offer()
    if offer is None:
        return {"available": False}
    return offer.summary()


@router.post("/discard", dependencies=[Depends(verify_api_key)])
async def discard_recovery(manager: RunManager = Depends(get_manager)):
    if manager.active_run is not None:
        raise HTTPException(status_code=409, detail="Cannot discard while a run is active")
    await manager.checkpoints.discard()
    return {"discarded": True}


@router.get("/export", dependencies=[Depends(verify_api_key)])
async def export_recovery(manager: RunManager = Depends(get_manager)):
    """Export the checkpoint's partial results as CSV, then discard it."""
    if manager.active_run is not None:
        raise HTTPException(status_code=409, detail="Cannot export while a run is active")
    offer = await manager.checkpoints.offer()
    if offer is None:
        raise HTTPException(status_code=404, detail="No checkpoint available")
    source_id = offer.snapshot.source_id
    csv_content = await manager.checkpoints.export_partial()
    return StreamingResponse(
        iter([csv_content or ""]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=partial_{source_id}.csv"},
    )
