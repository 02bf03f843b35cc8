from fastapi import APIRouter, Depends, HTTPException

from geoenrich.api.deps import get_manager, verify_api_key
from geoenrich.tasks.runner import RunManager

router = APIRouter()


@router.get("")
async def get_quota(manager: RunManager = Depends(get_manager)):
    return {"usage": manager.quota.usage()}


@router.post("/reset", dependencies=[Depends(verify_api_key)])
async def reset_quota(provider: str | None = None, manager: RunManager = Depends(get_manager)):
    """Zero today's counters for one provider, or all of them."""
    if provider and provider not in manager.settings.provider_limits():
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")
    await manager.quota.reset(provider)
    return {"usage": manager.quota.usage()}
