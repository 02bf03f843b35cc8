from fastapi import HTTPException, Request

from geoenrich.config import settings
from geoenrich.tasks.runner import RunManager, get_run_manager


def get_manager() -> RunManager:
    try:
        return get_run_manager()
    except RuntimeError:
        raise HTTPException(status_code=503, detail="Service is starting up")


def verify_api_key(request: Request):
    """Require X-API-Key on run-control endpoints when API_KEY is configured."""
    if not settings.api_key:
        return
    api_key = request.headers.get("X-API-Key") or request.headers.get("x-api-key")
    if api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
