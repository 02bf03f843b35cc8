from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator
from datetime import datetime, timezone

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from geoenrich.config import settings

logger = structlog.get_logger()

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    from geoenrich.services.kv_store import open_default_store
    from geoenrich.tasks.runner import RunManager, set_run_manager

    logger.info("Starting geoenrich API", env=settings.app_env)
    for warning in settings.validate_production():
        logger.warning("Configuration warning", detail=warning)

    # Tests (and embedders) may install their own manager before startup
    manager = getattr(app.state, "run_manager", None)
    store = None
    if manager is None:
        store = await open_default_store()
        manager = RunManager(settings, store)
        app.state.run_manager = manager

    await manager.quota.load()
    set_run_manager(manager)

    offer = await manager.checkpoints.offer()
    if offer is not None:
        logger.info(
            "Checkpoint available for recovery",
            source_id=offer.snapshot.source_id,
            cursor=offer.snapshot.cursor,
            total=offer.snapshot.total_units,
        )

    yield

    await manager.shutdown()
    set_run_manager(None)
    if store is not None:
        await store.close()
    logger.info("Shutting down geoenrich API")


def create_app() -> FastAPI:
    app = FastAPI(
        title="geoenrich",
        description="Batch address enrichment: coordinates, neighborhood and community for property spreadsheets.",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    from geoenrich.api.v1.router import api_router

    app.include_router(api_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Provider availability, active run, recovery and quota state."""
        from geoenrich.tasks.runner import get_run_manager

        result = {
            "status": "healthy",
            "version": VERSION,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "providers": {
                name: {"configured": configured, "circuit": "closed"}
                for name, configured in settings.provider_credentials().items()
            },
            "active_run": None,
            "recovery_available": False,
            "quota": {},
        }

        try:
            manager = get_run_manager()
        except RuntimeError:
            result["status"] = "starting"
            return result

        active = manager.active_run
        if active is not None:
            result["providers"] = active.context.provider_status()
            result["active_run"] = {"id": active.id, "current": active.cursor, "total": active.total_units}
        result["quota"] = manager.quota.usage()

        try:
            result["recovery_available"] = await manager.checkpoints.offer() is not None
        except Exception as e:
            result["status"] = "degraded"
            result["storage"] = f"error: {str(e)[:100]}"

        if not any(p["configured"] for p in result["providers"].values()):
            result["status"] = "degraded"
        return result

    return app


app = create_app()
