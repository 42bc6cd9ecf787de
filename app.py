"""
app.py — FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository and scheduler, registers the router, and runs
startup and shutdown of the background ticker.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from hvac_scheduler.controllers.climate_controller import router as climate_router
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.config import Settings, get_settings
from hvac_scheduler.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    The scheduler is the only owner of room/unit state; the router reaches it
    through app.state so every dependency is traceable from this function.
    """
    settings = settings or get_settings()

    # --- Repository (room provider, request journal, billing sink) ---
    repository = DataRepository(settings)

    # --- Scheduler (in-memory state machine + ticker) ---
    scheduler_service = ClimateSchedulerService(
        repository=repository,
        settings=settings,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup before accepting requests and stop the ticker after."""
        _startup(app)
        yield
        _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.include_router(climate_router)

    app.state.settings = settings
    app.state.repository = repository
    app.state.scheduler_service = scheduler_service

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Rooms must exist before active requests are replayed.
      3. The ticker starts last, on fully rebuilt state.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    scheduler_service: ClimateSchedulerService = app.state.scheduler_service

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup: seeding rooms (skipped if Rooms table not empty)")
    repository.seed_rooms()

    logger.info("Startup: rebuilding scheduler state from active requests")
    scheduler_service.resync()

    if settings.scheduler_autostart:
        scheduler_service.start()
    else:
        logger.info("Startup: scheduler autostart disabled; ticks are driven externally")

    logger.info("Startup complete | units=%s", settings.unit_count)


def _shutdown(app: FastAPI) -> None:
    scheduler_service: ClimateSchedulerService = app.state.scheduler_service
    scheduler_service.stop()
    logger.info("Shutdown complete")


# Module-level app object for uvicorn
app = create_app()
