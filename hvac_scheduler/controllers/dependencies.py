"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService


def get_repository(request: Request) -> DataRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Repository is not initialized",
        )
    return repository


def get_scheduler_service(request: Request) -> ClimateSchedulerService:
    service = getattr(request.app.state, "scheduler_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Scheduler service is not initialized",
        )
    return service
