"""HTTP controller layer for room climate requests and scheduler queues."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, model_validator

from hvac_scheduler.controllers.dependencies import get_repository, get_scheduler_service
from hvac_scheduler.domain.constraints import clamp_target_temp
from hvac_scheduler.domain.models import FanSpeed, Mode, RoomState
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["climate"])


class StartRequest(BaseModel):
    """Input DTO for turning a room's climate request on."""

    mode: Mode
    fan_speed: FanSpeed
    target_temp: float | None = None


class AdjustRequest(BaseModel):
    mode: Mode | None = None
    fan_speed: FanSpeed | None = None
    target_temp: float | None = None

    @model_validator(mode="after")
    def require_one_field(self) -> "AdjustRequest":
        if self.mode is None and self.fan_speed is None and self.target_temp is None:
            raise ValueError("at least one of mode, fan_speed or target_temp is required")
        return self


class StartResponse(BaseModel):
    success: bool
    message: str
    assigned_unit: int | None = Field(default=None, ge=1)
    mode: Mode
    fan_speed: FanSpeed
    target_temp: float


class OperationResponse(BaseModel):
    success: bool
    message: str


class ActiveRequestResponse(BaseModel):
    mode: Mode
    fan_speed: FanSpeed
    target_temp: float
    priority: int = Field(ge=1, le=3)
    request_time: datetime
    assigned_unit: int | None = None


class RoomStatusResponse(BaseModel):
    room_id: int
    state: RoomState
    current_temp: float
    baseline_temp: float
    unit_id: int | None = None
    recovering: bool
    request: ActiveRequestResponse | None = None


class UsageRecordResponse(BaseModel):
    room_id: int
    unit_id: int
    service_start: datetime
    service_end: datetime
    mode: Mode
    fan_speed: FanSpeed
    target_temp: float
    duration_minutes: int = Field(ge=0)
    temp_change: float = Field(ge=0.0)
    energy: float = Field(ge=0.0)
    cost: float = Field(ge=0.0)
    rate: float = Field(ge=0.0)
    reason: str


class RoomUsageResponse(BaseModel):
    room_id: int
    total_cost: float = Field(ge=0.0)
    records: list[UsageRecordResponse]


class UnitResponse(BaseModel):
    unit_id: int
    busy: bool
    serving_room: int | None = None
    mode: Mode | None = None
    fan_speed: FanSpeed | None = None
    target_temp: float | None = None
    energy_consumed: float = Field(ge=0.0)


class RoomListResponse(BaseModel):
    room_ids: list[int]


def _ensure_room(repository: DataRepository, room_id: int) -> None:
    if repository.get_room(room_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"room_id={room_id} does not exist",
        )


@router.post(
    "/rooms/{room_id}/start",
    response_model=StartResponse,
    status_code=status.HTTP_200_OK,
)
async def start_room(
    room_id: int,
    payload: StartRequest,
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> StartResponse:
    """Create or replace the room's request; it is served at once or queued."""
    try:
        unit_id = service.admit(room_id, payload.mode, payload.fan_speed, payload.target_temp)
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected admission failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start climate request",
        ) from exc

    if unit_id is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"room_id={room_id} does not exist",
        )

    request = service.get_active_request(room_id)
    if request is None:
        # a tick released the room before the response was built
        return StartResponse(
            success=True,
            message="target already reached",
            assigned_unit=None,
            mode=payload.mode,
            fan_speed=payload.fan_speed,
            target_temp=clamp_target_temp(payload.mode, payload.target_temp, service.config),
        )

    served = unit_id > 0
    return StartResponse(
        success=True,
        message=f"served by unit {unit_id}" if served else "queued for the next free unit",
        assigned_unit=unit_id if served else None,
        mode=request.mode,
        fan_speed=request.fan_speed,
        target_temp=request.target_temp,
    )


@router.put(
    "/rooms/{room_id}/adjust",
    response_model=OperationResponse,
    status_code=status.HTTP_200_OK,
)
async def adjust_room(
    room_id: int,
    payload: AdjustRequest,
    service: ClimateSchedulerService = Depends(get_scheduler_service),
    repository: DataRepository = Depends(get_repository),
) -> OperationResponse:
    _ensure_room(repository, room_id)
    if not service.adjust(
        room_id,
        mode=payload.mode,
        fan_speed=payload.fan_speed,
        target_temp=payload.target_temp,
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active request or nothing to change",
        )
    return OperationResponse(success=True, message="request adjusted")


@router.post(
    "/rooms/{room_id}/cancel",
    response_model=OperationResponse,
    status_code=status.HTTP_200_OK,
)
async def cancel_room(
    room_id: int,
    service: ClimateSchedulerService = Depends(get_scheduler_service),
    repository: DataRepository = Depends(get_repository),
) -> OperationResponse:
    _ensure_room(repository, room_id)
    if not service.cancel(room_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No active request to cancel",
        )
    return OperationResponse(success=True, message="request cancelled")


@router.get("/rooms/{room_id}", response_model=RoomStatusResponse)
async def get_room_status(
    room_id: int,
    service: ClimateSchedulerService = Depends(get_scheduler_service),
    repository: DataRepository = Depends(get_repository),
) -> RoomStatusResponse:
    room = repository.get_room(room_id)
    if room is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"room_id={room_id} does not exist",
        )
    request = service.get_active_request(room_id)
    unit = service.get_unit_for_room(room_id)
    return RoomStatusResponse(
        room_id=room.room_id,
        state=service.room_state(room_id),
        current_temp=room.current_temp,
        baseline_temp=room.baseline_temp,
        unit_id=unit.unit_id if unit is not None else None,
        recovering=service.is_recovering(room_id),
        request=(
            ActiveRequestResponse(
                mode=request.mode,
                fan_speed=request.fan_speed,
                target_temp=request.target_temp,
                priority=request.priority,
                request_time=request.request_time,
                assigned_unit=request.assigned_unit,
            )
            if request is not None
            else None
        ),
    )


@router.get("/rooms/{room_id}/usage", response_model=RoomUsageResponse)
async def get_room_usage(
    room_id: int,
    repository: DataRepository = Depends(get_repository),
) -> RoomUsageResponse:
    _ensure_room(repository, room_id)
    records = repository.list_usage_records(room_id)
    return RoomUsageResponse(
        room_id=room_id,
        total_cost=round(sum(record.cost for record in records), 6),
        records=[
            UsageRecordResponse(
                room_id=record.room_id,
                unit_id=record.unit_id,
                service_start=record.service_start,
                service_end=record.service_end,
                mode=record.mode,
                fan_speed=record.fan_speed,
                target_temp=record.target_temp,
                duration_minutes=record.duration_minutes,
                temp_change=record.temp_change,
                energy=record.energy,
                cost=record.cost,
                rate=record.rate,
                reason=record.reason.value,
            )
            for record in records
        ],
    )


@router.get("/units", response_model=list[UnitResponse])
async def list_units(
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> list[UnitResponse]:
    return [
        UnitResponse(
            unit_id=unit.unit_id,
            busy=unit.is_busy,
            serving_room=unit.serving_room,
            mode=unit.mode if unit.is_busy else None,
            fan_speed=unit.fan_speed if unit.is_busy else None,
            target_temp=unit.target_temp if unit.is_busy else None,
            energy_consumed=unit.energy_consumed if unit.is_busy else 0.0,
        )
        for unit in service.list_units()
    ]


@router.get("/queue/waiting", response_model=RoomListResponse)
async def list_waiting(
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> RoomListResponse:
    """Waiting rooms, most eligible first."""
    return RoomListResponse(room_ids=service.list_waiting())


@router.get("/queue/service", response_model=RoomListResponse)
async def list_serving(
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> RoomListResponse:
    """Served rooms, most evictable first."""
    return RoomListResponse(room_ids=service.list_serving())


@router.get("/queue/status")
async def queue_status(
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> dict:
    return service.queue_status()


@router.post("/queue/resync", response_model=OperationResponse)
async def resync_queues(
    service: ClimateSchedulerService = Depends(get_scheduler_service),
) -> OperationResponse:
    try:
        service.resync()
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected resync failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to resync scheduler state",
        ) from exc
    return OperationResponse(success=True, message="scheduler state rebuilt")
