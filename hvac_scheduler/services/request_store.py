"""In-memory store of active climate requests with write-behind journaling."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from hvac_scheduler.domain.constraints import (
    SchedulerConfig,
    clamp_target_temp,
    default_target_temp,
)
from hvac_scheduler.domain.models import FanSpeed, Mode, ServiceRequest
from hvac_scheduler.repository.data_repository import DataRepository


class RequestStore:
    """Holds at most one active request per room.

    Not thread-safe on its own; the scheduler serializes every call under its
    state lock.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        repository: Optional[DataRepository] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._active: dict[int, ServiceRequest] = {}

    def _persist(self, request: ServiceRequest) -> None:
        if self._repository is None:
            return
        request.request_id = self._repository.save_request(request)

    def create_or_replace(
        self,
        room_id: int,
        mode: Mode,
        fan_speed: FanSpeed,
        target_temp: Optional[float],
        current_room_temp: float,
    ) -> ServiceRequest:
        self.deactivate(room_id)
        request = ServiceRequest(
            room_id=room_id,
            mode=mode,
            fan_speed=fan_speed,
            target_temp=clamp_target_temp(mode, target_temp, self._config),
            priority=fan_speed.priority,
            request_time=self._clock(),
            current_room_temp=current_room_temp,
        )
        self._active[room_id] = request
        self._persist(request)
        return request

    def get_active(self, room_id: int) -> Optional[ServiceRequest]:
        return self._active.get(room_id)

    def list_active(self) -> list[ServiceRequest]:
        return [self._active[room_id] for room_id in sorted(self._active)]

    def deactivate(self, room_id: int) -> bool:
        request = self._active.pop(room_id, None)
        if request is None:
            return False
        request.active = False
        request.assigned_unit = None
        self._persist(request)
        return True

    def adjust(
        self,
        room_id: int,
        mode: Optional[Mode] = None,
        fan_speed: Optional[FanSpeed] = None,
        target_temp: Optional[float] = None,
    ) -> bool:
        request = self._active.get(room_id)
        if request is None:
            return False
        if mode is None and fan_speed is None and target_temp is None:
            return False

        changed = False
        if mode is not None and mode != request.mode:
            request.mode = mode
            if target_temp is None:
                request.target_temp = default_target_temp(mode, self._config)
            changed = True

        if fan_speed is not None and fan_speed != request.fan_speed:
            request.fan_speed = fan_speed
            request.priority = fan_speed.priority
            changed = True

        if target_temp is not None:
            clamped = clamp_target_temp(request.mode, target_temp, self._config)
            if clamped != request.target_temp:
                request.target_temp = clamped
                changed = True

        if changed:
            self._persist(request)
        return changed

    def assign(self, room_id: int, unit_id: int) -> None:
        request = self._active[room_id]
        request.assigned_unit = unit_id
        self._persist(request)

    def unassign(self, room_id: int) -> None:
        request = self._active.get(room_id)
        if request is None or request.assigned_unit is None:
            return
        request.assigned_unit = None
        self._persist(request)

    def restore(self, request: ServiceRequest) -> None:
        """Re-register a persisted request without creating a new journal row."""
        self._active[request.room_id] = request

    def clear(self) -> None:
        self._active.clear()
