"""Fixed pool of interchangeable climate units."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

from hvac_scheduler.domain.errors import InvalidStateError, NotFoundError
from hvac_scheduler.domain.models import FanSpeed, Mode, Unit


class UnitPool:
    """Units 1..K, each free or bound to exactly one room."""

    def __init__(
        self,
        unit_count: int,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._unit_count = unit_count
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._units: dict[int, Unit] = {}
        self._unit_by_room: dict[int, int] = {}
        self.reset()

    @property
    def unit_count(self) -> int:
        return self._unit_count

    def reset(self) -> None:
        self._units = {
            unit_id: Unit(unit_id=unit_id)
            for unit_id in range(1, self._unit_count + 1)
        }
        self._unit_by_room = {}

    def get(self, unit_id: int) -> Unit:
        unit = self._units.get(unit_id)
        if unit is None:
            raise NotFoundError(f"unit_id={unit_id} does not exist")
        return unit

    def list_units(self) -> list[Unit]:
        return [self._units[unit_id] for unit_id in sorted(self._units)]

    def list_free(self) -> list[int]:
        return [
            unit_id
            for unit_id in sorted(self._units)
            if not self._units[unit_id].is_busy
        ]

    def get_by_room(self, room_id: int) -> Optional[Unit]:
        unit_id = self._unit_by_room.get(room_id)
        if unit_id is None:
            return None
        return self._units[unit_id]

    def bind(
        self,
        unit_id: int,
        room_id: int,
        mode: Mode,
        fan_speed: FanSpeed,
        target_temp: float,
        current_temp: float,
        request_time: Optional[datetime] = None,
    ) -> Unit:
        unit = self.get(unit_id)
        if unit.is_busy:
            raise InvalidStateError(
                f"unit_id={unit_id} already serves room_id={unit.serving_room}"
            )
        if room_id in self._unit_by_room:
            raise InvalidStateError(
                f"room_id={room_id} already bound to unit_id={self._unit_by_room[room_id]}"
            )

        unit.serving_room = room_id
        unit.mode = mode
        unit.fan_speed = fan_speed
        unit.target_temp = target_temp
        unit.current_temp = current_temp
        unit.start_temp = current_temp
        unit.request_time = request_time
        unit.service_start_time = self._clock()
        unit.service_end_time = None
        unit.energy_consumed = 0.0
        self._unit_by_room[room_id] = unit_id
        return unit

    def release(self, unit_id: int) -> Unit:
        """Free the unit; settings and counters stay readable for billing."""
        unit = self.get(unit_id)
        if unit.serving_room is not None:
            self._unit_by_room.pop(unit.serving_room, None)
        unit.serving_room = None
        unit.service_end_time = self._clock()
        return unit

    def update_settings(
        self,
        unit_id: int,
        mode: Mode,
        fan_speed: FanSpeed,
        target_temp: float,
    ) -> None:
        unit = self.get(unit_id)
        unit.mode = mode
        unit.fan_speed = fan_speed
        unit.target_temp = target_temp
