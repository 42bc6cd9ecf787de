"""Per-tick temperature steps for served rooms and drifting unserved rooms."""

from __future__ import annotations

from typing import Iterator

from hvac_scheduler.domain.models import FanSpeed, Mode, Room


def step_served_temperature(
    mode: Mode,
    fan_speed: FanSpeed,
    current_temp: float,
    target_temp: float,
    tolerance: float = 0.1,
) -> tuple[float, bool]:
    """Advance one tick toward the target without overshooting.

    Cooling only lowers a room that is above target and heating only raises a
    room that is below it; otherwise the temperature holds.
    """
    change = 1.0 / fan_speed.minutes_per_degree
    new_temp = current_temp
    if mode is Mode.COOLING and current_temp > target_temp:
        new_temp = max(target_temp, current_temp - change)
    elif mode is Mode.HEATING and current_temp < target_temp:
        new_temp = min(target_temp, current_temp + change)
    return new_temp, abs(new_temp - target_temp) < tolerance


def step_recovery_temperature(
    current_temp: float,
    baseline_temp: float,
    step: float = 0.5,
    tolerance: float = 0.1,
) -> tuple[float, bool]:
    """Drift one tick toward the baseline; returns (temperature, settled)."""
    if abs(current_temp - baseline_temp) < tolerance:
        return current_temp, True
    if current_temp > baseline_temp:
        new_temp = max(baseline_temp, current_temp - step)
    else:
        new_temp = min(baseline_temp, current_temp + step)
    return new_temp, abs(new_temp - baseline_temp) < tolerance


class RecoveryTracker:
    """Set of unserved rooms whose temperature is drifting back to baseline."""

    def __init__(self, tolerance: float = 0.1) -> None:
        self._tolerance = tolerance
        self._rooms: set[int] = set()

    def __contains__(self, room_id: int) -> bool:
        return room_id in self._rooms

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self._rooms))

    def __len__(self) -> int:
        return len(self._rooms)

    def start(self, room: Room, has_unit: bool) -> bool:
        if has_unit or abs(room.current_temp - room.baseline_temp) < self._tolerance:
            self._rooms.discard(room.room_id)
            return False
        self._rooms.add(room.room_id)
        return True

    def cancel(self, room_id: int) -> None:
        self._rooms.discard(room_id)

    def clear(self) -> None:
        self._rooms.clear()
