"""Domain models for climate unit scheduling and temperature simulation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class Mode(str, Enum):
    COOLING = "COOLING"
    HEATING = "HEATING"


class FanSpeed(str, Enum):
    """Fan speed tag; fixes both scheduling priority and heat transfer speed."""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def priority(self) -> int:
        return _FAN_SPEED_PRIORITY[self]

    @property
    def minutes_per_degree(self) -> int:
        return _FAN_SPEED_MINUTES_PER_DEGREE[self]


_FAN_SPEED_PRIORITY = {
    FanSpeed.HIGH: 3,
    FanSpeed.MEDIUM: 2,
    FanSpeed.LOW: 1,
}

_FAN_SPEED_MINUTES_PER_DEGREE = {
    FanSpeed.HIGH: 1,
    FanSpeed.MEDIUM: 2,
    FanSpeed.LOW: 3,
}


class RoomState(str, Enum):
    IDLE = "IDLE"
    WAITING = "WAITING"
    SERVING = "SERVING"


class ReleaseReason(str, Enum):
    CANCELLED = "CANCELLED"
    TARGET_REACHED = "TARGET_REACHED"
    PREEMPTED = "PREEMPTED"
    REPLACED = "REPLACED"


@dataclass(frozen=True)
class Room:
    room_id: int
    baseline_temp: float
    current_temp: float


@dataclass
class ServiceRequest:
    """One room's climate request; at most one is active per room."""

    room_id: int
    mode: Mode
    fan_speed: FanSpeed
    target_temp: float
    priority: int
    request_time: datetime
    current_room_temp: float
    assigned_unit: Optional[int] = None
    active: bool = True
    request_id: Optional[int] = None


@dataclass
class Unit:
    """A shared climate unit; busy exactly when ``serving_room`` is set."""

    unit_id: int
    serving_room: Optional[int] = None
    mode: Optional[Mode] = None
    fan_speed: Optional[FanSpeed] = None
    target_temp: float = 0.0
    current_temp: float = 0.0
    start_temp: float = 0.0
    request_time: Optional[datetime] = None
    service_start_time: Optional[datetime] = None
    service_end_time: Optional[datetime] = None
    energy_consumed: float = 0.0

    @property
    def is_busy(self) -> bool:
        return self.serving_room is not None


@dataclass
class QueueEntry:
    room_id: int
    priority: int
    elapsed: int = 0
    sequence: int = 0


@dataclass(frozen=True)
class UsageRecord:
    """Billable service interval emitted whenever a unit is released."""

    room_id: int
    unit_id: int
    request_time: Optional[datetime]
    service_start: datetime
    service_end: datetime
    fan_speed: FanSpeed
    mode: Mode
    target_temp: float
    duration_minutes: int
    temp_change: float
    energy: float
    cost: float
    rate: float
    reason: ReleaseReason
