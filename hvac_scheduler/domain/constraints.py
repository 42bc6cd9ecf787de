"""Domain-level validation rules for scheduling and temperature bounds."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from hvac_scheduler.domain.errors import OutOfRangeError
from hvac_scheduler.domain.models import Mode
from hvac_scheduler.utils.config import Settings


@dataclass(frozen=True)
class TemperatureRange:
    minimum: float
    maximum: float
    default: float

    def contains(self, value: float) -> bool:
        return self.minimum <= value <= self.maximum


@dataclass(frozen=True)
class SchedulerConfig:
    unit_count: int
    time_slice_ticks: int
    target_reached_tolerance: float
    recovery_step_degrees: float
    recovery_tolerance: float
    price_rate_per_degree: float
    cooling_range: TemperatureRange
    heating_range: TemperatureRange

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        return cls(
            unit_count=settings.unit_count,
            time_slice_ticks=settings.time_slice_ticks,
            target_reached_tolerance=settings.target_reached_tolerance,
            recovery_step_degrees=settings.recovery_step_degrees,
            recovery_tolerance=settings.recovery_tolerance,
            price_rate_per_degree=settings.price_rate_per_degree,
            cooling_range=TemperatureRange(
                minimum=settings.cooling_min_temp,
                maximum=settings.cooling_max_temp,
                default=settings.cooling_default_target,
            ),
            heating_range=TemperatureRange(
                minimum=settings.heating_min_temp,
                maximum=settings.heating_max_temp,
                default=settings.heating_default_target,
            ),
        )


def validate_scheduler_config(config: SchedulerConfig) -> None:
    if config.unit_count <= 0:
        raise ValueError("unit_count must be > 0")
    if config.time_slice_ticks <= 0:
        raise ValueError("time_slice_ticks must be > 0")
    if not 0.0 < config.target_reached_tolerance < 1.0:
        raise ValueError("target_reached_tolerance must be in (0, 1)")
    if config.recovery_step_degrees <= 0.0:
        raise ValueError("recovery_step_degrees must be > 0")
    if not 0.0 < config.recovery_tolerance < 1.0:
        raise ValueError("recovery_tolerance must be in (0, 1)")
    if config.price_rate_per_degree < 0.0:
        raise ValueError("price_rate_per_degree must be >= 0")
    for name, bounds in (
        ("cooling_range", config.cooling_range),
        ("heating_range", config.heating_range),
    ):
        if bounds.minimum > bounds.maximum:
            raise ValueError(f"{name} minimum must not exceed maximum")
        if not bounds.contains(bounds.default):
            raise ValueError(f"{name} default must lie within its bounds")


def temperature_range(mode: Mode, config: SchedulerConfig) -> TemperatureRange:
    if mode is Mode.COOLING:
        return config.cooling_range
    return config.heating_range


def default_target_temp(mode: Mode, config: SchedulerConfig) -> float:
    return temperature_range(mode, config).default


def check_target_temp(mode: Mode, target_temp: float, config: SchedulerConfig) -> float:
    bounds = temperature_range(mode, config)
    if not bounds.contains(target_temp):
        raise OutOfRangeError(
            f"target_temp={target_temp} outside {mode.value} range "
            f"[{bounds.minimum}, {bounds.maximum}]"
        )
    return target_temp


def clamp_target_temp(
    mode: Mode,
    target_temp: Optional[float],
    config: SchedulerConfig,
) -> float:
    """Return a usable target: None means the mode default, else nearest bound."""
    if target_temp is None:
        return default_target_temp(mode, config)
    try:
        return check_target_temp(mode, float(target_temp), config)
    except OutOfRangeError:
        bounds = temperature_range(mode, config)
        return min(max(float(target_temp), bounds.minimum), bounds.maximum)
