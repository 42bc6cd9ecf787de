"""Environment-driven runtime settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return float(raw)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    """Immutable settings snapshot shared by every layer.

    One tick equals one simulated minute; ``tick_interval_seconds`` is the
    wall-clock cadence of the background ticker.
    """

    app_name: str = "Hotel Climate Scheduler"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    database_path: Path = PROJECT_ROOT / "data" / "climate.db"

    unit_count: int = 3
    tick_interval_seconds: float = 10.0
    time_slice_ticks: int = 2
    scheduler_autostart: bool = True

    target_reached_tolerance: float = 0.1
    recovery_step_degrees: float = 0.5
    recovery_tolerance: float = 0.1

    cooling_min_temp: float = 18.0
    cooling_max_temp: float = 28.0
    cooling_default_target: float = 25.0
    heating_min_temp: float = 18.0
    heating_max_temp: float = 25.0
    heating_default_target: float = 22.0

    price_rate_per_degree: float = 1.0

    seed_room_baselines: tuple[tuple[int, float], ...] = (
        (1, 32.0),
        (2, 28.0),
        (3, 30.0),
        (4, 29.0),
        (5, 35.0),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from the environment once per process."""
    defaults = Settings()
    database_path = os.getenv("DATABASE_PATH")
    return Settings(
        app_name=os.getenv("APP_NAME", defaults.app_name),
        app_version=os.getenv("APP_VERSION", defaults.app_version),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        database_path=Path(database_path) if database_path else defaults.database_path,
        unit_count=_env_int("UNIT_COUNT", defaults.unit_count),
        tick_interval_seconds=_env_float("TICK_INTERVAL_SECONDS", defaults.tick_interval_seconds),
        time_slice_ticks=_env_int("TIME_SLICE_TICKS", defaults.time_slice_ticks),
        scheduler_autostart=_env_bool("SCHEDULER_AUTOSTART", defaults.scheduler_autostart),
        price_rate_per_degree=_env_float("PRICE_RATE_PER_DEGREE", defaults.price_rate_per_degree),
    )
