"""Table-driven replay of timed room commands against the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import pandas as pd

from hvac_scheduler.domain.models import FanSpeed, Mode
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.logger import get_logger


logger = get_logger(__name__)

SCENARIO_ACTIONS = ("start", "adjust", "cancel")
REQUIRED_COLUMNS = ("tick", "room_id", "action")
SNAPSHOT_COLUMNS = [
    "tick",
    "room_id",
    "state",
    "unit_id",
    "current_temp",
    "target_temp",
    "mode",
    "fan_speed",
    "accumulated_cost",
]


class ScenarioValidationError(Exception):
    """Raised when a scenario timeline is malformed."""


@dataclass(frozen=True)
class ScenarioCommand:
    tick: int
    room_id: int
    action: str
    mode: Optional[Mode] = None
    fan_speed: Optional[FanSpeed] = None
    target_temp: Optional[float] = None


def _optional_text(value: object) -> Optional[str]:
    if value is None or pd.isna(value):
        return None
    text = str(value).strip().upper()
    return text or None


def _parse_row(row: pd.Series, position: int) -> ScenarioCommand:
    action = str(row["action"]).strip().lower()
    if action not in SCENARIO_ACTIONS:
        raise ScenarioValidationError(
            f"row {position}: action must be one of {', '.join(SCENARIO_ACTIONS)}"
        )

    try:
        tick = int(row["tick"])
        room_id = int(row["room_id"])
    except (TypeError, ValueError) as exc:
        raise ScenarioValidationError(f"row {position}: tick and room_id must be integers") from exc
    if tick < 0:
        raise ScenarioValidationError(f"row {position}: tick must be non-negative")

    mode_text = _optional_text(row.get("mode"))
    fan_text = _optional_text(row.get("fan_speed"))
    try:
        mode = Mode(mode_text) if mode_text else None
        fan_speed = FanSpeed(fan_text) if fan_text else None
    except ValueError as exc:
        raise ScenarioValidationError(f"row {position}: {exc}") from exc

    raw_target = row.get("target_temp")
    target_temp = None if raw_target is None or pd.isna(raw_target) else float(raw_target)

    if action == "start" and (mode is None or fan_speed is None):
        raise ScenarioValidationError(f"row {position}: start needs mode and fan_speed")

    return ScenarioCommand(
        tick=tick,
        room_id=room_id,
        action=action,
        mode=mode,
        fan_speed=fan_speed,
        target_temp=target_temp,
    )


def parse_scenario_frame(frame: pd.DataFrame) -> list[ScenarioCommand]:
    """Validate a timeline frame and return its commands in tick order."""
    missing = [column for column in REQUIRED_COLUMNS if column not in frame.columns]
    if missing:
        raise ScenarioValidationError(f"missing columns: {', '.join(missing)}")

    commands = [
        _parse_row(row, position)
        for position, (_, row) in enumerate(frame.iterrows(), start=1)
    ]
    return sorted(commands, key=lambda command: command.tick)


def load_scenario_csv(path: Union[str, Path]) -> list[ScenarioCommand]:
    return parse_scenario_frame(pd.read_csv(path))


class ScenarioReplayService:
    """Drive a scheduler tick by tick and snapshot every room after each tick.

    Commands stamped with tick ``t`` are applied before the scheduler advances
    from minute ``t`` to ``t + 1``; the snapshot for ``t`` is taken after that
    advance.
    """

    def __init__(
        self,
        scheduler: ClimateSchedulerService,
        repository: DataRepository,
    ) -> None:
        self._scheduler = scheduler
        self._repository = repository

    def run(
        self,
        commands: list[ScenarioCommand],
        ticks: Optional[int] = None,
    ) -> pd.DataFrame:
        total_ticks = ticks
        if total_ticks is None:
            total_ticks = max((command.tick for command in commands), default=-1) + 1

        by_tick: dict[int, list[ScenarioCommand]] = {}
        for command in commands:
            by_tick.setdefault(command.tick, []).append(command)

        rows: list[dict[str, object]] = []
        for tick in range(total_ticks):
            for command in by_tick.get(tick, []):
                self._apply(command)
            self._scheduler.tick()
            rows.extend(self._snapshot(tick))

        logger.info(
            "Scenario replayed | commands=%s | ticks=%s",
            len(commands),
            total_ticks,
        )
        return pd.DataFrame(rows, columns=SNAPSHOT_COLUMNS)

    def _apply(self, command: ScenarioCommand) -> None:
        if command.action == "start":
            result = self._scheduler.admit(
                command.room_id,
                command.mode,
                command.fan_speed,
                command.target_temp,
            )
        elif command.action == "adjust":
            result = self._scheduler.adjust(
                command.room_id,
                mode=command.mode,
                fan_speed=command.fan_speed,
                target_temp=command.target_temp,
            )
        else:
            result = self._scheduler.cancel(command.room_id)
        logger.info(
            "Scenario command applied | tick=%s | room_id=%s | action=%s | result=%s",
            command.tick,
            command.room_id,
            command.action,
            result,
        )

    def _snapshot(self, tick: int) -> list[dict[str, object]]:
        rate = self._scheduler.config.price_rate_per_degree
        billed: dict[int, float] = {}
        for record in self._repository.list_usage_records():
            billed[record.room_id] = billed.get(record.room_id, 0.0) + record.cost

        rows = []
        for room in self._repository.list_rooms():
            request = self._scheduler.get_active_request(room.room_id)
            unit = self._scheduler.get_unit_for_room(room.room_id)
            in_flight = unit.energy_consumed * rate if unit is not None else 0.0
            rows.append(
                {
                    "tick": tick,
                    "room_id": room.room_id,
                    "state": self._scheduler.room_state(room.room_id).value,
                    "unit_id": unit.unit_id if unit is not None else None,
                    "current_temp": round(room.current_temp, 3),
                    "target_temp": request.target_temp if request is not None else None,
                    "mode": request.mode.value if request is not None else None,
                    "fan_speed": request.fan_speed.value if request is not None else None,
                    "accumulated_cost": round(billed.get(room.room_id, 0.0) + in_flight, 3),
                }
            )
        return rows
