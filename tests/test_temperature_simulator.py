from __future__ import annotations

import pytest

from hvac_scheduler.domain.models import FanSpeed, Mode, Room
from hvac_scheduler.services.temperature_simulator import (
    RecoveryTracker,
    step_recovery_temperature,
    step_served_temperature,
)


@pytest.mark.parametrize(
    ("fan_speed", "expected"),
    [
        (FanSpeed.HIGH, 29.0),
        (FanSpeed.MEDIUM, 29.5),
        (FanSpeed.LOW, 30.0 - 1.0 / 3.0),
    ],
)
def test_cooling_step_depends_on_fan_speed(fan_speed: FanSpeed, expected: float) -> None:
    new_temp, reached = step_served_temperature(Mode.COOLING, fan_speed, 30.0, 25.0)
    assert new_temp == pytest.approx(expected)
    assert reached is False


def test_cooling_from_thirty_to_twenty_five_takes_five_high_ticks() -> None:
    current = 30.0
    history = []
    for _ in range(5):
        current, reached = step_served_temperature(Mode.COOLING, FanSpeed.HIGH, current, 25.0)
        history.append(reached)
    assert current == 25.0
    assert history == [False, False, False, False, True]


def test_heating_never_overshoots_target() -> None:
    new_temp, reached = step_served_temperature(Mode.HEATING, FanSpeed.HIGH, 21.5, 22.0)
    assert new_temp == 22.0
    assert reached is True


def test_served_room_on_wrong_side_holds_temperature() -> None:
    new_temp, reached = step_served_temperature(Mode.COOLING, FanSpeed.HIGH, 20.0, 25.0)
    assert new_temp == 20.0
    assert reached is False


def test_recovery_drifts_half_degree_toward_baseline() -> None:
    assert step_recovery_temperature(25.0, 28.0) == (25.5, False)
    assert step_recovery_temperature(30.0, 28.0) == (29.5, False)
    assert step_recovery_temperature(27.8, 28.0) == (28.0, True)


def test_recovery_at_baseline_is_settled() -> None:
    assert step_recovery_temperature(28.05, 28.0) == (28.05, True)


def test_recovery_tracker_skips_rooms_with_unit_or_at_baseline() -> None:
    tracker = RecoveryTracker()
    assert tracker.start(Room(room_id=1, baseline_temp=32.0, current_temp=27.0), has_unit=False)
    assert not tracker.start(Room(room_id=2, baseline_temp=28.0, current_temp=28.0), has_unit=False)
    assert not tracker.start(Room(room_id=3, baseline_temp=30.0, current_temp=26.0), has_unit=True)
    assert list(tracker) == [1]

    assert not tracker.start(Room(room_id=1, baseline_temp=32.0, current_temp=27.0), has_unit=True)
    assert 1 not in tracker
    assert len(tracker) == 0
