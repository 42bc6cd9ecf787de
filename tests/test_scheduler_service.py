from __future__ import annotations

import sqlite3
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest

from hvac_scheduler.domain.models import FanSpeed, Mode, ReleaseReason, RoomState
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.config import get_settings


# seeded rooms: 1 -> 32.0, 2 -> 28.0, 3 -> 30.0, 4 -> 29.0, 5 -> 35.0


def _build_test_settings(tmp_path, filename: str, **overrides):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        scheduler_autostart=False,
        **overrides,
    )


def _build_scheduler(tmp_path, **overrides) -> tuple[ClimateSchedulerService, DataRepository]:
    settings = _build_test_settings(tmp_path, "scheduler.db", **overrides)
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_rooms()
    return ClimateSchedulerService(repository=repository, settings=settings), repository


def _assert_invariants(service: ClimateSchedulerService) -> None:
    serving = service.list_serving()
    waiting = service.list_waiting()
    assert len(serving) <= service.config.unit_count
    assert not set(serving) & set(waiting)

    busy = {unit.serving_room: unit.unit_id for unit in service.list_units() if unit.is_busy}
    assert set(busy) == set(serving)
    for room_id, unit_id in busy.items():
        request = service.get_active_request(room_id)
        assert request is not None
        assert request.assigned_unit == unit_id
    for room_id in waiting:
        request = service.get_active_request(room_id)
        assert request is not None
        assert request.assigned_unit is None


# --- admission and preemption ---

def test_admit_serves_until_capacity_then_queues(tmp_path):
    service, _ = _build_scheduler(tmp_path)

    assert [service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0) for room_id in (1, 2, 3)] == [1, 2, 3]
    assert service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0) == 0

    assert service.room_state(4) is RoomState.WAITING
    assert service.list_waiting() == [4]
    _assert_invariants(service)


def test_higher_priority_arrival_preempts_lowest_served_room(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(2, Mode.COOLING, FanSpeed.MEDIUM, 18.0)
    service.admit(3, Mode.COOLING, FanSpeed.LOW, 18.0)

    assigned = service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    assert assigned == 3
    assert service.room_state(3) is RoomState.WAITING
    assert service.room_state(4) is RoomState.SERVING
    assert service.list_serving() == [2, 4, 1]
    assert service.list_waiting() == [3]

    records = repository.list_usage_records(3)
    assert [record.reason for record in records] == [ReleaseReason.PREEMPTED]
    assert service.get_active_request(3).active is True
    _assert_invariants(service)


def test_equal_priority_arrival_is_queued(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.LOW, 18.0)

    assert service.admit(4, Mode.COOLING, FanSpeed.LOW, 18.0) == 0
    assert service.list_serving() == [1, 2, 3]


def test_admit_unknown_room_returns_none(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    assert service.admit(404, Mode.COOLING, FanSpeed.HIGH, None) is None
    assert service.room_state(404) is RoomState.IDLE


def test_readmitting_served_room_replaces_its_request(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.LOW, 20.0)

    assert service.admit(1, Mode.HEATING, FanSpeed.HIGH, None) == 1

    request = service.get_active_request(1)
    assert request.mode is Mode.HEATING
    assert request.target_temp == 22.0
    assert [record.reason for record in repository.list_usage_records(1)] == [ReleaseReason.REPLACED]
    assert len(repository.list_active_requests()) == 1


def test_readmitting_served_room_at_lower_priority_yields_to_waiting_room(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    assert service.admit(1, Mode.COOLING, FanSpeed.LOW, 18.0) == 0

    assert service.room_state(4) is RoomState.SERVING
    assert service.get_unit_for_room(4).unit_id == 1
    assert service.list_waiting() == [1]

    for _ in range(4):
        service.tick()
    assert service.room_state(4) is RoomState.SERVING
    assert service.room_state(1) is RoomState.WAITING
    _assert_invariants(service)


# --- time slice ---

def test_time_slice_swaps_one_waiting_room_per_tick(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3, 4, 5):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    service.tick()
    assert service.list_waiting() == [4, 5]

    service.tick()
    assert service.room_state(4) is RoomState.SERVING
    assert service.room_state(1) is RoomState.WAITING
    assert service.get_unit_for_room(4).unit_id == 1
    assert service.list_waiting() == [5, 1]

    service.tick()
    assert service.room_state(5) is RoomState.SERVING
    assert service.room_state(2) is RoomState.WAITING
    _assert_invariants(service)


def test_time_slice_never_evicts_higher_priority_room(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    for _ in range(5):
        service.tick()

    assert service.room_state(4) is RoomState.WAITING
    assert service.list_serving() == [1, 2, 3]


# --- cancellation ---

def test_cancel_served_room_frees_unit_for_waiting_room(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.LOW, 18.0)

    assert service.cancel(2) is True
    assert service.room_state(2) is RoomState.IDLE
    assert service.room_state(4) is RoomState.SERVING
    assert service.get_unit_for_room(4).unit_id == 2
    assert [record.reason for record in repository.list_usage_records(2)] == [ReleaseReason.CANCELLED]

    assert service.cancel(2) is False
    _assert_invariants(service)


def test_cancel_waiting_room_touches_no_unit(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.LOW, 18.0)
    units_before = [(unit.unit_id, unit.serving_room) for unit in service.list_units()]

    assert service.cancel(4) is True

    assert [(unit.unit_id, unit.serving_room) for unit in service.list_units()] == units_before
    assert service.list_waiting() == []
    assert repository.count_usage_records() == 0


def test_cancel_idle_room_returns_false(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    assert service.cancel(5) is False


# --- adjust ---

def test_lowering_fan_speed_yields_unit_to_higher_waiting_room(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3, 4):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    assert service.adjust(1, fan_speed=FanSpeed.LOW) is True

    assert service.room_state(1) is RoomState.WAITING
    assert service.room_state(4) is RoomState.SERVING
    assert service.get_unit_for_room(4).unit_id == 1
    _assert_invariants(service)


def test_lowering_fan_speed_yields_to_equal_priority_room_that_waited(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    service.tick()
    service.tick()
    assert service.room_state(4) is RoomState.WAITING

    assert service.adjust(2, fan_speed=FanSpeed.MEDIUM) is True

    assert service.room_state(4) is RoomState.SERVING
    assert service.get_unit_for_room(4).unit_id == 2
    assert service.room_state(2) is RoomState.WAITING
    _assert_invariants(service)


def test_lowering_fan_speed_keeps_unit_when_equal_waiter_is_fresh(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.MEDIUM, 18.0)
    service.tick()

    assert service.adjust(2, fan_speed=FanSpeed.MEDIUM) is True

    assert service.room_state(2) is RoomState.SERVING
    assert service.room_state(4) is RoomState.WAITING


def test_raising_fan_speed_of_waiting_room_preempts(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.LOW, 18.0)

    assert service.adjust(4, fan_speed=FanSpeed.HIGH) is True

    assert service.room_state(4) is RoomState.SERVING
    assert service.room_state(1) is RoomState.WAITING
    _assert_invariants(service)


def test_adjust_target_updates_bound_unit(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.HIGH, None)

    assert service.adjust(1, target_temp=40.0) is True
    assert service.get_unit_for_room(1).target_temp == 28.0
    assert service.adjust(1, target_temp=28.0) is False


def test_adjust_without_active_request_returns_false(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    assert service.adjust(2, fan_speed=FanSpeed.HIGH) is False


# --- temperature simulation and billing ---

def test_cooling_thirty_to_twenty_five_at_high_releases_on_fifth_tick(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    service.admit(3, Mode.COOLING, FanSpeed.HIGH, 25.0)

    for _ in range(4):
        service.tick()
    assert service.room_state(3) is RoomState.SERVING
    assert repository.get_room(3).current_temp == 26.0

    service.tick()
    assert repository.get_room(3).current_temp == 25.0
    assert service.room_state(3) is RoomState.IDLE
    assert service.get_active_request(3) is None

    (record,) = repository.list_usage_records(3)
    assert record.reason is ReleaseReason.TARGET_REACHED
    assert record.duration_minutes == 5
    assert record.temp_change == pytest.approx(5.0)
    assert record.energy == pytest.approx(5.0)
    assert record.cost == pytest.approx(5.0 * service.config.price_rate_per_degree)

    assert service.is_recovering(3)
    service.tick()
    assert repository.get_room(3).current_temp == 25.5


def test_energy_is_scaled_by_fan_speed(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    service.admit(3, Mode.COOLING, FanSpeed.LOW, 18.0)

    for _ in range(3):
        service.tick()
    service.cancel(3)

    (record,) = repository.list_usage_records(3)
    assert record.temp_change == pytest.approx(1.0, abs=1e-5)
    assert record.energy == pytest.approx(1.0 / 3.0, abs=1e-5)
    assert record.cost == pytest.approx(record.energy * service.config.price_rate_per_degree, abs=1e-5)


def test_target_reached_fills_waiting_room_in_same_tick(tmp_path):
    service, _ = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(2, Mode.COOLING, FanSpeed.HIGH, 27.0)
    service.admit(3, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(4, Mode.COOLING, FanSpeed.LOW, 18.0)

    service.tick()

    assert service.room_state(2) is RoomState.IDLE
    assert service.room_state(4) is RoomState.SERVING
    _assert_invariants(service)


def test_cancelled_room_drifts_back_to_baseline(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.tick()
    service.tick()
    assert repository.get_room(1).current_temp == 30.0

    service.cancel(1)
    service.tick()

    assert repository.get_room(1).current_temp == 30.5
    assert service.is_recovering(1)


def test_tick_isolates_failing_room(tmp_path, monkeypatch):
    service, repository = _build_scheduler(tmp_path)
    service.admit(1, Mode.COOLING, FanSpeed.HIGH, 18.0)
    service.admit(3, Mode.COOLING, FanSpeed.HIGH, 18.0)
    original = repository.set_current_temp

    def flaky_set_current_temp(room_id: int, value: float) -> None:
        if room_id == 1:
            raise sqlite3.OperationalError("database is locked")
        original(room_id, value)

    monkeypatch.setattr(repository, "set_current_temp", flaky_set_current_temp)

    service.tick()

    assert service.tick_count == 1
    assert repository.get_room(1).current_temp == 32.0
    assert repository.get_room(3).current_temp == 29.0


# --- invariants and restart ---

def test_invariants_hold_across_mixed_operations(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    repository.add_room(6, 31.0)
    fan_cycle = [FanSpeed.LOW, FanSpeed.HIGH, FanSpeed.MEDIUM]

    for step in range(18):
        room_id = step % 6 + 1
        if step % 5 == 4:
            service.cancel(room_id)
        elif step % 4 == 3:
            service.adjust(room_id, fan_speed=fan_cycle[step % 3])
        else:
            service.admit(room_id, Mode.COOLING, fan_cycle[step % 3], 18.0)
        _assert_invariants(service)
        service.tick()
        _assert_invariants(service)


def test_resync_rebuilds_same_membership(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3, 4):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)
    bindings = {unit.unit_id: unit.serving_room for unit in service.list_units()}

    settings = _build_test_settings(tmp_path, "scheduler.db")
    restarted = ClimateSchedulerService(repository=repository, settings=settings)
    restarted.resync()

    assert sorted(restarted.list_serving()) == sorted(service.list_serving())
    assert restarted.list_waiting() == service.list_waiting()
    assert {unit.unit_id: unit.serving_room for unit in restarted.list_units()} == bindings
    _assert_invariants(restarted)


def test_resync_with_fewer_units_queues_overflow(tmp_path):
    service, repository = _build_scheduler(tmp_path)
    for room_id in (1, 2, 3, 4):
        service.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, 18.0)

    smaller = _build_test_settings(tmp_path, "scheduler.db", unit_count=2)
    restarted = ClimateSchedulerService(repository=repository, settings=smaller)
    restarted.resync()

    assert restarted.list_serving() == [1, 2]
    assert restarted.list_waiting() == [3, 4]
    _assert_invariants(restarted)


def test_background_ticker_advances_and_stops(tmp_path):
    service, _ = _build_scheduler(tmp_path, tick_interval_seconds=0.01)
    service.start()
    deadline = time.monotonic() + 5.0
    while service.tick_count == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    service.stop()

    assert service.tick_count > 0
    assert service.is_running is False


def test_concurrent_callers_keep_invariants_while_ticker_runs(tmp_path):
    service, repository = _build_scheduler(tmp_path, tick_interval_seconds=0.001)
    for room_id, baseline in ((6, 31.0), (7, 27.0), (8, 33.0)):
        repository.add_room(room_id, baseline)
    fan_cycle = [FanSpeed.LOW, FanSpeed.MEDIUM, FanSpeed.HIGH]

    def caller(room_ids: tuple[int, ...], seed: int) -> None:
        for step in range(30):
            room_id = room_ids[(step + seed) % len(room_ids)]
            fan_speed = fan_cycle[(step + seed) % 3]
            if step % 4 == 3:
                service.cancel(room_id)
            elif step % 3 == 2:
                service.adjust(room_id, fan_speed=fan_speed)
            else:
                service.admit(room_id, Mode.COOLING, fan_speed, 18.0)
            with service._lock:
                _assert_invariants(service)

    service.start()
    try:
        with ThreadPoolExecutor(max_workers=4) as executor:
            futures = [
                executor.submit(caller, room_ids, seed)
                for seed, room_ids in enumerate(((1, 2), (3, 4), (5, 6), (7, 8)))
            ]
            for future in futures:
                future.result()
        deadline = time.monotonic() + 5.0
        while service.tick_count == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        service.stop()

    assert service.tick_count > 0
    _assert_invariants(service)
