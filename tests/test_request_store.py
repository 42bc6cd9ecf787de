from __future__ import annotations

from dataclasses import replace

from hvac_scheduler.domain.constraints import SchedulerConfig
from hvac_scheduler.domain.models import FanSpeed, Mode
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.request_store import RequestStore
from hvac_scheduler.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    base = get_settings()
    return replace(
        base,
        database_path=tmp_path / filename,
        scheduler_autostart=False,
    )


def _build_store(tmp_path) -> tuple[RequestStore, DataRepository]:
    settings = _build_test_settings(tmp_path, "request_store.db")
    repository = DataRepository(settings)
    repository.initialize_database()
    repository.seed_rooms()
    return RequestStore(SchedulerConfig.from_settings(settings), repository), repository


def test_create_or_replace_keeps_single_active_request(tmp_path):
    store, repository = _build_store(tmp_path)

    first = store.create_or_replace(1, Mode.COOLING, FanSpeed.LOW, 24.0, 32.0)
    second = store.create_or_replace(1, Mode.HEATING, FanSpeed.HIGH, None, 32.0)

    assert first.active is False
    assert store.get_active(1) is second
    assert second.priority == 3
    assert second.target_temp == 22.0

    persisted = repository.list_active_requests()
    assert [item.request_id for item in persisted] == [second.request_id]


def test_create_clamps_target_to_mode_range(tmp_path):
    store, _ = _build_store(tmp_path)
    request = store.create_or_replace(2, Mode.COOLING, FanSpeed.MEDIUM, 12.0, 28.0)
    assert request.target_temp == 18.0


def test_adjust_mode_without_target_resets_default(tmp_path):
    store, _ = _build_store(tmp_path)
    store.create_or_replace(3, Mode.COOLING, FanSpeed.MEDIUM, 20.0, 30.0)

    assert store.adjust(3, mode=Mode.HEATING) is True
    request = store.get_active(3)
    assert request.mode is Mode.HEATING
    assert request.target_temp == 22.0


def test_adjust_fan_speed_updates_priority(tmp_path):
    store, _ = _build_store(tmp_path)
    store.create_or_replace(4, Mode.COOLING, FanSpeed.LOW, None, 29.0)

    assert store.adjust(4, fan_speed=FanSpeed.HIGH) is True
    assert store.get_active(4).priority == 3


def test_adjust_without_changes_returns_false(tmp_path):
    store, _ = _build_store(tmp_path)
    store.create_or_replace(5, Mode.COOLING, FanSpeed.LOW, 25.0, 35.0)

    assert store.adjust(5) is False
    assert store.adjust(5, target_temp=25.0) is False
    assert store.adjust(5, fan_speed=FanSpeed.LOW) is False
    assert store.adjust(9, fan_speed=FanSpeed.HIGH) is False


def test_deactivate_is_idempotent_and_clears_assignment(tmp_path):
    store, repository = _build_store(tmp_path)
    store.create_or_replace(1, Mode.COOLING, FanSpeed.HIGH, None, 32.0)
    store.assign(1, 2)
    assert repository.list_active_requests()[0].assigned_unit == 2

    assert store.deactivate(1) is True
    assert store.deactivate(1) is False
    assert repository.list_active_requests() == []
