#!/usr/bin/env python3
"""Validate local climate scheduler environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sqlite3
import sys
import tempfile
from dataclasses import replace
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from hvac_scheduler.domain.models import FanSpeed, Mode, RoomState
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.config import get_settings

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="climate-env-")

    # CHECK 1: Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2: Required packages importable with versions
    package_specs = [
        ("fastapi", "fastapi"),
        ("uvicorn", "uvicorn"),
        ("pydantic", "pydantic"),
        ("pandas", "pandas"),
        ("httpx", "httpx"),
        ("pytest", "pytest"),
    ]
    import_errors: list[str] = []
    for module_name, dist_name in package_specs:
        try:
            importlib.import_module(module_name)
            version(dist_name)
        except (ImportError, PackageNotFoundError) as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        temp_db_path = Path(temp_dir) / "climate_validation.db"
        validation_settings = replace(
            get_settings(),
            database_path=temp_db_path,
            scheduler_autostart=False,
        )
        repository = DataRepository(validation_settings)

        # CHECK 3: Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except RuntimeError as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4: Room seeding
        try:
            repository.seed_rooms()
            with sqlite3.connect(temp_db_path) as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) FROM Rooms;")
                seeded_rooms = int(cursor.fetchone()[0])
            expected = len(validation_settings.seed_room_baselines)
            if seeded_rooms != expected:
                raise RuntimeError(f"expected {expected} rooms, got {seeded_rooms}")
            ok, line = _print_result("Room seeding", True, f": {seeded_rooms} rooms")
        except (RuntimeError, sqlite3.Error) as exc:
            ok, line = _print_result("Room seeding", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5: Scheduler smoke run: K+1 rooms, one queues, ticks advance
        try:
            scheduler = ClimateSchedulerService(
                repository=repository,
                settings=validation_settings,
            )
            scheduler.resync()
            room_ids = [room.room_id for room in repository.list_rooms()]
            for room_id in room_ids[: validation_settings.unit_count + 1]:
                scheduler.admit(room_id, Mode.COOLING, FanSpeed.MEDIUM, None)
            waiting = scheduler.list_waiting()
            if len(scheduler.list_serving()) != validation_settings.unit_count or len(waiting) != 1:
                raise RuntimeError("unexpected queue sizes after admission")
            for _ in range(validation_settings.time_slice_ticks):
                scheduler.tick()
            if scheduler.room_state(waiting[0]) is not RoomState.SERVING:
                raise RuntimeError("time-slice rotation did not serve the waiting room")
            ok, line = _print_result(
                "Scheduler smoke run",
                True,
                f": {scheduler.tick_count} ticks",
            )
        except (RuntimeError, sqlite3.Error) as exc:
            ok, line = _print_result("Scheduler smoke run", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Climate Scheduler Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
