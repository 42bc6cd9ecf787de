"""Repository layer responsible for all database access."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional

from hvac_scheduler.domain.models import (
    FanSpeed,
    Mode,
    ReleaseReason,
    Room,
    ServiceRequest,
    UsageRecord,
)
from hvac_scheduler.utils.config import Settings, get_settings
from hvac_scheduler.utils.logger import get_logger


logger = get_logger(__name__)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _to_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DataRepository:
    """SQLite-backed room provider, request journal and billing sink.

    The scheduler keeps the authoritative state in memory; this class only
    receives writes from it and serves them back on restart.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Rooms (
                        id INTEGER PRIMARY KEY,
                        baseline_temp REAL NOT NULL,
                        current_temp REAL NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS ClimateRequests (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id INTEGER NOT NULL,
                        mode TEXT NOT NULL CHECK (mode IN ('COOLING', 'HEATING')),
                        fan_speed TEXT NOT NULL CHECK (fan_speed IN ('HIGH', 'MEDIUM', 'LOW')),
                        target_temp REAL NOT NULL,
                        priority INTEGER NOT NULL,
                        request_time TEXT NOT NULL,
                        current_room_temp REAL NOT NULL,
                        assigned_unit INTEGER,
                        active INTEGER NOT NULL CHECK (active IN (0,1)),
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS UsageRecords (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id INTEGER NOT NULL,
                        unit_id INTEGER NOT NULL,
                        request_time TEXT,
                        service_start TEXT NOT NULL,
                        service_end TEXT NOT NULL,
                        fan_speed TEXT NOT NULL,
                        mode TEXT NOT NULL,
                        target_temp REAL NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        temp_change REAL NOT NULL,
                        energy REAL NOT NULL,
                        cost REAL NOT NULL,
                        rate REAL NOT NULL,
                        reason TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );
                    """
                )

                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_requests_room_active
                    ON ClimateRequests(room_id, active);
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_usage_room
                    ON UsageRecords(room_id, service_start);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_rooms(self) -> None:
        """Insert the configured rooms at their baseline only when none exist."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("SELECT COUNT(*) AS count FROM Rooms;")
                if int(cursor.fetchone()["count"]) > 0:
                    logger.info("Rooms already present; skipping seed")
                    return
                cursor.executemany(
                    """
                    INSERT INTO Rooms (id, baseline_temp, current_temp)
                    VALUES (?, ?, ?);
                    """,
                    [
                        (room_id, baseline, baseline)
                        for room_id, baseline in self._settings.seed_room_baselines
                    ],
                )
                conn.commit()
            logger.info("Seeded %s rooms", len(self._settings.seed_room_baselines))
        except sqlite3.Error as exc:
            raise RuntimeError(f"Room seeding failed: {exc}") from exc

    def add_room(
        self,
        room_id: int,
        baseline_temp: float,
        current_temp: Optional[float] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO Rooms (id, baseline_temp, current_temp)
                VALUES (?, ?, ?);
                """,
                (
                    room_id,
                    baseline_temp,
                    baseline_temp if current_temp is None else current_temp,
                ),
            )
            conn.commit()

    def get_room(self, room_id: int) -> Optional[Room]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, baseline_temp, current_temp FROM Rooms WHERE id = ?;",
                (room_id,),
            )
            row = cursor.fetchone()
            if row is None:
                return None
            return Room(
                room_id=int(row["id"]),
                baseline_temp=float(row["baseline_temp"]),
                current_temp=float(row["current_temp"]),
            )

    def list_rooms(self) -> list[Room]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT id, baseline_temp, current_temp FROM Rooms ORDER BY id ASC;"
            )
            return [
                Room(
                    room_id=int(row["id"]),
                    baseline_temp=float(row["baseline_temp"]),
                    current_temp=float(row["current_temp"]),
                )
                for row in cursor.fetchall()
            ]

    def set_current_temp(self, room_id: int, value: float) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE Rooms SET current_temp = ? WHERE id = ?;",
                (value, room_id),
            )
            conn.commit()

    def save_request(self, request: ServiceRequest) -> int:
        """Insert a new request row or update the existing one; return its id."""
        values = (
            request.room_id,
            request.mode.value,
            request.fan_speed.value,
            request.target_temp,
            request.priority,
            _to_text(request.request_time),
            request.current_room_temp,
            request.assigned_unit,
            1 if request.active else 0,
        )
        with self._connect() as conn:
            cursor = conn.cursor()
            if request.request_id is None:
                cursor.execute(
                    """
                    INSERT INTO ClimateRequests (
                        room_id,
                        mode,
                        fan_speed,
                        target_temp,
                        priority,
                        request_time,
                        current_room_temp,
                        assigned_unit,
                        active
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
                    """,
                    values,
                )
                conn.commit()
                return int(cursor.lastrowid)
            cursor.execute(
                """
                UPDATE ClimateRequests
                SET room_id = ?,
                    mode = ?,
                    fan_speed = ?,
                    target_temp = ?,
                    priority = ?,
                    request_time = ?,
                    current_room_temp = ?,
                    assigned_unit = ?,
                    active = ?
                WHERE id = ?;
                """,
                values + (request.request_id,),
            )
            conn.commit()
            return int(request.request_id)

    def list_active_requests(self) -> list[ServiceRequest]:
        """Return active requests oldest first, the order resync replays them in."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT
                    id,
                    room_id,
                    mode,
                    fan_speed,
                    target_temp,
                    priority,
                    request_time,
                    current_room_temp,
                    assigned_unit
                FROM ClimateRequests
                WHERE active = 1
                ORDER BY request_time ASC, id ASC;
                """
            )
            return [
                ServiceRequest(
                    room_id=int(row["room_id"]),
                    mode=Mode(row["mode"]),
                    fan_speed=FanSpeed(row["fan_speed"]),
                    target_temp=float(row["target_temp"]),
                    priority=int(row["priority"]),
                    request_time=_to_datetime(row["request_time"]),
                    current_room_temp=float(row["current_room_temp"]),
                    assigned_unit=(
                        int(row["assigned_unit"])
                        if row["assigned_unit"] is not None
                        else None
                    ),
                    active=True,
                    request_id=int(row["id"]),
                )
                for row in cursor.fetchall()
            ]

    def record_usage(self, record: UsageRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO UsageRecords (
                    room_id,
                    unit_id,
                    request_time,
                    service_start,
                    service_end,
                    fan_speed,
                    mode,
                    target_temp,
                    duration_minutes,
                    temp_change,
                    energy,
                    cost,
                    rate,
                    reason
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record.room_id,
                    record.unit_id,
                    _to_text(record.request_time),
                    _to_text(record.service_start),
                    _to_text(record.service_end),
                    record.fan_speed.value,
                    record.mode.value,
                    record.target_temp,
                    record.duration_minutes,
                    record.temp_change,
                    record.energy,
                    record.cost,
                    record.rate,
                    record.reason.value,
                ),
            )
            conn.commit()

    def list_usage_records(self, room_id: Optional[int] = None) -> list[UsageRecord]:
        query = """
            SELECT *
            FROM UsageRecords
        """
        params: tuple[int, ...] = ()
        if room_id is not None:
            query += " WHERE room_id = ?"
            params = (room_id,)
        query += " ORDER BY id ASC;"
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [
                UsageRecord(
                    room_id=int(row["room_id"]),
                    unit_id=int(row["unit_id"]),
                    request_time=_to_datetime(row["request_time"]),
                    service_start=_to_datetime(row["service_start"]),
                    service_end=_to_datetime(row["service_end"]),
                    fan_speed=FanSpeed(row["fan_speed"]),
                    mode=Mode(row["mode"]),
                    target_temp=float(row["target_temp"]),
                    duration_minutes=int(row["duration_minutes"]),
                    temp_change=float(row["temp_change"]),
                    energy=float(row["energy"]),
                    cost=float(row["cost"]),
                    rate=float(row["rate"]),
                    reason=ReleaseReason(row["reason"]),
                )
                for row in cursor.fetchall()
            ]

    def count_usage_records(self) -> int:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*) AS count FROM UsageRecords;")
            return int(cursor.fetchone()["count"])
