"""Admission, preemption and time-slice scheduling of shared climate units.

Every caller-facing operation and every tick phase runs under one re-entrant
state lock that covers the request store, the unit pool, the queues and the
recovery tracker, so a room is never observed in two states at once.

Transitions re-read the room's active request inside the lock before they
apply, which makes an external cancellation win over a tick decision that
has not committed yet.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from threading import Lock, RLock
from typing import Any, Callable, Optional

from hvac_scheduler.domain.constraints import SchedulerConfig, validate_scheduler_config
from hvac_scheduler.domain.errors import InvalidStateError, NotFoundError
from hvac_scheduler.domain.models import (
    FanSpeed,
    Mode,
    ReleaseReason,
    RoomState,
    ServiceRequest,
    Unit,
    UsageRecord,
)
from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.queue_manager import QueueManager
from hvac_scheduler.services.request_store import RequestStore
from hvac_scheduler.services.temperature_simulator import (
    RecoveryTracker,
    step_recovery_temperature,
    step_served_temperature,
)
from hvac_scheduler.services.unit_pool import UnitPool
from hvac_scheduler.utils.config import Settings, get_settings
from hvac_scheduler.utils.logger import get_logger, log_event


logger = get_logger(__name__)

QUEUED = 0


class ClimateSchedulerService:
    """Allocates K shared units among rooms and simulates room temperatures."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._config = SchedulerConfig.from_settings(self._settings)
        validate_scheduler_config(self._config)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._store = RequestStore(self._config, self._repository, self._clock)
        self._pool = UnitPool(self._config.unit_count, self._clock)
        self._queues = QueueManager(self._config.unit_count)
        self._recovery = RecoveryTracker(self._config.recovery_tolerance)

        self._lock = RLock()
        self._tick_lock = Lock()
        self._tick_count = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def tick_count(self) -> int:
        return self._tick_count

    # ------------------------------------------------------------------
    # Caller-facing operations
    # ------------------------------------------------------------------

    def admit(
        self,
        room_id: int,
        mode: Mode,
        fan_speed: FanSpeed,
        target_temp: Optional[float] = None,
    ) -> Optional[int]:
        """Create or replace the room's request.

        Returns the bound unit id, ``0`` when the room was queued, or None
        when the room does not exist.
        """
        with self._lock:
            room = self._repository.get_room(room_id)
            if room is None:
                log_event(logger, "Admission rejected", room_id=room_id, reason="room_not_found")
                return None

            if self._queues.is_serving(room_id):
                self._end_service(room_id, ReleaseReason.REPLACED)
                # the freed unit goes to the queue first; the new request competes for it
                self._fill_waiting()
            self._queues.remove_waiting(room_id)

            request = self._store.create_or_replace(
                room_id=room_id,
                mode=mode,
                fan_speed=fan_speed,
                target_temp=target_temp,
                current_room_temp=room.current_temp,
            )
            return self._admit_request(request)

    def cancel(self, room_id: int) -> bool:
        with self._lock:
            if self._queues.is_serving(room_id) or self._pool.get_by_room(room_id) is not None:
                self._release(room_id, ReleaseReason.CANCELLED)
                log_event(logger, "Service cancelled", room_id=room_id)
                return True

            if self._queues.is_waiting(room_id):
                self._queues.remove_waiting(room_id)
                self._store.deactivate(room_id)
                log_event(logger, "Waiting request cancelled", room_id=room_id)
                return True

            if self._store.deactivate(room_id):
                log_event(logger, "Orphan request cancelled", room_id=room_id)
                return True

            log_event(logger, "Cancel ignored", room_id=room_id, reason="nothing_to_cancel")
            return False

    def adjust(
        self,
        room_id: int,
        mode: Optional[Mode] = None,
        fan_speed: Optional[FanSpeed] = None,
        target_temp: Optional[float] = None,
    ) -> bool:
        with self._lock:
            request = self._store.get_active(room_id)
            if request is None:
                log_event(logger, "Adjust ignored", room_id=room_id, reason="no_active_request")
                return False

            old_priority = request.priority
            if not self._store.adjust(room_id, mode=mode, fan_speed=fan_speed, target_temp=target_temp):
                return False

            unit = self._pool.get_by_room(room_id)
            if unit is not None:
                self._pool.update_settings(
                    unit.unit_id,
                    mode=request.mode,
                    fan_speed=request.fan_speed,
                    target_temp=request.target_temp,
                )

            log_event(
                logger,
                "Request adjusted",
                room_id=room_id,
                mode=request.mode.value,
                fan_speed=request.fan_speed.value,
                target_temp=request.target_temp,
            )

            if request.priority != old_priority:
                self._queues.update_priority(room_id, request.priority)
                if request.priority > old_priority and self._queues.is_waiting(room_id):
                    self._check_priority_increase(room_id)
                elif request.priority < old_priority and self._queues.is_serving(room_id):
                    self._check_priority_decrease(room_id)
            return True

    def list_waiting(self) -> list[int]:
        """Waiting room ids, most eligible first."""
        with self._lock:
            return [entry.room_id for entry in self._queues.waiting_entries()]

    def list_serving(self) -> list[int]:
        """Served room ids, most evictable first."""
        with self._lock:
            return [entry.room_id for entry in self._queues.service_entries()]

    def room_state(self, room_id: int) -> RoomState:
        with self._lock:
            if self._queues.is_serving(room_id):
                return RoomState.SERVING
            if self._queues.is_waiting(room_id):
                return RoomState.WAITING
            return RoomState.IDLE

    def get_active_request(self, room_id: int) -> Optional[ServiceRequest]:
        with self._lock:
            request = self._store.get_active(room_id)
            return replace(request) if request is not None else None

    def get_unit_for_room(self, room_id: int) -> Optional[Unit]:
        with self._lock:
            unit = self._pool.get_by_room(room_id)
            return replace(unit) if unit is not None else None

    def list_units(self) -> list[Unit]:
        with self._lock:
            return [replace(unit) for unit in self._pool.list_units()]

    def is_recovering(self, room_id: int) -> bool:
        with self._lock:
            return room_id in self._recovery

    def queue_status(self) -> dict[str, Any]:
        with self._lock:
            service_rows = []
            for entry in self._queues.service_entries():
                request = self._store.get_active(entry.room_id)
                unit = self._pool.get_by_room(entry.room_id)
                service_rows.append(
                    {
                        "room_id": entry.room_id,
                        "priority": entry.priority,
                        "service_time": entry.elapsed,
                        "unit_id": unit.unit_id if unit is not None else None,
                        "fan_speed": request.fan_speed.value if request is not None else None,
                        "mode": request.mode.value if request is not None else None,
                        "target_temp": request.target_temp if request is not None else None,
                    }
                )
            waiting_rows = []
            for entry in self._queues.waiting_entries():
                request = self._store.get_active(entry.room_id)
                waiting_rows.append(
                    {
                        "room_id": entry.room_id,
                        "priority": entry.priority,
                        "waiting_time": entry.elapsed,
                        "fan_speed": request.fan_speed.value if request is not None else None,
                        "mode": request.mode.value if request is not None else None,
                        "target_temp": request.target_temp if request is not None else None,
                    }
                )
            return {
                "tick": self._tick_count,
                "capacity": self._config.unit_count,
                "service_queue": service_rows,
                "waiting_queue": waiting_rows,
                "free_units": self._pool.list_free(),
            }

    def resync(self) -> None:
        """Rebuild in-memory state from the persisted active requests.

        Requests that held a unit get the same unit back when it is free;
        everything else queues, then free units are backfilled.
        """
        with self._lock:
            persisted = self._repository.list_active_requests()
            self._store.clear()
            self._pool.reset()
            self._queues.clear()
            self._recovery.clear()

            latest_by_room: dict[int, ServiceRequest] = {}
            for request in persisted:
                previous = latest_by_room.get(request.room_id)
                if previous is not None:
                    previous.active = False
                    previous.assigned_unit = None
                    self._repository.save_request(previous)
                latest_by_room[request.room_id] = request

            restored = sorted(
                latest_by_room.values(),
                key=lambda item: (item.request_time, item.request_id or 0),
            )
            for request in restored:
                request.priority = request.fan_speed.priority
                self._store.restore(request)

            for request in restored:
                if self._repository.get_room(request.room_id) is None:
                    self._store.deactivate(request.room_id)
                    continue
                unit_id = request.assigned_unit
                if (
                    unit_id is not None
                    and unit_id in self._pool.list_free()
                    and self._queues.service_size < self._config.unit_count
                ):
                    self._start_service(request.room_id, unit_id)
                else:
                    self._store.unassign(request.room_id)
                    self._enqueue_waiting(request.room_id, request.priority)

            self._fill_waiting()
            log_event(
                logger,
                "Scheduler resynced",
                active_requests=len(restored),
                serving=self._queues.service_size,
                waiting=self._queues.waiting_size,
            )

    # ------------------------------------------------------------------
    # Periodic tick
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Advance one simulated minute. Never raises."""
        with self._tick_lock:
            # rooms released during this tick start drifting on the next one
            with self._lock:
                drifting = list(self._recovery)
            self._run_phase("advance_counters", self._queues.tick_elapsed)
            self._run_phase("time_slice", self._run_time_slice)
            self._run_phase("fill_waiting", self._fill_waiting)
            self._run_phase("served_temperatures", self._step_served_rooms)
            self._run_phase(
                "recovery_temperatures",
                lambda: self._step_recovering_rooms(drifting),
            )
            self._tick_count += 1

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="climate-scheduler-tick",
                daemon=True,
            )
            self._thread.start()
        logger.info(
            "Scheduler ticker started | interval_seconds=%s",
            self._settings.tick_interval_seconds,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("Scheduler ticker stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._settings.tick_interval_seconds):
            self.tick()

    def _run_phase(self, name: str, action: Callable[[], Any]) -> None:
        try:
            with self._lock:
                action()
        except Exception:  # tick must survive any single failure
            logger.exception("Tick phase failed | phase=%s | tick=%s", name, self._tick_count)

    def _run_time_slice(self) -> bool:
        """Swap at most one long-waiting room with an equal-priority served room."""
        eligible = [
            entry
            for entry in self._queues.waiting_entries()
            if entry.elapsed >= self._config.time_slice_ticks
        ]
        eligible.sort(key=lambda entry: (-entry.elapsed, -entry.priority, entry.room_id))
        served = self._queues.service_entries()

        for entry in eligible:
            if self._store.get_active(entry.room_id) is None:
                continue
            # service order puts the longest-served room first within a priority
            victim = next((item for item in served if item.priority == entry.priority), None)
            if victim is None:
                continue
            unit_id = self._evict(victim.room_id)
            self._start_service(entry.room_id, unit_id)
            log_event(
                logger,
                "Time slice rotation",
                room_id=entry.room_id,
                evicted_room_id=victim.room_id,
                unit_id=unit_id,
                waited=entry.elapsed,
            )
            return True
        return False

    def _step_served_rooms(self) -> None:
        for entry in self._queues.service_entries():
            try:
                self._step_served_room(entry.room_id)
            except Exception:
                logger.exception("Served temperature step failed | room_id=%s", entry.room_id)

    def _step_served_room(self, room_id: int) -> None:
        if not self._queues.is_serving(room_id):
            return
        request = self._store.get_active(room_id)
        unit = self._pool.get_by_room(room_id)
        if request is None or unit is None:
            return
        room = self._repository.get_room(room_id)
        if room is None:
            raise NotFoundError(f"room_id={room_id} disappeared while served")

        new_temp, reached = step_served_temperature(
            mode=unit.mode,
            fan_speed=unit.fan_speed,
            current_temp=room.current_temp,
            target_temp=unit.target_temp,
            tolerance=self._config.target_reached_tolerance,
        )
        if new_temp != room.current_temp:
            self._repository.set_current_temp(room_id, new_temp)
        unit.energy_consumed += abs(new_temp - room.current_temp) / unit.fan_speed.minutes_per_degree
        unit.current_temp = new_temp

        if reached:
            self._release(room_id, ReleaseReason.TARGET_REACHED)
            log_event(logger, "Target reached", room_id=room_id, temperature=round(new_temp, 2))

    def _step_recovering_rooms(self, room_ids: list[int]) -> None:
        for room_id in room_ids:
            if room_id not in self._recovery:
                continue
            try:
                self._step_recovering_room(room_id)
            except Exception:
                logger.exception("Recovery temperature step failed | room_id=%s", room_id)

    def _step_recovering_room(self, room_id: int) -> None:
        if self._pool.get_by_room(room_id) is not None:
            self._recovery.cancel(room_id)
            return
        room = self._repository.get_room(room_id)
        if room is None:
            self._recovery.cancel(room_id)
            return
        new_temp, settled = step_recovery_temperature(
            current_temp=room.current_temp,
            baseline_temp=room.baseline_temp,
            step=self._config.recovery_step_degrees,
            tolerance=self._config.recovery_tolerance,
        )
        if new_temp != room.current_temp:
            self._repository.set_current_temp(room_id, new_temp)
        if settled:
            self._recovery.cancel(room_id)

    # ------------------------------------------------------------------
    # Transitions (callers hold the state lock)
    # ------------------------------------------------------------------

    def _admit_request(self, request: ServiceRequest) -> int:
        room_id = request.room_id
        free_units = self._pool.list_free()
        if self._queues.service_size < self._config.unit_count and free_units:
            unit_id = free_units[0]
            self._start_service(room_id, unit_id)
            log_event(logger, "Room admitted", room_id=room_id, unit_id=unit_id, priority=request.priority)
            return unit_id

        victim = self._queues.peek_most_evictable_service()
        if victim is not None and request.priority > victim.priority:
            unit_id = self._evict(victim.room_id)
            self._start_service(room_id, unit_id)
            log_event(
                logger,
                "Room admitted by preemption",
                room_id=room_id,
                evicted_room_id=victim.room_id,
                unit_id=unit_id,
                priority=request.priority,
            )
            return unit_id

        self._enqueue_waiting(room_id, request.priority)
        log_event(logger, "Room queued", room_id=room_id, priority=request.priority)
        return QUEUED

    def _start_service(self, room_id: int, unit_id: int) -> None:
        request = self._store.get_active(room_id)
        if request is None:
            raise InvalidStateError(f"room_id={room_id} has no active request to serve")
        room = self._repository.get_room(room_id)
        current_temp = room.current_temp if room is not None else request.current_room_temp

        self._queues.enqueue_service(room_id, request.priority)
        self._pool.bind(
            unit_id,
            room_id,
            mode=request.mode,
            fan_speed=request.fan_speed,
            target_temp=request.target_temp,
            current_temp=current_temp,
            request_time=request.request_time,
        )
        self._store.assign(room_id, unit_id)
        self._recovery.cancel(room_id)

    def _end_service(self, room_id: int, reason: ReleaseReason) -> Optional[int]:
        """Take the room out of service and free its unit; returns the unit id."""
        entry = self._queues.remove_service(room_id)
        unit = self._pool.get_by_room(room_id)
        self._store.unassign(room_id)
        if unit is None:
            return None
        self._pool.release(unit.unit_id)
        self._record_usage(unit, room_id, entry.elapsed if entry is not None else 0, reason)
        return unit.unit_id

    def _evict(self, room_id: int) -> int:
        unit_id = self._end_service(room_id, ReleaseReason.PREEMPTED)
        if unit_id is None:
            raise InvalidStateError(f"room_id={room_id} held no unit to evict")
        request = self._store.get_active(room_id)
        if request is not None:
            self._enqueue_waiting(room_id, request.priority)
        log_event(logger, "Room preempted", room_id=room_id, unit_id=unit_id)
        return unit_id

    def _release(self, room_id: int, reason: ReleaseReason) -> None:
        self._end_service(room_id, reason)
        self._store.deactivate(room_id)
        self._start_recovery(room_id)
        self._fill_waiting()

    def _enqueue_waiting(self, room_id: int, priority: int) -> None:
        self._queues.enqueue_waiting(room_id, priority)
        self._start_recovery(room_id)

    def _start_recovery(self, room_id: int) -> None:
        room = self._repository.get_room(room_id)
        if room is None:
            return
        self._recovery.start(room, has_unit=self._pool.get_by_room(room_id) is not None)

    def _fill_waiting(self) -> None:
        while self._queues.service_size < self._config.unit_count:
            free_units = self._pool.list_free()
            if not free_units:
                return
            entry = self._queues.peek_most_eligible_waiting()
            if entry is None:
                return
            if self._store.get_active(entry.room_id) is None:
                self._queues.remove_waiting(entry.room_id)
                continue
            self._start_service(entry.room_id, free_units[0])
            log_event(logger, "Waiting room served", room_id=entry.room_id, unit_id=free_units[0])

    def _check_priority_increase(self, room_id: int) -> None:
        request = self._store.get_active(room_id)
        victim = self._queues.peek_most_evictable_service()
        if request is None or victim is None or request.priority <= victim.priority:
            return
        unit_id = self._evict(victim.room_id)
        self._start_service(room_id, unit_id)
        log_event(
            logger,
            "Raised priority preempted",
            room_id=room_id,
            evicted_room_id=victim.room_id,
            unit_id=unit_id,
        )

    def _check_priority_decrease(self, room_id: int) -> None:
        request = self._store.get_active(room_id)
        if request is None:
            return
        waiting = [
            entry
            for entry in self._queues.waiting_entries()
            if self._store.get_active(entry.room_id) is not None
        ]
        # waiting order already ranks higher priority, then longer wait, first
        candidate = next((entry for entry in waiting if entry.priority > request.priority), None)
        if candidate is None:
            candidate = next(
                (
                    entry
                    for entry in waiting
                    if entry.priority == request.priority
                    and entry.elapsed >= self._config.time_slice_ticks
                ),
                None,
            )
        if candidate is None:
            return
        unit_id = self._evict(room_id)
        self._start_service(candidate.room_id, unit_id)
        log_event(
            logger,
            "Lowered priority yielded unit",
            room_id=room_id,
            admitted_room_id=candidate.room_id,
            unit_id=unit_id,
        )

    def _record_usage(
        self,
        unit: Unit,
        room_id: int,
        duration_minutes: int,
        reason: ReleaseReason,
    ) -> None:
        rate = self._config.price_rate_per_degree
        energy = round(unit.energy_consumed, 6)
        record = UsageRecord(
            room_id=room_id,
            unit_id=unit.unit_id,
            request_time=unit.request_time,
            service_start=unit.service_start_time or self._clock(),
            service_end=unit.service_end_time or self._clock(),
            fan_speed=unit.fan_speed,
            mode=unit.mode,
            target_temp=unit.target_temp,
            duration_minutes=duration_minutes,
            temp_change=round(abs(unit.start_temp - unit.current_temp), 6),
            energy=energy,
            cost=round(energy * rate, 6),
            rate=rate,
            reason=reason,
        )
        try:
            self._repository.record_usage(record)
        except sqlite3.Error:
            logger.exception("Usage record write failed | room_id=%s | unit_id=%s", room_id, unit.unit_id)
        log_event(
            logger,
            "Unit released",
            room_id=room_id,
            unit_id=unit.unit_id,
            reason=reason.value,
            minutes=duration_minutes,
            cost=record.cost,
        )
