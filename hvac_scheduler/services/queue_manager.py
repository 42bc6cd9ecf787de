"""Waiting and service collections with the scheduler's total orders.

Waiting order: priority desc, elapsed wait desc, room id asc.
Service order ("most evictable" first): priority asc, elapsed service desc,
room id asc.
"""

from __future__ import annotations

import heapq
import itertools
from typing import Callable, Optional

from hvac_scheduler.domain.errors import InvalidStateError
from hvac_scheduler.domain.models import QueueEntry


SortKey = tuple[int, int, int]


def waiting_sort_key(entry: QueueEntry) -> SortKey:
    return (-entry.priority, -entry.elapsed, entry.room_id)


def service_sort_key(entry: QueueEntry) -> SortKey:
    return (entry.priority, -entry.elapsed, entry.room_id)


class _OrderedEntries:
    """Heap keyed by room with lazy invalidation of stale heap items."""

    def __init__(self, sort_key: Callable[[QueueEntry], SortKey]) -> None:
        self._sort_key = sort_key
        self._entries: dict[int, QueueEntry] = {}
        self._heap: list[tuple[SortKey, int]] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, room_id: int) -> bool:
        return room_id in self._entries

    def get(self, room_id: int) -> Optional[QueueEntry]:
        return self._entries.get(room_id)

    def push(self, entry: QueueEntry) -> None:
        self._entries[entry.room_id] = entry
        heapq.heappush(self._heap, (self._sort_key(entry), entry.room_id))

    def remove(self, room_id: int) -> Optional[QueueEntry]:
        return self._entries.pop(room_id, None)

    def reprioritize(self, room_id: int, priority: int) -> None:
        entry = self._entries.get(room_id)
        if entry is None or entry.priority == priority:
            return
        entry.priority = priority
        heapq.heappush(self._heap, (self._sort_key(entry), room_id))

    def peek(self) -> Optional[QueueEntry]:
        while self._heap:
            key, room_id = self._heap[0]
            entry = self._entries.get(room_id)
            if entry is not None and self._sort_key(entry) == key:
                return entry
            heapq.heappop(self._heap)
        return None

    def rebuild(self) -> None:
        self._heap = [
            (self._sort_key(entry), room_id)
            for room_id, entry in self._entries.items()
        ]
        heapq.heapify(self._heap)

    def ordered(self) -> list[QueueEntry]:
        return sorted(self._entries.values(), key=self._sort_key)

    def clear(self) -> None:
        self._entries.clear()
        self._heap.clear()


class QueueManager:
    """Owns room membership of the waiting and service sets.

    A room is in at most one collection; enqueueing it into one removes it
    from the other. Every mutation is a no-op for rooms that are absent.
    """

    def __init__(self, service_capacity: int) -> None:
        self._service_capacity = service_capacity
        self._waiting = _OrderedEntries(waiting_sort_key)
        self._service = _OrderedEntries(service_sort_key)
        self._sequence = itertools.count(1)

    @property
    def service_capacity(self) -> int:
        return self._service_capacity

    @property
    def waiting_size(self) -> int:
        return len(self._waiting)

    @property
    def service_size(self) -> int:
        return len(self._service)

    def is_waiting(self, room_id: int) -> bool:
        return room_id in self._waiting

    def is_serving(self, room_id: int) -> bool:
        return room_id in self._service

    def get_waiting(self, room_id: int) -> Optional[QueueEntry]:
        return self._waiting.get(room_id)

    def get_service(self, room_id: int) -> Optional[QueueEntry]:
        return self._service.get(room_id)

    def enqueue_waiting(self, room_id: int, priority: int) -> QueueEntry:
        self._service.remove(room_id)
        self._waiting.remove(room_id)
        entry = QueueEntry(room_id=room_id, priority=priority, sequence=next(self._sequence))
        self._waiting.push(entry)
        return entry

    def remove_waiting(self, room_id: int) -> Optional[QueueEntry]:
        return self._waiting.remove(room_id)

    def peek_most_eligible_waiting(self) -> Optional[QueueEntry]:
        return self._waiting.peek()

    def enqueue_service(self, room_id: int, priority: int) -> QueueEntry:
        if room_id not in self._service and len(self._service) >= self._service_capacity:
            raise InvalidStateError(
                f"service set is full ({self._service_capacity}); cannot add room_id={room_id}"
            )
        self._waiting.remove(room_id)
        self._service.remove(room_id)
        entry = QueueEntry(room_id=room_id, priority=priority, sequence=next(self._sequence))
        self._service.push(entry)
        return entry

    def remove_service(self, room_id: int) -> Optional[QueueEntry]:
        return self._service.remove(room_id)

    def peek_most_evictable_service(self) -> Optional[QueueEntry]:
        return self._service.peek()

    def update_priority(self, room_id: int, new_priority: int) -> None:
        self._waiting.reprioritize(room_id, new_priority)
        self._service.reprioritize(room_id, new_priority)

    def tick_elapsed(self) -> None:
        for collection in (self._waiting, self._service):
            for entry in collection.ordered():
                entry.elapsed += 1
            collection.rebuild()

    def waiting_entries(self) -> list[QueueEntry]:
        return self._waiting.ordered()

    def service_entries(self) -> list[QueueEntry]:
        return self._service.ordered()

    def clear(self) -> None:
        self._waiting.clear()
        self._service.clear()
