# slots.py
"""
Execution slots: bounded runner capacity.

A SlotPool hands out ExecutionSlots without blocking. Schedulers that are
waiting for capacity subscribe a queue and receive a `SlotFreed` message
whenever any slot is released, so they can wait on their own event channel
instead of polling the pool.
"""
from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import List, Optional

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SlotFreed:
    slot: int


class ExecutionSlot:
    """One unit of runner capacity, leased by exactly one job at a time."""

    def __init__(self, pool: SlotPool, slot_id: int):
        self.pool = pool
        self.id = slot_id
        self.holder: Optional[str] = None
        self._released = True

    def release(self) -> None:
        """Return the slot to its pool. Safe to call more than once."""
        self.pool._release(self)

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        return f"ExecutionSlot(id={self.id}, holder={self.holder!r})"


class SlotPool:
    def __init__(self, capacity: Optional[int] = None):
        """
        Args:
            capacity: number of slots; None means unbounded (a new slot is
                created whenever every existing one is leased).
        """
        if capacity is not None and capacity < 1:
            raise ValueError("slot capacity must be at least 1")
        self.capacity = capacity
        self._lock = threading.Lock()
        self._slots: List[ExecutionSlot] = []
        self._free: List[ExecutionSlot] = []
        self._subscribers: List[queue.Queue] = []

    def try_acquire(self, holder: str) -> Optional[ExecutionSlot]:
        with self._lock:
            if self._free:
                slot = self._free.pop(0)
            elif self.capacity is None or len(self._slots) < self.capacity:
                slot = ExecutionSlot(self, len(self._slots))
                self._slots.append(slot)
            else:
                return None
            slot.holder = holder
            slot._released = False
        log.debug("slot %d leased by %s", slot.id, holder)
        return slot

    def _release(self, slot: ExecutionSlot) -> None:
        with self._lock:
            if slot._released:
                return
            log.debug("slot %d released by %s", slot.id, slot.holder)
            slot._released = True
            slot.holder = None
            self._free.append(slot)
            self._free.sort(key=lambda s: s.id)
            subscribers = list(self._subscribers)
        for q in subscribers:
            q.put(SlotFreed(slot.id))

    def subscribe(self, q: queue.Queue) -> None:
        with self._lock:
            self._subscribers.append(q)

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    @property
    def in_use(self) -> int:
        with self._lock:
            return len(self._slots) - len(self._free)
