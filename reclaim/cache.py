"""In-memory TTL cache of capacity-constrained offerings.

Written by the interruption controller when a notification proves an
offering is short on capacity; read by the scheduler before it picks an
instance shape. Process-local: entries are re-derived from future
notifications after a restart.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from reclaim.constants import UNAVAILABLE_OFFERINGS_TTL_SECONDS


@dataclass(frozen=True, slots=True)
class OfferingKey:
    """An (instance type, zone, capacity type) combination."""

    instance_type: str
    zone: str
    capacity_type: str

    def __str__(self) -> str:
        return f"{self.capacity_type}:{self.instance_type}:{self.zone}"


class UnavailableOfferings:
    """TTL set of offerings that recently ran out of capacity.

    Args:
        ttl: Seconds an entry stays unavailable after its last mark.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float = UNAVAILABLE_OFFERINGS_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[OfferingKey, float] = {}
        self._lock = threading.Lock()
        self._seq_num = 0

    @property
    def seq_num(self) -> int:
        """Changes on every mark so readers can detect a stale view."""
        return self._seq_num

    def mark_unavailable(self, instance_type: str, zone: str, capacity_type: str, reason: str = "") -> None:
        key = OfferingKey(instance_type, zone, capacity_type)
        logger.debug(f"Marking {key} unavailable for {self.ttl:.0f}s: {reason or 'no reason'}")
        with self._lock:
            self._entries[key] = self._clock()
            self._seq_num += 1

    def is_unavailable(self, instance_type: str, zone: str, capacity_type: str) -> bool:
        key = OfferingKey(instance_type, zone, capacity_type)
        with self._lock:
            inserted = self._entries.get(key)
            if inserted is None:
                return False
            if self._clock() - inserted >= self.ttl:
                del self._entries[key]
                return False
            return True

    def sweep(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, inserted in self._entries.items() if now - inserted >= self.ttl]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        self.sweep()
        return len(self._entries)
