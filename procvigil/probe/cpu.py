"""CpuAccountant — cumulative CPU time in, instantaneous percentage out.

Each PID gets a cache entry holding the last observed total CPU time and
the wall-clock instant it was observed at. The next observation turns the
difference into a fraction of one core.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from procvigil.types import Pid


@dataclass
class CpuCacheEntry:
    last_total_ms: int
    last_wall_ms: int
    last_percent: float = 0.0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)


class CpuAccountant:
    """Per-PID CPU percentage cache.

    Read-modify-write of one entry is serialized by that entry's lock;
    the map lock is only taken to look up, insert or evict, so busy PIDs
    never wait on each other.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: dict[Pid, CpuCacheEntry] = {}
        self._lock = threading.Lock()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def percent(self, pid: Pid, total_ms: int) -> float:
        """Record ``total_ms`` for ``pid`` and return the percentage since the last call.

        The first observation of a PID reports 0.0. So does an observation
        whose total went backwards: the PID was reused by a new process and
        the entry is reseeded instead of averaged with the old one.
        """
        with self._lock:
            entry = self._entries.get(pid)
            if entry is None:
                self._entries[pid] = CpuCacheEntry(total_ms, self._now_ms())
                return 0.0

        with entry.lock:
            now_ms = self._now_ms()
            if total_ms < entry.last_total_ms:
                entry.last_total_ms = total_ms
                entry.last_wall_ms = now_ms
                entry.last_percent = 0.0
                return 0.0

            wall_delta = now_ms - entry.last_wall_ms
            if wall_delta <= 0:
                return entry.last_percent

            percent = (total_ms - entry.last_total_ms) / wall_delta
            entry.last_total_ms = total_ms
            entry.last_wall_ms = now_ms
            entry.last_percent = percent
            return percent

    def evict(self, pid: Pid) -> None:
        with self._lock:
            self._entries.pop(pid, None)

    def entry(self, pid: Pid) -> CpuCacheEntry | None:
        with self._lock:
            return self._entries.get(pid)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
