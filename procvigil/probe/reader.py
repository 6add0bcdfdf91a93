"""MetricReader — the read surface every watcher and child set shares.

One instance is constructed explicitly and passed to whoever needs it.
All operations are safe to call from worker threads concurrently; no lock
is held while a strategy touches the operating system.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Hashable

from procvigil.config import settings
from procvigil.exceptions import InvalidQueryError
from procvigil.probe.cpu import CpuAccountant
from procvigil.probe.stat import parse_ppid_query
from procvigil.probe.strategies import ProbeStrategy, select_strategy
from procvigil.types import Pid, ProcCpu, ProcessSample

_logger = logging.getLogger(__name__)


class ExpiringCache:
    """Tiny TTL cache; an ``expire`` of 0 disables it."""

    def __init__(self, expire: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.expire = expire
        self._clock = clock
        self._values: dict[Hashable, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        if self.expire <= 0:
            return None
        with self._lock:
            hit = self._values.get(key)
            if hit is None:
                return None
            value, stored_at = hit
            if self._clock() - stored_at >= self.expire:
                del self._values[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.expire <= 0:
            return
        with self._lock:
            self._values[key] = (value, self._clock())

    def discard(self, predicate: Callable[[Hashable], bool]) -> None:
        with self._lock:
            for key in [k for k in self._values if predicate(k)]:
                del self._values[key]


class MetricReader:
    """Per-process memory, CPU, arguments and child listings."""

    def __init__(
        self,
        strategy: ProbeStrategy | None = None,
        *,
        cache_expire: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._strategy = strategy or select_strategy()
        self._cpu = CpuAccountant(clock=clock)
        self._cache = ExpiringCache(
            settings.probe_cache_expire if cache_expire is None else cache_expire,
            clock=clock,
        )
        _logger.debug("MetricReader using %s strategy", self._strategy.name)

    @property
    def strategy(self) -> ProbeStrategy:
        return self._strategy

    @property
    def cache_expire(self) -> float:
        return self._cache.expire

    @property
    def accountant(self) -> CpuAccountant:
        return self._cpu

    def memory(self, pid: Pid) -> int:
        """Resident memory in bytes. Raises NoSuchProcessError."""
        key = ("memory", pid)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        resident = self._strategy.memory(pid)
        self._cache.set(key, resident)
        return resident

    def cpu(self, pid: Pid) -> ProcCpu:
        """CPU accounting with a percentage derived from the previous call."""
        times = self._strategy.cpu_times(pid)
        percent = self._cpu.percent(pid, times.total_ms)
        return ProcCpu(
            percent=percent,
            start_time_ms=times.start_time_ms,
            total_ms=times.total_ms,
            user_ms=times.user_ms,
            sys_ms=times.sys_ms,
        )

    def start_time(self, pid: Pid) -> int:
        """Epoch milliseconds the process started at; leaves the CPU cache alone."""
        return self._strategy.cpu_times(pid).start_time_ms

    def args(self, pid: Pid) -> list[str]:
        return self._strategy.args(pid)

    def children(self, ppid: Pid | str | None) -> set[Pid]:
        """Immediate children of ``ppid``; empty when there are none or ppid is bogus."""
        try:
            ppid = int(ppid)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return set()
        key = ("children", ppid)
        cached = self._cache.get(key)
        if cached is not None:
            return set(cached)
        found = self._strategy.children(ppid)
        self._cache.set(key, frozenset(found))
        return found

    def list_processes(self, query: str | None) -> set[Pid]:
        """Evaluate a ``State.Ppid.eq=<ppid>`` query."""
        try:
            ppid = parse_ppid_query(query)
        except InvalidQueryError as e:
            _logger.debug("%s", e)
            return set()
        return self.children(ppid)

    def sample(self, pid: Pid) -> ProcessSample:
        cpu = self.cpu(pid)
        return ProcessSample(
            pid=pid,
            resident_bytes=self.memory(pid),
            cpu_total_ms=cpu.total_ms,
            cpu_user_ms=cpu.user_ms,
            cpu_sys_ms=cpu.sys_ms,
            cpu_start_time_ms=cpu.start_time_ms,
            cpu_percent=cpu.percent,
            args=tuple(self.args(pid)),
        )

    def evict(self, pid: Pid) -> None:
        """Forget everything cached about ``pid`` (it was removed from monitoring)."""
        self._cpu.evict(pid)
        self._cache.discard(lambda key: key in (("memory", pid), ("children", pid)))
