"""ChildSet — keeps the watched children of one parent in step with the OS.

Every ``refresh_period`` the set lists the parent's children, attaches
watchers to newcomers (built from the parent's ``monitor_children``
config), and detaches children that exited. A known PID whose start time
changed belongs to a different process now; it is retired and attached
again as a new child with fresh watchers.

``refresh_period`` should stay above the reader's ``cache_expire``,
otherwise a refresh can see a stale listing and flap.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from procvigil.checks.condition import Metric
from procvigil.checks.reporter import BreachReporter
from procvigil.checks.watcher import Watcher
from procvigil.dsl.models import MonitorChildrenConfig
from procvigil.events.bus import EventBus
from procvigil.exceptions import (
    InvalidProcessRecordError,
    NoSuchProcessError,
    ProbeTimeoutError,
)
from procvigil.probe.reader import MetricReader
from procvigil.types import Pid

_logger = logging.getLogger(__name__)

ChildGoneCallback = Callable[["ChildProcess"], Awaitable[None]]


class ChildProcess:
    """One discovered child and the watchers attached to it."""

    def __init__(
        self,
        pid: Pid,
        parent_pid: Pid,
        config: MonitorChildrenConfig,
        reader: MetricReader,
        reporter: BreachReporter,
        *,
        start_time_ms: int | None = None,
        name: str = "",
        on_gone: ChildGoneCallback | None = None,
    ) -> None:
        self.pid = pid
        self.parent_pid = parent_pid
        self.config = config
        self.start_time_ms = start_time_ms
        self.name = name or f"child-{pid}"
        self.watchers: dict[str, Watcher] = {}
        self._reader = reader
        self._reporter = reporter
        self._on_gone = on_gone
        self._removed = False

    @property
    def removed(self) -> bool:
        return self._removed

    async def attach(self) -> None:
        for key, condition in self.config.checks.items():
            self.watchers[f"check_{key}"] = Watcher(
                self.pid,
                condition,
                self._reader,
                self._reporter,
                owner_name=self.name,
                threshold=self.start_time_ms if condition.metric is Metric.IDENTITY else None,
                on_gone=self._watcher_gone,
            )
        for watcher in self.watchers.values():
            await watcher.start()

    def remove_watchers(self) -> None:
        """Detach every watcher. Idempotent."""
        self._removed = True
        for watcher in self.watchers.values():
            watcher.remove()

    async def _watcher_gone(self, watcher: Watcher) -> None:
        if self._on_gone and not self._removed:
            await self._on_gone(self)


class ChildSet:
    """Reconciles the children of ``parent_pid`` on a bounded cadence."""

    def __init__(
        self,
        parent_pid: Pid,
        config: MonitorChildrenConfig,
        reader: MetricReader,
        reporter: BreachReporter,
        *,
        parent_name: str = "",
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.parent_pid = parent_pid
        self.config = config
        self.refresh_period = config.children_update_period
        self.parent_name = parent_name
        self._reader = reader
        self._reporter = reporter
        self._bus = event_bus
        self._clock = clock
        self._children: dict[Pid, ChildProcess] = {}
        self._last_refresh_at: float | None = None
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task | None = None
        self.scan_count = 0

        if self.refresh_period <= reader.cache_expire:
            _logger.warning(
                "children_update_period %.1fs for pid %d is not above the probe "
                "cache expiry %.1fs; child listings may be stale",
                self.refresh_period, parent_pid, reader.cache_expire,
            )

    @property
    def children(self) -> dict[Pid, ChildProcess]:
        return dict(self._children)

    @property
    def pids(self) -> frozenset[Pid]:
        return frozenset(self._children)

    @property
    def last_refresh_at(self) -> float | None:
        return self._last_refresh_at

    @property
    def is_running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return len(self._children)

    async def refresh(self, force: bool = False) -> frozenset[Pid]:
        """Re-scan unless the last scan is younger than ``refresh_period``."""
        now = self._clock()
        if (
            not force
            and self._last_refresh_at is not None
            and now - self._last_refresh_at < self.refresh_period
        ):
            return self.pids
        self._last_refresh_at = now

        current = await asyncio.to_thread(self._scan)
        self.scan_count += 1

        events: list[tuple[str, dict[str, Any]]] = []
        async with self._lock:
            for pid, child in list(self._children.items()):
                if pid not in current:
                    events.append(self._detach(pid, "exited"))
                elif (
                    child.start_time_ms is not None
                    and current[pid] is not None
                    and current[pid] != child.start_time_ms
                ):
                    events.append(self._detach(pid, "pid reused"))

            for pid, start_time_ms in current.items():
                if pid not in self._children:
                    events.append(await self._attach(pid, start_time_ms))
            pids = self.pids

        await self._publish(events)
        return pids

    def _scan(self) -> dict[Pid, int | None]:
        """Blocking: list children and read each one's start time."""
        found: dict[Pid, int | None] = {}
        for pid in self._reader.children(self.parent_pid):
            try:
                found[pid] = self._reader.start_time(pid)
            except (NoSuchProcessError, InvalidProcessRecordError):
                continue  # gone between listing and stat
            except ProbeTimeoutError:
                found[pid] = None
        return found

    async def _attach(self, pid: Pid, start_time_ms: int | None) -> tuple[str, dict[str, Any]]:
        child = ChildProcess(
            pid,
            self.parent_pid,
            self.config,
            self._reader,
            self._reporter,
            start_time_ms=start_time_ms,
            name=f"{self.parent_name}:child-{pid}" if self.parent_name else "",
            on_gone=self.remove_child,
        )
        try:
            await child.attach()
        except Exception as e:
            _logger.exception("Failed to attach child %d of %d", pid, self.parent_pid)
            child.remove_watchers()
            return "child.attach_failed", {
                "parent_pid": self.parent_pid,
                "pid": pid,
                "error": str(e)[:300],
            }
        self._children[pid] = child
        _logger.info("Attached child %d of %d", pid, self.parent_pid)
        return "child.attached", {
            "parent_pid": self.parent_pid,
            "pid": pid,
            "watchers": list(child.watchers),
        }

    def _detach(self, pid: Pid, reason: str) -> tuple[str, dict[str, Any]]:
        child = self._children.pop(pid)
        child.remove_watchers()
        self._reader.evict(pid)
        _logger.info("Removed child %d of %d: %s", pid, self.parent_pid, reason)
        return "child.removed", {"parent_pid": self.parent_pid, "pid": pid, "reason": reason}

    async def remove_child(self, child: ChildProcess) -> None:
        """Retire ``child`` now, e.g. because one of its watchers saw it exit."""
        async with self._lock:
            if self._children.get(child.pid) is not child:
                return
            event = self._detach(child.pid, "gone")
        await self._publish([event])

    async def _publish(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        if not self._bus:
            return
        for topic, data in events:
            await self._bus.emit(topic, data, source="childset")

    async def start(self) -> None:
        """Start periodic reconciliation."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._watch_loop(), name=f"children:{self.parent_pid}")

    async def stop(self) -> None:
        """Stop reconciling and detach every child."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        async with self._lock:
            for pid in list(self._children):
                self._detach(pid, "monitoring stopped")

    async def _watch_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.refresh_period)

            if not self._running:
                break

            try:
                await self.refresh()
            except Exception:
                _logger.exception("Child refresh for pid %d failed", self.parent_pid)
