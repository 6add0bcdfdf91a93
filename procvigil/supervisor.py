"""Supervisor — attaches monitoring to processes and wires the collaborators.

One MetricReader and one EventBus are shared by every ProcessMonitor.
Decisions leave the engine in two shapes, both published on the bus by
default: ``process.schedule`` (an action such as restart, for the
lifecycle manager) and ``notify.deliver`` (a message for one contact, for
the notification transport). Either can be replaced by a callback.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from procvigil.checks.condition import Metric
from procvigil.checks.reporter import BreachReporter, ScheduleCallback, ScheduleRequest
from procvigil.checks.watcher import Watcher
from procvigil.children.childset import ChildProcess, ChildSet
from procvigil.dsl.merge import resolve_process_config
from procvigil.dsl.models import ProcessConfig
from procvigil.events.bus import EventBus
from procvigil.notify import Notifier, TransportCallback
from procvigil.probe.reader import MetricReader
from procvigil.types import ContactName, NotifyLevel, Pid

_logger = logging.getLogger(__name__)

ExitCallback = Callable[["ProcessMonitor"], Awaitable[None]]


class ProcessMonitor:
    """Liveness, identity, configured checks and children of one process."""

    def __init__(
        self,
        pid: Pid,
        config: ProcessConfig,
        reader: MetricReader,
        reporter: BreachReporter,
        *,
        event_bus: EventBus | None = None,
        on_exit: ExitCallback | None = None,
    ) -> None:
        self.pid = pid
        self.config = config
        self.name = config.name or f"pid-{pid}"
        self.watchers: dict[str, Watcher] = {}
        self.child_set: ChildSet | None = None
        self.start_time_ms: int | None = None
        self._reader = reader
        self._reporter = reporter
        self._bus = event_bus
        self._on_exit = on_exit
        self._attached = False

    @property
    def children(self) -> dict[Pid, ChildProcess]:
        return self.child_set.children if self.child_set else {}

    @property
    def attached(self) -> bool:
        return self._attached

    async def attach(self) -> None:
        """Start every watcher. Raises NoSuchProcessError if the process is already gone."""
        self.start_time_ms = await asyncio.to_thread(self._reader.start_time, self.pid)

        checks = [(c.name, c) for c in self.config.lifecycle_checks()]
        checks += [(f"check_{key}", c) for key, c in self.config.checks.items()]
        for name, condition in checks:
            self.watchers[name] = Watcher(
                self.pid,
                condition,
                self._reader,
                self._reporter,
                owner_name=self.name,
                threshold=self.start_time_ms if condition.metric is Metric.IDENTITY else None,
                on_gone=self._watcher_gone,
            )

        if self.config.monitor_children is not None:
            self.child_set = ChildSet(
                self.pid,
                self.config.monitor_children,
                self._reader,
                self._reporter,
                parent_name=self.name,
                event_bus=self._bus,
            )

        for watcher in self.watchers.values():
            await watcher.start()
        if self.child_set:
            await self.child_set.start()
        self._attached = True

        await self._emit("process.attached", {
            "pid": self.pid,
            "name": self.name,
            "watchers": list(self.watchers),
            "monitor_children": self.child_set is not None,
        })

    async def detach(self, reason: str = "monitoring stopped") -> None:
        """Stop all watchers and children. Idempotent."""
        if not self._attached:
            return
        self._attached = False
        for watcher in self.watchers.values():
            watcher.remove()
        if self.child_set:
            await self.child_set.stop()
        self._reader.evict(self.pid)
        await self._emit("process.detached", {"pid": self.pid, "name": self.name, "reason": reason})

    async def _watcher_gone(self, watcher: Watcher) -> None:
        if not self._attached:
            return
        _logger.warning("Process %s (%d) is gone", self.name, self.pid)
        await self._emit("process.exited", {
            "pid": self.pid,
            "name": self.name,
            "detected_by": watcher.name,
        })
        await self.detach("exited")
        if self._on_exit:
            await self._on_exit(self)

    async def _emit(self, topic: str, data: dict[str, Any]) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source="supervisor")

    def describe(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "name": self.name,
            "attached": self._attached,
            "watchers": {
                name: {
                    "state": w.state.value,
                    "streak": w.breach_streak,
                    "fired": w.fire_count,
                }
                for name, w in self.watchers.items()
            },
            "children": sorted(self.children),
        }


class Supervisor:
    """Owns the shared reader and bus, and every ProcessMonitor."""

    def __init__(
        self,
        reader: MetricReader | None = None,
        event_bus: EventBus | None = None,
        scheduler: ScheduleCallback | None = None,
        transport: TransportCallback | None = None,
    ) -> None:
        self.reader = reader or MetricReader()
        self.bus = event_bus or EventBus()
        self._scheduler = scheduler or self._publish_schedule
        self._transport = transport or self._publish_delivery
        self._monitors: dict[Pid, ProcessMonitor] = {}
        self._lock = asyncio.Lock()

    async def _publish_schedule(self, request: ScheduleRequest) -> None:
        await self.bus.emit("process.schedule", request.model_dump(), source="supervisor")

    async def _publish_delivery(self, contact: ContactName, level: NotifyLevel, message: str) -> None:
        await self.bus.emit("notify.deliver", {
            "contact": contact,
            "level": level.value,
            "message": message,
        }, source="notifier")

    def reporter_for(self, config: ProcessConfig) -> BreachReporter:
        return BreachReporter(
            notify=Notifier(config.notify, self._transport),
            schedule=self._scheduler,
        )

    async def monitor(self, pid: Pid, config: ProcessConfig | Mapping[str, Any]) -> ProcessMonitor:
        """Attach monitoring to ``pid``, replacing any existing monitor for it."""
        if not isinstance(config, ProcessConfig):
            config = resolve_process_config(process=config)
        monitor = ProcessMonitor(
            pid,
            config,
            self.reader,
            self.reporter_for(config),
            event_bus=self.bus,
            on_exit=self._forget,
        )
        async with self._lock:
            previous = self._monitors.pop(pid, None)
            if previous is not None:
                await previous.detach("replaced")
            await monitor.attach()
            self._monitors[pid] = monitor
        _logger.info("Monitoring %s (%d)", monitor.name, pid)
        return monitor

    async def _forget(self, monitor: ProcessMonitor) -> None:
        async with self._lock:
            if self._monitors.get(monitor.pid) is monitor:
                del self._monitors[monitor.pid]

    async def unmonitor(self, pid: Pid) -> bool:
        async with self._lock:
            monitor = self._monitors.pop(pid, None)
        if monitor is None:
            return False
        await monitor.detach()
        return True

    def get(self, pid: Pid) -> ProcessMonitor | None:
        return self._monitors.get(pid)

    def list_monitors(self) -> list[dict[str, Any]]:
        return [m.describe() for m in self._monitors.values()]

    async def shutdown(self) -> None:
        """Detach every monitor."""
        for pid in list(self._monitors):
            await self.unmonitor(pid)
