"""Watcher — one periodic check bound to one process.

idle --start()--> running --remove()/process gone--> removed (terminal)

While running the watcher sleeps ``every`` seconds, samples, and counts
consecutive breaches. Reaching ``times`` fires the reporter once and
starts the count over, so a sustained breach re-fires every ``times``
samples rather than on every sample.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable

from procvigil.checks.condition import Condition, Metric
from procvigil.checks.reporter import BreachReporter, HistoryEntry
from procvigil.exceptions import (
    InvalidProcessRecordError,
    NoSuchProcessError,
    ProbeTimeoutError,
)
from procvigil.probe.reader import MetricReader
from procvigil.types import Pid

_logger = logging.getLogger(__name__)

GoneCallback = Callable[["Watcher"], Awaitable[None]]


class WatcherState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    REMOVED = "removed"


def read_metric(reader: MetricReader, metric: Metric, pid: Pid) -> Any:
    """Blocking probe read for one metric. Runs in a worker thread."""
    if metric is Metric.MEMORY:
        return reader.memory(pid)
    if metric is Metric.CPU:
        return reader.cpu(pid).percent * 100
    if metric is Metric.CPUTIME:
        return reader.cpu(pid).total_ms / 1000
    if metric is Metric.RUNTIME:
        return (time.time() * 1000 - reader.start_time(pid)) / 1000
    if metric is Metric.ALIVE:
        reader.start_time(pid)
        return True
    return reader.start_time(pid)


class Watcher:
    """Samples one condition for one PID and fires on consecutive breaches."""

    def __init__(
        self,
        pid: Pid,
        condition: Condition,
        reader: MetricReader,
        reporter: BreachReporter,
        *,
        owner_name: str = "",
        threshold: Any = None,
        on_gone: GoneCallback | None = None,
    ) -> None:
        self.pid = pid
        self.condition = condition
        self.owner_name = owner_name
        self._reader = reader
        self._reporter = reporter
        self._on_gone = on_gone
        self._state = WatcherState.IDLE
        self._streak = 0
        self._history: deque[HistoryEntry] = deque(maxlen=condition.times)
        self._threshold = condition.threshold if threshold is None else threshold
        self._task: asyncio.Task | None = None
        self._reporting = False
        self.fire_count = 0

    @property
    def name(self) -> str:
        return self.condition.name

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def breach_streak(self) -> int:
        return self._streak

    @property
    def history(self) -> list[HistoryEntry]:
        return list(self._history)

    @property
    def threshold(self) -> Any:
        return self._threshold

    @property
    def is_running(self) -> bool:
        return self._state is WatcherState.RUNNING

    async def start(self) -> None:
        """Begin periodic sampling. No-op unless idle."""
        if self._state is not WatcherState.IDLE:
            return
        self._state = WatcherState.RUNNING
        self._task = asyncio.create_task(self._watch_loop(), name=f"{self.name}:{self.pid}")

    def remove(self) -> None:
        """Detach for good. Idempotent, safe while a sample is in flight."""
        if self._state is WatcherState.REMOVED:
            return
        self._state = WatcherState.REMOVED
        # A watcher removed from inside its own loop, or while a fire is being
        # dispatched, falls out of the loop on its own.
        if self._reporting:
            return
        if self._task and not self._task.done() and self._task is not asyncio.current_task():
            self._task.cancel()

    async def stop(self) -> None:
        """Remove and wait for the loop to finish."""
        self.remove()
        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def check(self) -> bool:
        """Take one sample and evaluate it. Returns True when the check fired."""
        if self._state is WatcherState.REMOVED:
            return False

        try:
            value = await asyncio.to_thread(read_metric, self._reader, self.condition.metric, self.pid)
        except NoSuchProcessError:
            await self._gone("process disappeared")
            return False
        except InvalidProcessRecordError as e:
            _logger.warning("Malformed process record for pid %d: %s", self.pid, e)
            await self._gone("unreadable process record")
            return False
        except ProbeTimeoutError as e:
            _logger.warning("Skipping %s sample for pid %d: %s", self.name, self.pid, e)
            return False

        # The sample may have completed after a concurrent remove().
        if self._state is WatcherState.REMOVED:
            return False

        if self.condition.metric is Metric.IDENTITY and self._threshold is None:
            self._threshold = value

        breaching = self.condition.breaches(value, self._threshold)
        self._history.append(HistoryEntry(value=value, breaching=breaching))
        if not breaching:
            self._streak = 0
            return False

        self._streak += 1
        if self._streak < self.condition.times:
            return False

        self._streak = 0
        if self._state is WatcherState.REMOVED:
            return False
        self.fire_count += 1
        self._reporting = asyncio.current_task() is self._task
        try:
            await self._reporter.report(
                self.pid,
                self.condition,
                self.history,
                name=self.owner_name,
                threshold=self._threshold,
            )
        finally:
            self._reporting = False
        return True

    async def _gone(self, reason: str) -> None:
        if self._state is WatcherState.REMOVED:
            return
        _logger.info("%s for pid %d stopped: %s", self.name, self.pid, reason)
        self.remove()
        if self._on_gone:
            await self._on_gone(self)

    async def _watch_loop(self) -> None:
        while self._state is WatcherState.RUNNING:
            await asyncio.sleep(self.condition.every)

            if self._state is not WatcherState.RUNNING:
                break

            try:
                await self.check()
            except Exception:
                _logger.exception("%s for pid %d failed", self.name, self.pid)
