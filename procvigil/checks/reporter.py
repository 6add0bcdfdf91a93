"""BreachReporter — turns a fired check into a notification and schedule requests.

The reporter only formats and hands off. Delivering the message and
restarting the process belong to whoever sits behind the callbacks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Sequence

from pydantic import BaseModel, Field

from procvigil.checks.condition import Condition, Metric
from procvigil.types import ActionName, NotifyLevel, Pid
from procvigil.units import human_megabytes, human_percent, human_seconds

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HistoryEntry:
    value: Any
    breaching: bool


class NotifyRequest(BaseModel):
    """A message the notification transport should deliver."""

    pid: Pid
    name: str = ""
    level: NotifyLevel = NotifyLevel.WARN
    message: str
    created_at: datetime = Field(default_factory=datetime.now)


class ScheduleRequest(BaseModel):
    """An action the process-lifecycle collaborator should carry out."""

    pid: Pid
    action: ActionName
    reason: str = ""


NotifyCallback = Callable[[NotifyRequest], Awaitable[Any]]
ScheduleCallback = Callable[[ScheduleRequest], Awaitable[Any]]


def human_value(metric: Metric, value: Any) -> str:
    if metric is Metric.MEMORY:
        return human_megabytes(value)
    if metric is Metric.CPU:
        return human_percent(value)
    if metric in (Metric.CPUTIME, Metric.RUNTIME):
        return human_seconds(value)
    if metric is Metric.ALIVE:
        return "up" if value else "down"
    return str(value)


def format_breach(
    condition: Condition,
    history: Sequence[HistoryEntry],
    threshold: Any = None,
) -> str:
    """``Bounded memory(<50Mb): [*55Mb, *55Mb] send to [restart]``"""
    bound = condition.threshold if threshold is None else threshold
    values = ", ".join(
        ("*" if entry.breaching else "") + human_value(condition.metric, entry.value)
        for entry in history
    )
    return (
        f"Bounded {condition.metric.value}"
        f"({condition.comparator.symbol}{human_value(condition.metric, bound)}): "
        f"[{values}] send to [{', '.join(condition.fires)}]"
    )


class BreachReporter:
    """Formats breaches and dispatches them to the external collaborators."""

    def __init__(
        self,
        notify: NotifyCallback | None = None,
        schedule: ScheduleCallback | None = None,
    ) -> None:
        self._notify = notify
        self._schedule = schedule

    async def report(
        self,
        pid: Pid,
        condition: Condition,
        history: Sequence[HistoryEntry],
        *,
        name: str = "",
        threshold: Any = None,
    ) -> NotifyRequest:
        message = format_breach(condition, history, threshold)
        request = NotifyRequest(pid=pid, name=name, level=condition.level, message=message)
        _logger.warning("[%s:%d] %s", name or "process", pid, message)

        if self._notify:
            try:
                await self._notify(request)
            except Exception:
                _logger.exception("Notify dispatch failed for pid %d", pid)

        if self._schedule:
            for action in condition.fires:
                try:
                    await self._schedule(ScheduleRequest(pid=pid, action=action, reason=message))
                except Exception:
                    _logger.exception("Scheduling %s failed for pid %d", action, pid)

        return request
