"""Core types shared across all procvigil subsystems."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias

# ── ID Types ──────────────────────────────────────────────────────────────────

Pid: TypeAlias = int
ActionName: TypeAlias = str
ContactName: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


# ── Notify Levels ─────────────────────────────────────────────────────────────


class NotifyLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRIT = "crit"

    @property
    def rank(self) -> int:
        return _LEVEL_RANK[self]

    def at_least(self, other: NotifyLevel) -> bool:
        return self.rank >= other.rank


_LEVEL_RANK: dict[NotifyLevel, int] = {
    level: i for i, level in enumerate(NotifyLevel)
}


# ── Probe Records ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CpuTimes:
    """Raw CPU accounting for one process, as a strategy reads it."""

    user_ms: int
    sys_ms: int
    start_time_ms: int

    @property
    def total_ms(self) -> int:
        return self.user_ms + self.sys_ms


@dataclass(frozen=True)
class ProcCpu:
    """CPU accounting plus the derived percentage (0.5 = half of one core)."""

    percent: float
    start_time_ms: int
    total_ms: int
    user_ms: int
    sys_ms: int


@dataclass(frozen=True)
class ProcessSample:
    """Everything the probe knows about one PID at one instant."""

    pid: Pid
    resident_bytes: int
    cpu_total_ms: int
    cpu_user_ms: int
    cpu_sys_ms: int
    cpu_start_time_ms: int
    cpu_percent: float
    args: tuple[str, ...]
