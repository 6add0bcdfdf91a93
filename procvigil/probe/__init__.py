"""Resource probe — per-process memory, CPU, arguments and child listings.

- MetricReader: the thread-safe read surface every watcher shares
- CpuAccountant: per-PID CPU-time cache that turns totals into percentages
- ProcfsStrategy / PsStrategy: where the numbers actually come from
"""

from procvigil.probe.cpu import CpuAccountant, CpuCacheEntry
from procvigil.probe.reader import MetricReader
from procvigil.probe.strategies import (
    ProbeStrategy,
    ProcfsStrategy,
    PsStrategy,
    select_strategy,
)

__all__ = [
    "CpuAccountant",
    "CpuCacheEntry",
    "MetricReader",
    "ProbeStrategy",
    "ProcfsStrategy",
    "PsStrategy",
    "select_strategy",
]
