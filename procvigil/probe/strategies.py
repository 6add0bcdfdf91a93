"""Probe strategies — procfs when the kernel offers it, ps/pgrep otherwise.

A strategy is stateless apart from constants read at construction; the
CPU percentage bookkeeping lives in MetricReader's CpuAccountant.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from procvigil.config import settings
from procvigil.exceptions import (
    InvalidProcessRecordError,
    NoSuchProcessError,
    ProbeTimeoutError,
    ProbeUnavailableError,
)
from procvigil.probe.stat import (
    parse_boot_time,
    parse_stat_line,
    parse_statm_resident,
)
from procvigil.types import CpuTimes, Pid

_logger = logging.getLogger(__name__)

# Errors that all mean "this PID cannot be observed any more".
_GONE_ERRORS = (FileNotFoundError, ProcessLookupError, PermissionError, NotADirectoryError)


def _decode(raw: bytes) -> str:
    # comm is whatever the process set with PR_SET_NAME, not necessarily UTF-8
    return raw.decode("utf-8", errors="replace")


class ProbeStrategy(ABC):
    """Where process metrics come from."""

    name: str = ""

    @abstractmethod
    def memory(self, pid: Pid) -> int:
        """Resident memory in bytes."""
        ...

    @abstractmethod
    def cpu_times(self, pid: Pid) -> CpuTimes:
        """Cumulative CPU time and start time, in milliseconds."""
        ...

    @abstractmethod
    def args(self, pid: Pid) -> list[str]:
        """Argument vector; ``[""]`` when the process has none."""
        ...

    @abstractmethod
    def children(self, ppid: Pid) -> set[Pid]:
        """PIDs whose immediate parent is ``ppid``."""
        ...


# ── Linux /proc ──────────────────────────────────────────────────────────────


class ProcfsStrategy(ProbeStrategy):
    """Reads /proc/<pid>/{stat,statm,cmdline} directly."""

    name = "procfs"

    def __init__(
        self,
        proc_root: Path | str = "/proc",
        clk_tck: int = 100,
        page_size: int = 4096,
    ) -> None:
        self._root = Path(proc_root)
        self._clk_tck = clk_tck
        self._page_size = page_size
        self.boot_time = self._read_boot_time()

    @staticmethod
    def available(proc_root: Path | str) -> bool:
        root = Path(proc_root)
        return root.is_dir() and (root / "stat").is_file()

    def _read_boot_time(self) -> int:
        try:
            return parse_boot_time((self._root / "stat").read_text())
        except OSError:
            return 0

    def _read(self, pid: Pid, name: str) -> str:
        try:
            raw = (self._root / str(int(pid)) / name).read_bytes()
        except _GONE_ERRORS as e:
            raise NoSuchProcessError(pid) from e
        return _decode(raw)

    def ticks_to_ms(self, ticks: int) -> int:
        return (ticks * 1000) // self._clk_tck

    def memory(self, pid: Pid) -> int:
        return parse_statm_resident(self._read(pid, "statm")) * self._page_size

    def cpu_times(self, pid: Pid) -> CpuTimes:
        stat = parse_stat_line(self._read(pid, "stat"))
        return CpuTimes(
            user_ms=self.ticks_to_ms(stat.utime),
            sys_ms=self.ticks_to_ms(stat.stime),
            start_time_ms=self.boot_time * 1000 + self.ticks_to_ms(stat.starttime),
        )

    def args(self, pid: Pid) -> list[str]:
        try:
            raw = (self._root / str(int(pid)) / "cmdline").read_bytes()
        except _GONE_ERRORS as e:
            raise NoSuchProcessError(pid) from e
        cmdline = _decode(raw).rstrip("\0")
        if not cmdline:
            return [""]
        return cmdline.split("\0")

    def children(self, ppid: Pid) -> set[Pid]:
        found: set[Pid] = set()
        for stat_path in self._root.glob("[0-9]*/stat"):
            try:
                stat = parse_stat_line(_decode(stat_path.read_bytes()))
            except _GONE_ERRORS:
                continue  # exited while we were scanning
            except InvalidProcessRecordError as e:
                _logger.debug("Skipping %s: %s", stat_path, e)
                continue
            if stat.ppid == ppid:
                found.add(stat.pid)
        return found


# ── ps / pgrep fallback ─────────────────────────────────────────────────────


def parse_cputime(text: str) -> int:
    """Milliseconds from ps ``time`` output: ``[[dd-]hh:]mm:ss[.ss]``."""
    text = text.strip()
    days = 0
    if "-" in text:
        day_part, text = text.split("-", 1)
        days = int(day_part)
    parts = text.split(":")
    seconds = float(parts[-1])
    minutes = int(parts[-2]) if len(parts) >= 2 else 0
    hours = int(parts[-3]) if len(parts) >= 3 else 0
    total = ((days * 24 + hours) * 60 + minutes) * 60 + seconds
    return int(round(total * 1000))


def parse_lstart(text: str) -> int:
    """Epoch milliseconds from ps ``lstart`` output, 0 when unparseable."""
    try:
        started = datetime.strptime(" ".join(text.split()), "%a %b %d %H:%M:%S %Y")
    except ValueError:
        return 0
    return int(started.timestamp() * 1000)


class PsStrategy(ProbeStrategy):
    """Shells out to ps and pgrep where no procfs exists (macOS, BSD)."""

    name = "ps"

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout

    def _run(self, command: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProbeTimeoutError(f"{command[0]} timed out after {self._timeout}s") from e

    def _ps(self, pid: Pid, fields: str) -> str:
        result = self._run(["ps", "-o", fields, "-p", str(int(pid))])
        output = result.stdout.strip()
        if not output:
            raise NoSuchProcessError(pid)
        return output

    def memory(self, pid: Pid) -> int:
        output = self._ps(pid, "rss=")
        try:
            return int(output.split()[0]) * 1024
        except ValueError as e:
            raise InvalidProcessRecordError(f"Unexpected ps rss output: {output!r}") from e

    def cpu_times(self, pid: Pid) -> CpuTimes:
        output = self._ps(pid, "time=,lstart=")
        parts = output.split(None, 1)
        try:
            total_ms = parse_cputime(parts[0])
        except ValueError as e:
            raise InvalidProcessRecordError(f"Unexpected ps time output: {output!r}") from e
        start_time_ms = parse_lstart(parts[1]) if len(parts) > 1 else 0
        # ps only reports the combined figure
        return CpuTimes(user_ms=total_ms, sys_ms=0, start_time_ms=start_time_ms)

    def args(self, pid: Pid) -> list[str]:
        return [self._ps(pid, "args=")]

    def children(self, ppid: Pid) -> set[Pid]:
        try:
            result = self._run(["pgrep", "-P", str(int(ppid))])
        except FileNotFoundError:
            _logger.warning("pgrep not found, child listing unavailable")
            return set()
        return {int(line) for line in result.stdout.split() if line.isdigit()}


def select_strategy(
    proc_root: Path | str | None = None,
    clk_tck: int | None = None,
    page_size: int | None = None,
    timeout: float | None = None,
) -> ProbeStrategy:
    """Pick the probe strategy for this platform, once."""
    root = Path(proc_root) if proc_root is not None else settings.proc_root
    if ProcfsStrategy.available(root):
        return ProcfsStrategy(
            root,
            clk_tck=clk_tck or settings.clk_tck,
            page_size=page_size or settings.page_size,
        )
    if shutil.which("ps"):
        _logger.info("No procfs at %s, falling back to ps/pgrep", root)
        return PsStrategy(timeout=timeout or settings.probe_timeout_seconds)
    raise ProbeUnavailableError(f"Neither {root}/stat nor a ps executable is available")
