"""Shared test fixtures — a fake /proc tree and an in-memory probe strategy."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from procvigil.checks.reporter import BreachReporter, NotifyRequest, ScheduleRequest
from procvigil.exceptions import InvalidProcessRecordError, NoSuchProcessError
from procvigil.probe.reader import MetricReader
from procvigil.probe.strategies import ProbeStrategy, ProcfsStrategy
from procvigil.types import CpuTimes
from procvigil.units import MB

BOOT_TIME = 1_700_000_000


def build_stat_line(
    pid: int,
    comm: str = "python",
    ppid: int = 1,
    utime: int = 500,
    stime: int = 200,
    starttime: int = 100_000,
) -> str:
    """A /proc/<pid>/stat line in the standard 52-field layout."""
    after_comm = (
        f"S {ppid} {pid} {pid} 0 -1 0 0 0 0 0 "
        f"{utime} {stime} 0 0 20 0 1 0 {starttime} "
        + " ".join(["0"] * 32)
    )
    return f"{pid} ({comm}) {after_comm}\n"


class FakeProc:
    """Builds a procfs-shaped directory tree under a temp dir."""

    def __init__(self, root: Path, boot_time: int = BOOT_TIME) -> None:
        self.root = root
        self.boot_time = boot_time
        root.mkdir(parents=True, exist_ok=True)
        (root / "stat").write_text(f"cpu  123 456 789 0 0 0 0\nbtime {boot_time}\nprocesses 4242\n")

    def write(self, relpath: str, content: str | bytes) -> None:
        path = self.root / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)

    def add_process(
        self,
        pid: int,
        *,
        comm: str = "python",
        ppid: int = 1,
        utime: int = 500,
        stime: int = 200,
        starttime: int = 100_000,
        resident_pages: int = 10_000,
        cmdline: bytes = b"python\0worker.py\0--verbose\0",
    ) -> None:
        self.set_stat(pid, comm=comm, ppid=ppid, utime=utime, stime=stime, starttime=starttime)
        self.write(f"{pid}/statm", f"50000 {resident_pages} 5000 1000 0 8000 0\n")
        self.write(f"{pid}/cmdline", cmdline)

    def set_stat(self, pid: int, **fields) -> None:
        self.write(f"{pid}/stat", build_stat_line(pid, **fields))

    def remove_process(self, pid: int) -> None:
        shutil.rmtree(self.root / str(pid), ignore_errors=True)


class FakeStrategy(ProbeStrategy):
    """In-memory process table. No OS access at all."""

    name = "fake"

    def __init__(self) -> None:
        self.resident: dict[int, int] = {}
        self.cpu: dict[int, CpuTimes] = {}
        self.parents: dict[int, int] = {}
        self.broken: set[int] = set()
        self.children_calls = 0

    def spawn(
        self,
        pid: int,
        ppid: int = 1,
        memory: int = 5 * MB,
        start_time_ms: int | None = None,
        cpu_ms: int = 0,
    ) -> None:
        self.resident[pid] = memory
        self.parents[pid] = ppid
        self.cpu[pid] = CpuTimes(
            user_ms=cpu_ms,
            sys_ms=0,
            start_time_ms=start_time_ms if start_time_ms is not None else 1_000_000 + pid,
        )

    def kill(self, pid: int) -> None:
        self.resident.pop(pid, None)
        self.cpu.pop(pid, None)
        self.parents.pop(pid, None)

    def _check(self, pid: int) -> None:
        if pid in self.broken:
            raise InvalidProcessRecordError(f"broken record for {pid}")
        if pid not in self.parents:
            raise NoSuchProcessError(pid)

    def memory(self, pid: int) -> int:
        self._check(pid)
        return self.resident[pid]

    def cpu_times(self, pid: int) -> CpuTimes:
        self._check(pid)
        return self.cpu[pid]

    def args(self, pid: int) -> list[str]:
        self._check(pid)
        return [f"worker-{pid}"]

    def children(self, ppid: int) -> set[int]:
        self.children_calls += 1
        return {pid for pid, parent in self.parents.items() if parent == ppid}


class Recorder:
    """Stands in for the notification transport and the lifecycle manager."""

    def __init__(self) -> None:
        self.notified: list[NotifyRequest] = []
        self.scheduled: list[ScheduleRequest] = []

    async def notify(self, request: NotifyRequest) -> None:
        self.notified.append(request)

    async def schedule(self, request: ScheduleRequest) -> None:
        self.scheduled.append(request)


@pytest.fixture
def fake_proc(tmp_path):
    return FakeProc(tmp_path / "proc")


@pytest.fixture
def procfs(fake_proc):
    return ProcfsStrategy(fake_proc.root)


@pytest.fixture
def proc_reader(procfs):
    return MetricReader(procfs, cache_expire=0)


@pytest.fixture
def fake_strategy():
    return FakeStrategy()


@pytest.fixture
def fake_reader(fake_strategy):
    return MetricReader(fake_strategy, cache_expire=0)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def reporter(recorder):
    return BreachReporter(notify=recorder.notify, schedule=recorder.schedule)
