"""Tests for MetricReader over a fake /proc tree."""

import threading

import pytest

from procvigil.exceptions import NoSuchProcessError
from procvigil.probe.reader import ExpiringCache, MetricReader
from procvigil.types import ProcCpu, ProcessSample

from conftest import BOOT_TIME, build_stat_line


def non_utf8_stat(pid, ppid):
    # comm set through PR_SET_NAME can hold any bytes
    line = build_stat_line(pid, comm="bad", ppid=ppid, utime=300, stime=100).encode()
    return line.replace(b"(bad)", b"(bad\xff\xfename)")


class FakeClock:
    def __init__(self, now: float = 100.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ── memory ───────────────────────────────────────────────────────

def test_memory_from_statm_pages(fake_proc, proc_reader):
    fake_proc.add_process(42, resident_pages=12_345)
    assert proc_reader.memory(42) == 12_345 * 4096


def test_memory_missing_pid(proc_reader):
    with pytest.raises(NoSuchProcessError):
        proc_reader.memory(99_999)


def test_memory_cached_until_expiry(fake_proc, procfs):
    clock = FakeClock()
    reader = MetricReader(procfs, cache_expire=1.0, clock=clock)
    fake_proc.add_process(42, resident_pages=100)
    assert reader.memory(42) == 100 * 4096

    fake_proc.add_process(42, resident_pages=200)
    clock.now += 0.5
    assert reader.memory(42) == 100 * 4096

    clock.now += 0.6
    assert reader.memory(42) == 200 * 4096


# ── cpu ──────────────────────────────────────────────────────────

def test_cpu_first_call_zero(fake_proc, proc_reader):
    fake_proc.add_process(42, utime=500, stime=200)
    cpu = proc_reader.cpu(42)
    assert isinstance(cpu, ProcCpu)
    assert cpu.percent == 0.0


def test_cpu_ticks_to_ms(fake_proc, proc_reader):
    fake_proc.add_process(42, utime=500, stime=200)
    cpu = proc_reader.cpu(42)
    assert cpu.total_ms == 7000
    assert cpu.user_ms == 5000
    assert cpu.sys_ms == 2000


def test_cpu_start_time_from_boot_time(fake_proc, proc_reader):
    fake_proc.add_process(42, starttime=100_000)
    cpu = proc_reader.cpu(42)
    assert cpu.start_time_ms == BOOT_TIME * 1000 + 100_000 * 1000 // 100
    assert proc_reader.start_time(42) == cpu.start_time_ms


def test_cpu_non_utf8_comm(fake_proc, proc_reader):
    fake_proc.add_process(666, utime=300, stime=100)
    fake_proc.write("666/stat", non_utf8_stat(666, ppid=1))
    cpu = proc_reader.cpu(666)
    assert cpu.total_ms == 4000
    assert cpu.start_time_ms == BOOT_TIME * 1000 + 100_000 * 1000 // 100


def test_cpu_percent_between_calls(fake_proc, procfs):
    clock = FakeClock(50.0)
    reader = MetricReader(procfs, cache_expire=0, clock=clock)
    fake_proc.add_process(42, utime=500, stime=200)
    reader.cpu(42)

    fake_proc.set_stat(42, utime=600, stime=250)  # +1500ms of CPU
    clock.now = 53.0
    assert reader.cpu(42).percent == 0.5


def test_cpu_pid_reuse_resets(fake_proc, procfs):
    clock = FakeClock(50.0)
    reader = MetricReader(procfs, cache_expire=0, clock=clock)
    fake_proc.add_process(42, utime=500, stime=200)
    reader.cpu(42)

    fake_proc.set_stat(42, utime=10, stime=5)
    clock.now = 51.0
    assert reader.cpu(42).percent == 0.0


def test_start_time_does_not_touch_cpu_cache(fake_proc, proc_reader):
    fake_proc.add_process(42)
    proc_reader.start_time(42)
    assert 42 not in proc_reader.accountant


def test_cpu_missing_pid(proc_reader):
    with pytest.raises(NoSuchProcessError):
        proc_reader.cpu(99_999)


@pytest.mark.parametrize("comm", ["Web Content", "(sd-pam)", "kworker/0:1-events"])
def test_cpu_odd_comm_fields(fake_proc, proc_reader, comm):
    fake_proc.add_process(42, comm=comm, utime=300, stime=100)
    assert proc_reader.cpu(42).total_ms == 4000


def test_concurrent_cpu_calls(fake_proc, proc_reader):
    fake_proc.add_process(42, utime=100, stime=50)
    results = []
    threads = [threading.Thread(target=lambda: results.append(proc_reader.cpu(42))) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(results) == 8
    assert all(isinstance(r, ProcCpu) for r in results)


# ── args ─────────────────────────────────────────────────────────

def test_args_split_on_nul(fake_proc, proc_reader):
    fake_proc.add_process(42, cmdline=b"python\0worker.py\0--verbose")
    assert proc_reader.args(42) == ["python", "worker.py", "--verbose"]


def test_args_single(fake_proc, proc_reader):
    fake_proc.add_process(42, cmdline=b"sleep\0")
    assert proc_reader.args(42) == ["sleep"]


def test_args_empty_for_zombie(fake_proc, proc_reader):
    fake_proc.add_process(42, cmdline=b"")
    assert proc_reader.args(42) == [""]


def test_args_missing_pid(proc_reader):
    with pytest.raises(NoSuchProcessError):
        proc_reader.args(99_999)


# ── children ─────────────────────────────────────────────────────

def test_children_by_parent(fake_proc, proc_reader):
    fake_proc.add_process(100, ppid=1)
    fake_proc.add_process(200, ppid=42)
    fake_proc.add_process(300, ppid=42)
    fake_proc.add_process(400, ppid=99)
    assert proc_reader.children(42) == {200, 300}


def test_children_none(fake_proc, proc_reader):
    fake_proc.add_process(100, ppid=1)
    assert proc_reader.children(99_999) == set()


def test_children_skips_malformed_records(fake_proc, proc_reader):
    fake_proc.add_process(200, ppid=42)
    fake_proc.write("300/stat", "300 (broken S 42")
    assert proc_reader.children(42) == {200}


def test_children_scan_survives_non_utf8_comm(fake_proc, proc_reader):
    fake_proc.add_process(200, ppid=42)
    fake_proc.add_process(666, ppid=42)
    fake_proc.write("666/stat", non_utf8_stat(666, ppid=42))
    assert proc_reader.children(42) == {200, 666}


@pytest.mark.parametrize("ppid", [None, "abc"])
def test_children_bogus_parent(proc_reader, ppid):
    assert proc_reader.children(ppid) == set()


def test_list_processes_query(fake_proc, proc_reader):
    fake_proc.add_process(200, ppid=42)
    fake_proc.add_process(300, ppid=42)
    assert proc_reader.list_processes("State.Ppid.eq=42") == {200, 300}


@pytest.mark.parametrize("query", [None, "", "State.Name.eq=ruby"])
def test_list_processes_bad_query_is_empty(proc_reader, query):
    assert proc_reader.list_processes(query) == set()


# ── sample / evict ───────────────────────────────────────────────

def test_sample(fake_proc, proc_reader):
    fake_proc.add_process(42, resident_pages=10, utime=500, stime=200, cmdline=b"sleep\x0060")
    sample = proc_reader.sample(42)
    assert isinstance(sample, ProcessSample)
    assert sample.pid == 42
    assert sample.resident_bytes == 10 * 4096
    assert sample.cpu_total_ms == 7000
    assert sample.cpu_percent == 0.0
    assert sample.args == ("sleep", "60")


def test_evict_forgets_cpu_history(fake_proc, proc_reader):
    fake_proc.add_process(42)
    proc_reader.cpu(42)
    proc_reader.evict(42)
    assert 42 not in proc_reader.accountant


def test_evict_forgets_cached_children(fake_proc, procfs):
    reader = MetricReader(procfs, cache_expire=60.0, clock=FakeClock())
    fake_proc.add_process(200, ppid=42)
    assert reader.children(42) == {200}

    fake_proc.add_process(300, ppid=42)
    assert reader.children(42) == {200}
    reader.evict(42)
    assert reader.children(42) == {200, 300}


def test_expiring_cache_disabled():
    cache = ExpiringCache(0)
    cache.set("k", 1)
    assert cache.get("k") is None
