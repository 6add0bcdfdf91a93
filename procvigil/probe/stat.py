"""Parsers for procfs records and listing queries."""

from __future__ import annotations

import re
from dataclasses import dataclass

from procvigil.exceptions import InvalidProcessRecordError, InvalidQueryError

# Offsets into the fields that follow the ``(comm)`` part of /proc/<pid>/stat.
# Field numbers in proc(5) are 1-based and count pid and comm, hence the -3.
_STATE = 0
_PPID = 1
_UTIME = 11
_STIME = 12
_STARTTIME = 19

_PPID_QUERY_RE = re.compile(r"State\.Ppid\.eq=(\d+)")


@dataclass(frozen=True)
class StatRecord:
    pid: int
    comm: str
    state: str
    ppid: int
    utime: int
    stime: int
    starttime: int


def parse_stat_line(line: str) -> StatRecord:
    """Parse one /proc/<pid>/stat line.

    The comm field may contain spaces and parentheses of its own
    (``(sd-pam)``, ``Web Content``), so the field is delimited by the
    first ``(`` and the *last* ``)`` in the line.
    """
    lparen = line.find("(")
    rparen = line.rfind(")")
    if lparen < 0 or rparen < lparen:
        raise InvalidProcessRecordError(f"Invalid stat line: {line[:80]!r}")

    fields = line[rparen + 1:].split()
    if len(fields) <= _STARTTIME:
        raise InvalidProcessRecordError(
            f"Invalid stat line: expected {_STARTTIME + 1} fields after comm, "
            f"got {len(fields)}"
        )

    try:
        return StatRecord(
            pid=int(line[:lparen].strip()),
            comm=line[lparen + 1:rparen],
            state=fields[_STATE],
            ppid=int(fields[_PPID]),
            utime=int(fields[_UTIME]),
            stime=int(fields[_STIME]),
            starttime=int(fields[_STARTTIME]),
        )
    except ValueError as e:
        raise InvalidProcessRecordError(f"Invalid stat line: {e}") from e


def parse_statm_resident(text: str) -> int:
    """Resident page count from /proc/<pid>/statm."""
    fields = text.split()
    if len(fields) < 2:
        raise InvalidProcessRecordError(f"Invalid statm record: {text[:80]!r}")
    try:
        return int(fields[1])
    except ValueError as e:
        raise InvalidProcessRecordError(f"Invalid statm record: {e}") from e


def parse_boot_time(text: str) -> int:
    """Seconds since the epoch from the ``btime`` line of /proc/stat, 0 if absent."""
    for line in text.splitlines():
        if line.startswith("btime "):
            try:
                return int(line.split()[1])
            except (IndexError, ValueError):
                return 0
    return 0


def parse_ppid_query(query: str | None) -> int:
    """Parent PID out of a ``State.Ppid.eq=<ppid>`` listing query."""
    if not query:
        raise InvalidQueryError("Empty process query")
    match = _PPID_QUERY_RE.search(query)
    if not match:
        raise InvalidQueryError(f"Unsupported process query: {query!r}")
    return int(match.group(1))


def ppid_query(ppid: int) -> str:
    return f"State.Ppid.eq={int(ppid)}"
