"""Byte-size parsing and the short human renderings used in messages."""

from __future__ import annotations

import re

KB = 1024
MB = 1024 * KB
GB = 1024 * MB

_SIZE_RE = re.compile(r"^\s*(?P<num>\d+(?:\.\d+)?)\s*(?P<unit>[kmgt]?i?b?)?\s*$", re.IGNORECASE)

_UNIT_FACTORS = {
    "": 1,
    "b": 1,
    "k": KB,
    "m": MB,
    "g": GB,
    "t": GB * 1024,
}


def parse_bytes(value: str | int | float) -> int:
    """Parse ``"50MB"``, ``"512k"`` or a plain number into bytes."""
    if isinstance(value, bool):
        raise ValueError(f"Not a byte size: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    match = _SIZE_RE.match(value)
    if not match:
        raise ValueError(f"Not a byte size: {value!r}")
    unit = (match.group("unit") or "").lower()[:1]
    return int(float(match.group("num")) * _UNIT_FACTORS[unit])


def human_megabytes(value: float) -> str:
    return f"{int(value) // MB}Mb"


def human_percent(value: float) -> str:
    return f"{int(value)}%"


def human_seconds(value: float) -> str:
    return f"{int(value)}s"
