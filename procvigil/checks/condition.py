"""Conditions — declarative bounds a watched process should stay within.

A condition names the healthy bound: ``memory below 50MB`` holds while the
resident size stays under 50MB. A sample breaches when the bound fails.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from procvigil.config import settings
from procvigil.types import ActionName, NotifyLevel
from procvigil.units import parse_bytes


class Metric(str, Enum):
    MEMORY = "memory"  # resident bytes
    CPU = "cpu"  # percent of one core
    ALIVE = "alive"  # process exists
    IDENTITY = "identity"  # start time, detects PID reuse
    CPUTIME = "cputime"  # cumulative CPU seconds
    RUNTIME = "runtime"  # seconds since start


class Comparator(str, Enum):
    BELOW = "below"
    ABOVE = "above"
    EQUAL = "equal"
    NOT_EQUAL = "not_equal"

    @property
    def symbol(self) -> str:
        return _SYMBOLS[self]

    def holds(self, value: Any, threshold: Any) -> bool:
        if self is Comparator.BELOW:
            return value < threshold
        if self is Comparator.ABOVE:
            return value > threshold
        if self is Comparator.EQUAL:
            return value == threshold
        return value != threshold


_SYMBOLS = {
    Comparator.BELOW: "<",
    Comparator.ABOVE: ">",
    Comparator.EQUAL: "=",
    Comparator.NOT_EQUAL: "!=",
}


def expand_shorthand(check: dict[str, Any]) -> dict[str, Any]:
    """Rewrite ``{"below": X}`` as ``{"comparator": "below", "threshold": X}``."""
    check = dict(check)
    for comparator in Comparator:
        if comparator.value in check:
            check["comparator"] = comparator.value
            check["threshold"] = check.pop(comparator.value)
            break
    return check


# Metrics that make no sense without an explicit threshold.
_NUMERIC = {Metric.MEMORY, Metric.CPU, Metric.CPUTIME, Metric.RUNTIME}


class Condition(BaseModel):
    """One bound, sampled every ``every`` seconds, fired after ``times`` breaches in a row."""

    model_config = ConfigDict(frozen=True)

    metric: Metric
    comparator: Comparator = Comparator.BELOW
    threshold: float | bool | None = None
    times: int = Field(default=1, ge=1)
    every: float = Field(default_factory=lambda: settings.check_every, gt=0)
    fires: list[ActionName] = Field(default_factory=lambda: ["restart"])
    level: NotifyLevel = NotifyLevel.WARN

    @model_validator(mode="before")
    @classmethod
    def _expand_shorthand(cls, data: Any) -> Any:
        """Accept ``{"below": "50MB"}`` as well as comparator/threshold pairs."""
        if not isinstance(data, dict):
            return data
        data = expand_shorthand(data)
        if isinstance(data.get("fires"), str):
            data["fires"] = [data["fires"]]
        metric = data.get("metric")
        if metric in (Metric.MEMORY, Metric.MEMORY.value) and isinstance(data.get("threshold"), str):
            data["threshold"] = parse_bytes(data["threshold"])
        if metric in (Metric.ALIVE, Metric.ALIVE.value) and data.get("threshold") is None:
            data["threshold"] = True
            data["comparator"] = Comparator.EQUAL.value
        if metric in (Metric.IDENTITY, Metric.IDENTITY.value):
            # start time must stay what it was when first seen
            data["comparator"] = Comparator.EQUAL.value
        return data

    @model_validator(mode="after")
    def _check_threshold(self) -> Condition:
        if self.metric in _NUMERIC and self.threshold is None:
            raise ValueError(f"{self.metric.value} condition needs a threshold")
        return self

    @property
    def name(self) -> str:
        return f"check_{self.metric.value}"

    def breaches(self, value: Any, threshold: Any = None) -> bool:
        """True when ``value`` is outside the bound."""
        bound = self.threshold if threshold is None else threshold
        return not self.comparator.holds(value, bound)
