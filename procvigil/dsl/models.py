"""Resolved configuration models handed to the check engine."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from procvigil.checks.condition import Condition, Metric
from procvigil.config import settings
from procvigil.types import ContactName, NotifyLevel


def _name_checks(data: Any) -> Any:
    """Let a check's key stand in for its metric: ``{"memory": {"below": ...}}``."""
    if not isinstance(data, dict) or not isinstance(data.get("checks"), dict):
        return data
    checks = {}
    for key, check in data["checks"].items():
        if isinstance(check, dict) and "metric" not in check:
            check = {**check, "metric": key.split(":", 1)[0]}
        checks[key] = check
    return {**data, "checks": checks}


class MonitorChildrenConfig(BaseModel):
    """What every discovered child of a process gets watched for."""

    model_config = ConfigDict(frozen=True)

    checks: dict[str, Condition] = Field(default_factory=dict)
    children_update_period: float = Field(
        default_factory=lambda: settings.children_update_period, gt=0
    )

    @model_validator(mode="before")
    @classmethod
    def _expand_checks(cls, data: Any) -> Any:
        return _name_checks(data)


class ProcessConfig(BaseModel):
    """Fully inherited configuration of one supervised process."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    checks: dict[str, Condition] = Field(default_factory=dict)
    monitor_children: MonitorChildrenConfig | None = None
    notify: dict[ContactName, NotifyLevel] = Field(default_factory=dict)
    check_alive: bool = True
    check_identity: bool = True
    check_every: float = Field(default_factory=lambda: settings.check_every, gt=0)

    @model_validator(mode="before")
    @classmethod
    def _expand_checks(cls, data: Any) -> Any:
        return _name_checks(data)

    def lifecycle_checks(self) -> list[Condition]:
        """The liveness and PID-reuse checks every supervised process gets."""
        checks = []
        if self.check_alive:
            checks.append(Condition(metric=Metric.ALIVE, every=self.check_every))
        if self.check_identity:
            checks.append(Condition(metric=Metric.IDENTITY, every=self.check_every))
        return checks
