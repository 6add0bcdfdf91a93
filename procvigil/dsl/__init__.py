"""Configuration boundary — resolved monitoring config and its inheritance rules."""

from procvigil.dsl.merge import (
    deep_merge,
    inherit_notify,
    resolve_monitor_children,
    resolve_process_config,
)
from procvigil.dsl.models import MonitorChildrenConfig, ProcessConfig

__all__ = [
    "MonitorChildrenConfig",
    "ProcessConfig",
    "deep_merge",
    "inherit_notify",
    "resolve_monitor_children",
    "resolve_process_config",
]
