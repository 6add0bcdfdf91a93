"""Inheritance of monitoring configuration: application → group → process.

Everything here is a pure function applied once, when a process or child
is attached. The result never links back to the layers it came from, so
later edits to a parent layer cannot leak into attached children.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from pydantic import ValidationError

from procvigil.checks.condition import expand_shorthand
from procvigil.dsl.models import MonitorChildrenConfig, ProcessConfig
from procvigil.exceptions import ConfigError
from procvigil.types import ContactName, NotifyLevel


def deep_merge(parent: Mapping[str, Any], child: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``child`` over ``parent`` key by key, recursing into nested mappings."""
    merged = copy.deepcopy(dict(parent))
    for key, value in child.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _with_plain_checks(section: Mapping[str, Any] | None) -> Mapping[str, Any] | None:
    """Spell out comparator shorthand so a later layer's bound replaces an earlier one."""
    if not section or not isinstance(section.get("checks"), Mapping):
        return section
    checks = {
        key: expand_shorthand(check) if isinstance(check, Mapping) else check
        for key, check in section["checks"].items()
    }
    return {**section, "checks": checks}


def _merge_layers(layers: Iterable[Mapping[str, Any] | None]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for layer in layers:
        if layer:
            merged = deep_merge(merged, layer)
    return merged


def resolve_monitor_children(*layers: Mapping[str, Any] | None) -> MonitorChildrenConfig:
    """Deep-merge ``monitor_children`` layers, outermost first, and validate."""
    try:
        return MonitorChildrenConfig.model_validate(
            _merge_layers(_with_plain_checks(layer) for layer in layers)
        )
    except ValidationError as e:
        raise ConfigError(f"Invalid monitor_children config: {e}") from e


def _level(value: Any) -> NotifyLevel:
    if value is None:
        return NotifyLevel.WARN
    try:
        return NotifyLevel(value)
    except ValueError as e:
        raise ConfigError(f"Unknown notify level: {value!r}") from e


def inherit_notify(
    parent: Mapping[ContactName, NotifyLevel | str] | None,
    notify: Mapping[ContactName, NotifyLevel | str | None] | Iterable[ContactName] | None = None,
    clear: Iterable[ContactName] = (),
) -> dict[ContactName, NotifyLevel]:
    """Contacts of one layer: inherited ones, plus/overridden by ``notify``, minus ``clear``.

    A contact named without a level is notified from ``warn`` upwards.
    """
    contacts = {name: _level(level) for name, level in (parent or {}).items()}
    if isinstance(notify, str):
        notify = [notify]
    if notify:
        if isinstance(notify, Mapping):
            items = notify.items()
        else:
            items = ((name, None) for name in notify)
        for name, level in items:
            contacts[str(name)] = _level(level)
    if isinstance(clear, str):
        clear = [clear]
    for name in clear:
        contacts.pop(str(name), None)
    return contacts


def resolve_process_config(
    app: Mapping[str, Any] | None = None,
    group: Mapping[str, Any] | None = None,
    process: Mapping[str, Any] | None = None,
) -> ProcessConfig:
    """Resolve one process's configuration from its application and group.

    ``notify``/``nonotify`` follow the contact inheritance rules,
    ``monitor_children`` and ``checks`` are deep-merged, and any other key
    set on an inner layer replaces the outer value.
    """
    layers = [_with_plain_checks(layer) or {} for layer in (app, group, process)]
    layers = [
        {**layer, "monitor_children": _with_plain_checks(layer["monitor_children"])}
        if isinstance(layer.get("monitor_children"), Mapping) else layer
        for layer in layers
    ]

    contacts: dict[ContactName, NotifyLevel] = {}
    for layer in layers:
        contacts = inherit_notify(contacts, layer.get("notify"), layer.get("nonotify", ()))

    merged = _merge_layers(
        {k: v for k, v in layer.items() if k not in ("name", "notify", "nonotify")}
        for layer in layers
    )
    merged["notify"] = contacts
    merged["name"] = (process or {}).get("name", "")

    try:
        return ProcessConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid process config: {e}") from e
