"""Notifier — fans one notification out to the contacts that want it."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from procvigil.checks.reporter import NotifyRequest
from procvigil.types import ContactName, NotifyLevel

_logger = logging.getLogger(__name__)

TransportCallback = Callable[[ContactName, NotifyLevel, str], Awaitable[Any]]


class Notifier:
    """Delivers a NotifyRequest to every contact subscribed at or below its level.

    ``contacts`` maps a contact name to the lowest level it wants to hear
    about, e.g. ``{"ops": "warn", "pager": "crit"}``.
    """

    def __init__(
        self,
        contacts: Mapping[ContactName, NotifyLevel],
        transport: TransportCallback,
    ) -> None:
        self._contacts = dict(contacts)
        self._transport = transport

    @property
    def contacts(self) -> dict[ContactName, NotifyLevel]:
        return dict(self._contacts)

    async def __call__(self, request: NotifyRequest) -> int:
        """Deliver ``request``; returns how many contacts it was handed to."""
        delivered = 0
        for contact, min_level in self._contacts.items():
            if not request.level.at_least(min_level):
                continue
            try:
                await self._transport(contact, request.level, request.message)
                delivered += 1
            except Exception:
                _logger.exception("Notification to %s failed", contact)
        return delivered
