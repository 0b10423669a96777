"""Per-kind callback tables.

A :class:`CallbackTable` maps an event kind (``"event"``, ``"tool_use"``,
``"status"``...) to the handlers registered for it. Dispatch is
synchronous and in registration order. A handler that raises is logged
and skipped so one faulty subscriber cannot stall the stream feeding it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

log = logging.getLogger(__name__)

Handler = Callable[[Any], object]


class CallbackTable:
    def __init__(self, owner: str) -> None:
        self._owner = owner
        self._handlers: dict[str, list[Handler]] = {}

    def add(self, kind: str, handler: Handler) -> None:
        """Register *handler* for *kind*."""
        self._handlers.setdefault(kind, []).append(handler)

    def remove(self, kind: str, handler: Handler) -> None:
        """Remove a previously registered handler. Unknown handlers are ignored."""
        handlers = self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._handlers.pop(kind, None)

    def count(self, kind: str) -> int:
        return len(self._handlers.get(kind, []))

    def dispatch(self, kind: str, payload: Any) -> None:
        """Call every handler registered for *kind* with *payload*."""
        for handler in list(self._handlers.get(kind, [])):
            try:
                handler(payload)
            except Exception:
                log.exception("%s handler error for %s", self._owner, kind)
