"""Minimal in-process event sink for node events."""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from typing import Any

from reclaim.events import NodeEvent

Handler = Callable[..., Any]


class EventBus:
    """Dispatches node events to subscribed handlers and counts reasons.

    Satisfies the ``EventSink`` protocol, so it can stand in for the
    cluster event recorder or fan events out to it.
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[tuple[type, ...], Handler]] = []
        self._reasons: Counter[str] = Counter()

    def on[F: Callable[..., Any]](
        self,
        *event_types: type[NodeEvent],
    ) -> Callable[[F], F]:
        """Register handler. Empty event_types = wildcard."""

        def decorator(fn: F) -> F:
            self._handlers.append((event_types, fn))
            return fn

        return decorator

    def emit(self, event: NodeEvent) -> None:
        self._reasons[event.reason] += 1
        for types, handler in self._handlers:
            if not types or isinstance(event, types):
                handler(event)

    def calls(self, reason: str | None = None) -> int:
        """Events emitted so far, optionally only those with ``reason``."""
        if reason is None:
            return sum(self._reasons.values())
        return self._reasons[reason]

    def clear(self) -> None:
        """Remove all handlers and reset counters."""
        self._handlers.clear()
        self._reasons.clear()
