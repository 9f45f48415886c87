"""In-process domain events.

Every envelope is a flat dict keyed by ``event_type``; it is stamped with the
current correlation id, kept in ``published_events`` for inspection and handed
to the handlers subscribed to its type.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from typing import Any

from quotedesk.context import get_correlation_id

EventHandler = Callable[[dict[str, Any]], None]

published_events: list[dict[str, Any]] = []
_handlers: dict[str, list[EventHandler]] = defaultdict(list)


def subscribe(event_type: str, handler: EventHandler) -> None:
    if handler not in _handlers[event_type]:
        _handlers[event_type].append(handler)


def publish(envelope: dict[str, Any]) -> None:
    envelope.setdefault("correlation_id", get_correlation_id())
    published_events.append(envelope)
    for handler in list(_handlers.get(envelope.get("event_type") or "", ())):
        handler(envelope)
