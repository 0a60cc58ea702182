from __future__ import annotations

import fnmatch
from collections import defaultdict, deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from app.core.context import get_correlation_id


RECENT_EVENTS_LIMIT = 1000


@dataclass(frozen=True)
class DomainEvent:
    event_type: str
    envelope: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous in-process dispatch of domain events.

    Subscriptions are shell-style patterns on the event type, so ``crm.*.updated``
    receives every entity update. Handlers run in the publisher's thread and their
    exceptions reach the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def dispatch(self, event: DomainEvent) -> None:
        for pattern, handlers in list(self._subscribers.items()):
            if fnmatch.fnmatchcase(event.event_type, pattern):
                for handler in list(handlers):
                    handler(event)


event_bus = EventBus()
published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.dispatch(DomainEvent(event_type=event_type, envelope=envelope))
