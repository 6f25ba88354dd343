from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


WILDCARD_SUFFIX = ".*"


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]

    @property
    def correlation_id(self) -> str | None:
        value = self.payload.get("correlation_id")
        return value if isinstance(value, str) else None


EventHandler = Callable[[InternalEvent], None]


def _matches(pattern: str, event_name: str) -> bool:
    if pattern.endswith(WILDCARD_SUFFIX):
        return event_name.startswith(pattern[: -len(WILDCARD_SUFFIX)] + ".")
    return pattern == event_name


class InProcessEventBus:
    """Synchronous fan-out of domain events.

    Patterns ending in ``.*`` receive every event under that prefix, so
    ``pipeline.opportunity.*`` sees ``pipeline.opportunity.won``. Handlers run
    in subscription order on the publishing thread and their errors propagate.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[pattern]:
            self._subscribers[pattern].append(handler)

    def unsubscribe(self, pattern: str, handler: EventHandler) -> None:
        handlers = self._subscribers.get(pattern, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        resolved: list[EventHandler] = []
        for pattern, handlers in list(self._subscribers.items()):
            if _matches(pattern, event_name):
                resolved.extend(handler for handler in handlers if handler not in resolved)
        return resolved

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        handlers = self.handlers_for(event_name)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
