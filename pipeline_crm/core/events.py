from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


@dataclass
class DomainEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[DomainEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of domain events to handlers registered in this process."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = DomainEvent(name=event_name, payload=payload)
        for handler in list(self._handlers.get(event_name, [])):
            handler(event)

    def clear(self) -> None:
        self._handlers.clear()


event_bus = InProcessEventBus()
