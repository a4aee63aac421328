from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous fan-out of domain events to handlers in this process.

    Handlers run in subscription order on the publishing thread, so they see
    the caller's correlation id.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_names: str | Iterable[str], handler: EventHandler) -> None:
        names = [event_names] if isinstance(event_names, str) else list(event_names)
        for name in names:
            if handler not in self._subscribers[name]:
                self._subscribers[name].append(handler)

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        handlers = list(self._subscribers.get(event_name, []))
        event = InternalEvent(name=event_name, payload=payload)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = InProcessEventBus()
