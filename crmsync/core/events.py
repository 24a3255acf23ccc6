import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("crmsync.events")


@dataclass
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        self._subscribers[event_name].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def publish(self, event_name: str, payload: dict[str, Any]) -> None:
        event = InternalEvent(name=event_name, payload=payload)
        for handler in self._subscribers.get(event_name, []):
            try:
                handler(event)
            except Exception as exc:
                logger.exception("event.handler_failed", extra={"event_type": event_name, "error": str(exc)[:500]})


event_bus = InProcessEventBus()
