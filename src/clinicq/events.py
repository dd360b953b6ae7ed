"""
In-process domain event bus.
"""

from __future__ import annotations

import inspect
import logging
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Union

from .models import DomainEvent, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


class InMemoryEventBus:
    """Pub/sub with at-least-once delivery to every current subscriber."""

    def __init__(self, history_size: int = 200):
        self._handlers: Dict[int, Handler] = {}
        self._next_id = 0
        self.history: Deque[DomainEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        sub_id = self._next_id
        self._next_id += 1
        self._handlers[sub_id] = handler

        def unsubscribe() -> None:
            self._handlers.pop(sub_id, None)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._handlers)

    async def publish(self, event: DomainEvent) -> None:
        self.history.append(event)
        for handler in list(self._handlers.values()):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s (%s)", event.event_type.value, event.event_id)

    def events_of(self, event_type: EventType, clinic_id: Optional[str] = None) -> List[DomainEvent]:
        return [
            e for e in self.history if e.event_type == event_type and (clinic_id is None or e.clinic_id == clinic_id)
        ]
