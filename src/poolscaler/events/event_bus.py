#!/usr/bin/env python3
"""
In-process event bus delivering reconciler signals to handlers
"""

import logging
from collections import defaultdict, deque
from typing import Deque, Dict, List, Optional

from .base import Event, EventHandler, EventType
from .event_metrics import HANDLER_ERRORS

logger = logging.getLogger(__name__)


class EventBus:
    """
    Fans events out to subscribed handlers and keeps a short per-pool history.

    A handler subscribed with event_type=None receives every event. Handler
    failures are logged and counted; they never reach the publisher.
    """

    def __init__(self, history_size: int = 200):
        self.subscribers: Dict[Optional[EventType], List[EventHandler]] = defaultdict(list)
        self.history_size = history_size
        self._history: Dict[str, Deque[Event]] = defaultdict(lambda: deque(maxlen=self.history_size))

    def subscribe(self, handler: EventHandler, event_type: Optional[EventType] = None) -> None:
        self.subscribers[event_type].append(handler)
        target = event_type.value if event_type else "all events"
        logger.info(f"Subscribed handler {handler.name} to {target}")

    def unsubscribe(self, handler: EventHandler, event_type: Optional[EventType] = None) -> None:
        if handler in self.subscribers[event_type]:
            self.subscribers[event_type].remove(handler)
            logger.info(f"Unsubscribed handler {handler.name}")

    async def publish(self, event: Event) -> int:
        """
        Deliver an event

        Args:
            event: The event to publish

        Returns:
            Number of handlers that handled it successfully
        """
        self._history[event.pool].append(event)

        handled = 0
        for handler in self.subscribers[event.event_type] + self.subscribers[None]:
            try:
                if await handler.handle(event):
                    handled += 1
            except Exception as e:
                HANDLER_ERRORS.labels(handler=handler.name, event_type=event.event_type.value).inc()
                logger.error(f"Handler {handler.name} failed on {event.event_type.value}: {e}")
        return handled

    async def publish_all(self, events: List[Event]) -> None:
        for event in events:
            await self.publish(event)

    def recent(self, pool: str, limit: int = 50) -> List[Event]:
        """Most recent events for a pool, newest last"""
        events = list(self._history.get(pool, ()))
        return events[-limit:] if limit > 0 else []
