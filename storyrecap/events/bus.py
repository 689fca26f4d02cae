"""Async event bus connecting the host, the dispatcher and observers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Optional

from storyrecap.events.types import Event, EventType

logger = logging.getLogger(__name__)

EventHandler = Callable[[Event], Awaitable[Optional[Event]]]
Middleware = Callable[[Event], Awaitable[Optional[Event]]]


class EventBus:
    """Async pub/sub event bus.

    A handler may return a follow-up event, which is published in turn.
    Handler failures are logged and never reach the publisher.
    """

    def __init__(self, log_limit: int = 500) -> None:
        self._subscribers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._event_log: list[Event] = []
        self._log_limit = log_limit
        self._middleware: list[Middleware] = []

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> bool:
        handlers = self._subscribers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event: Event) -> None:
        """Publish an event to all matching subscribers."""
        processed: Optional[Event] = event
        for mw in self._middleware:
            processed = await mw(processed)
            if processed is None:
                return
        event = processed

        self._event_log.append(event)
        if len(self._event_log) > self._log_limit:
            del self._event_log[: len(self._event_log) - self._log_limit]

        handlers = list(self._subscribers.get(event.event_type, []))
        tasks = [handler(event) for handler in handlers]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for result in results:
            if isinstance(result, Event):
                await self.publish(result)
            elif isinstance(result, Exception):
                logger.error(
                    "Handler error for %s: %s", event.event_type.value, result,
                    exc_info=result,
                )

    def add_middleware(self, middleware: Middleware) -> None:
        """Add a middleware function to the processing chain."""
        self._middleware.append(middleware)

    def get_event_log(self, event_type: Optional[EventType] = None) -> list[Event]:
        """Retrieve logged events, optionally filtered."""
        events = self._event_log
        if event_type is not None:
            events = [e for e in events if e.event_type == event_type]
        return list(events)

    def clear_log(self) -> None:
        """Clear the event log."""
        self._event_log.clear()
