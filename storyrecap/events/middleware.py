"""Event middleware."""

from __future__ import annotations

import logging
from typing import Optional

from storyrecap.events.types import Event

logger = logging.getLogger(__name__)


class EventLogger:
    """Logs all events for debugging."""

    async def __call__(self, event: Event) -> Optional[Event]:
        logger.debug(
            "[%s] -> %s (id=%s, chat=%s, index=%s)",
            event.source,
            event.event_type.value,
            event.event_id[:8],
            event.chat_id or "-",
            "-" if event.message_index is None else event.message_index,
        )
        return event
