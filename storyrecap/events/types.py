"""Event types and data structures for host and engine events."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    """All event types carried on the engine's bus."""

    # Host chat events
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_SENT = "message_sent"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    MESSAGE_REGENERATED = "message_regenerated"
    CHAT_SWITCHED = "chat_switched"

    # Engine notifications
    SUMMARY_DATA_CHANGED = "summary_data_changed"
    INJECTION_UPDATED = "injection_updated"
    NOTIFICATION = "notification"


HOST_EVENTS = frozenset({
    EventType.MESSAGE_RECEIVED,
    EventType.MESSAGE_SENT,
    EventType.MESSAGE_EDITED,
    EventType.MESSAGE_DELETED,
    EventType.MESSAGE_REGENERATED,
    EventType.CHAT_SWITCHED,
})


@dataclass
class Event:
    """A single event on the bus."""

    event_type: EventType
    payload: dict[str, Any] = field(default_factory=dict)
    source: str = "host"
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    message_index: Optional[int] = None
    chat_id: Optional[str] = None

    @classmethod
    def notification(cls, level: str, message: str, **details: Any) -> Event:
        """A user-facing notice from the engine."""
        return cls(
            event_type=EventType.NOTIFICATION,
            payload={"level": level, "message": message, **details},
            source="engine",
        )
