"""Data structures stored in a chat record."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from storyrecap.constants import (
    DATA_VERSION,
    ENTRY_HEADER_RE,
    GROUP_SENTINEL_RE,
    GROUP_SENTINEL_TEMPLATE,
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Importance(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ItemStatus(str, Enum):
    OWNED = "owned"
    USED = "used"
    LOST = "lost"
    TRANSFERRED = "transferred"
    BROKEN = "broken"


_STATUS_SYNONYMS = {
    "possessed": ItemStatus.OWNED,
    "held": ItemStatus.OWNED,
    "보유중": ItemStatus.OWNED,
    "보유": ItemStatus.OWNED,
    "所持中": ItemStatus.OWNED,
    "持有中": ItemStatus.OWNED,
    "consumed": ItemStatus.USED,
    "사용됨": ItemStatus.USED,
    "missing": ItemStatus.LOST,
    "분실": ItemStatus.LOST,
    "given": ItemStatus.TRANSFERRED,
    "gifted": ItemStatus.TRANSFERRED,
    "양도": ItemStatus.TRANSFERRED,
    "destroyed": ItemStatus.BROKEN,
    "파손": ItemStatus.BROKEN,
}


def normalize_status(value: Any) -> ItemStatus:
    """Map free-form status text onto an ItemStatus, defaulting to owned."""
    text = str(value or "").strip().lower()
    try:
        return ItemStatus(text)
    except ValueError:
        return _STATUS_SYNONYMS.get(text, ItemStatus.OWNED)


def normalize_importance(value: Any) -> Importance:
    text = str(value or "").strip().lower()
    if text in ("med", "mid", "normal"):
        return Importance.MEDIUM
    try:
        return Importance(text)
    except ValueError:
        return Importance.MEDIUM


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _extra_fields(data: dict[str, Any], known: set[str]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if k not in known}


# -- Summary entries ---------------------------------------------------------


def make_sentinel(start: int, end: int) -> str:
    return GROUP_SENTINEL_TEMPLATE.format(start=start, end=end)


def parse_sentinel(content: str) -> Optional[tuple[int, int]]:
    """Return the (start, end) target of a group sentinel, or None."""
    match = GROUP_SENTINEL_RE.match(content or "")
    if match is None:
        return None
    return int(match.group(1)), int(match.group(2))


def parse_header(content: str) -> Optional[tuple[int, int]]:
    """Return the (start, end) range declared by an entry's first line."""
    first_line = (content or "").lstrip().split("\n", 1)[0].strip()
    match = ENTRY_HEADER_RE.match(first_line)
    if match is None:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) is not None else start
    return (start, end) if start <= end else (end, start)


def format_header(start: int, end: int) -> str:
    return f"#{start}" if start == end else f"#{start}-{end}"


def strip_header(content: str) -> str:
    """Drop a leading header line, returning the body."""
    text = (content or "").lstrip("\n")
    first, _, rest = text.partition("\n")
    if ENTRY_HEADER_RE.match(first.strip()):
        return rest.lstrip("\n")
    return text


@dataclass
class SummaryEntry:
    """A stored summary keyed by the last message index it covers."""

    content: str
    timestamp: str = field(default_factory=utc_now)
    pinned: bool = False
    memo: str = ""
    invalidated: bool = False
    invalid_reason: str = ""

    @property
    def is_sentinel(self) -> bool:
        return parse_sentinel(self.content) is not None

    @property
    def sentinel_target(self) -> Optional[tuple[int, int]]:
        return parse_sentinel(self.content)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "timestamp": self.timestamp,
            "pinned": self.pinned,
            "memo": self.memo,
            "invalidated": self.invalidated,
            "invalidReason": self.invalid_reason,
        }

    @classmethod
    def from_value(cls, value: Any) -> "SummaryEntry":
        """Build from either the object form or a bare content string."""
        if isinstance(value, str):
            return cls(content=value)
        if not isinstance(value, dict):
            raise ValueError(f"Unsupported summary entry: {value!r}")
        return cls(
            content=str(value.get("content") or ""),
            timestamp=value.get("timestamp") or utc_now(),
            pinned=bool(value.get("pinned", False)),
            memo=str(value.get("memo") or ""),
            invalidated=bool(value.get("invalidated", False)),
            invalid_reason=str(
                value.get("invalidReason") or value.get("invalid_reason") or ""
            ),
        )


# -- Catalog records ---------------------------------------------------------

_CHARACTER_FIELDS = {
    "name", "role", "age", "occupation", "description", "traits",
    "relationshipWithUser", "firstAppearance", "createdAt", "lastUpdate",
}


@dataclass
class Character:
    """A tracked character, unique by name."""

    name: str
    role: str = ""
    age: str = ""
    occupation: str = ""
    description: str = ""
    traits: list[str] = field(default_factory=list)
    relationship_with_user: str = ""
    first_appearance: Optional[int] = None
    created_at: str = field(default_factory=utc_now)
    last_update: str = field(default_factory=utc_now)
    extra: dict[str, Any] = field(default_factory=dict)

    def merge_from(self, other: "Character") -> None:
        """Overwrite with other's non-empty fields and union the traits."""
        for attr in ("role", "age", "occupation", "description", "relationship_with_user"):
            value = getattr(other, attr)
            if value:
                setattr(self, attr, value)
        for trait in other.traits:
            if trait and trait not in self.traits:
                self.traits.append(trait)
        if self.first_appearance is None:
            self.first_appearance = other.first_appearance
        self.extra.update(other.extra)
        self.last_update = utc_now()

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "name": self.name,
            "role": self.role,
            "age": self.age,
            "occupation": self.occupation,
            "description": self.description,
            "traits": list(self.traits),
            "relationshipWithUser": self.relationship_with_user,
            "firstAppearance": self.first_appearance,
            "createdAt": self.created_at,
            "lastUpdate": self.last_update,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Character":
        traits = data.get("traits") or []
        if isinstance(traits, str):
            traits = [t.strip() for t in traits.split(",") if t.strip()]
        return cls(
            name=str(data["name"]).strip(),
            role=str(data.get("role") or ""),
            age=str(data.get("age") or ""),
            occupation=str(data.get("occupation") or ""),
            description=str(data.get("description") or ""),
            traits=[str(t) for t in traits],
            relationship_with_user=str(data.get("relationshipWithUser") or ""),
            first_appearance=_optional_int(data.get("firstAppearance")),
            created_at=data.get("createdAt") or utc_now(),
            last_update=data.get("lastUpdate") or utc_now(),
            extra=_extra_fields(data, _CHARACTER_FIELDS),
        )


_EVENT_FIELDS = {
    "id", "title", "description", "participants", "importance",
    "messageIndex", "createdAt",
}


@dataclass
class StoryEvent:
    """A pivotal story moment."""

    title: str
    description: str = ""
    participants: list[str] = field(default_factory=list)
    importance: Importance = Importance.MEDIUM
    message_index: Optional[int] = None
    id: str = field(default_factory=lambda: new_id("evt"))
    created_at: str = field(default_factory=utc_now)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "participants": list(self.participants),
            "importance": self.importance.value,
            "messageIndex": self.message_index,
            "createdAt": self.created_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StoryEvent":
        participants = data.get("participants") or []
        if isinstance(participants, str):
            participants = [p.strip() for p in participants.split(",") if p.strip()]
        return cls(
            id=data.get("id") or new_id("evt"),
            title=str(data["title"]).strip(),
            description=str(data.get("description") or ""),
            participants=[str(p) for p in participants],
            importance=normalize_importance(data.get("importance")),
            message_index=_optional_int(data.get("messageIndex")),
            created_at=data.get("createdAt") or utc_now(),
            extra=_extra_fields(data, _EVENT_FIELDS),
        )


_ITEM_FIELDS = {
    "id", "name", "description", "owner", "status", "origin",
    "messageIndex", "createdAt",
}


@dataclass
class Item:
    """A story-relevant object."""

    name: str
    description: str = ""
    owner: str = ""
    status: ItemStatus = ItemStatus.OWNED
    origin: str = ""
    message_index: Optional[int] = None
    id: str = field(default_factory=lambda: new_id("itm"))
    created_at: str = field(default_factory=utc_now)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "owner": self.owner,
            "status": self.status.value,
            "origin": self.origin,
            "messageIndex": self.message_index,
            "createdAt": self.created_at,
        })
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Item":
        return cls(
            id=data.get("id") or new_id("itm"),
            name=str(data["name"]).strip(),
            description=str(data.get("description") or ""),
            owner=str(data.get("owner") or ""),
            status=normalize_status(data.get("status")),
            origin=str(data.get("origin") or ""),
            message_index=_optional_int(data.get("messageIndex")),
            created_at=data.get("createdAt") or utc_now(),
            extra=_extra_fields(data, _ITEM_FIELDS),
        )


@dataclass
class LegacySummary:
    """Prose carried over from another chat, always injected."""

    order: int
    content: str
    imported_from: str = ""
    timestamp: str = field(default_factory=utc_now)
    original_index: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order": self.order,
            "content": self.content,
            "importedFrom": self.imported_from,
            "timestamp": self.timestamp,
            "originalIndex": self.original_index,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LegacySummary":
        return cls(
            order=int(data.get("order") or 0),
            content=str(data.get("content") or ""),
            imported_from=str(data.get("importedFrom") or ""),
            timestamp=data.get("timestamp") or utc_now(),
            original_index=_optional_int(data.get("originalIndex")),
        )


# -- Chat record -------------------------------------------------------------

_RECORD_FIELDS = {
    "version", "chatId", "characterName", "summaries", "legacySummaries",
    "characters", "events", "items", "lastUpdate",
}


@dataclass
class ChatRecord:
    """All persisted state for one chat."""

    chat_id: str
    character_name: str = ""
    summaries: dict[int, SummaryEntry] = field(default_factory=dict)
    legacy_summaries: list[LegacySummary] = field(default_factory=list)
    characters: dict[str, Character] = field(default_factory=dict)
    events: list[StoryEvent] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    last_update: Optional[str] = None
    version: int = DATA_VERSION
    extra: dict[str, Any] = field(default_factory=dict)

    def to_blob(self) -> dict[str, Any]:
        blob = dict(self.extra)
        blob.update({
            "version": self.version,
            "chatId": self.chat_id,
            "characterName": self.character_name,
            "summaries": {
                str(k): self.summaries[k].to_dict() for k in sorted(self.summaries)
            },
            "legacySummaries": [s.to_dict() for s in self.legacy_summaries],
            "characters": {name: c.to_dict() for name, c in self.characters.items()},
            "events": [e.to_dict() for e in self.events],
            "items": [i.to_dict() for i in self.items],
            "lastUpdate": self.last_update,
        })
        return blob

    @classmethod
    def from_blob(cls, blob: dict[str, Any], chat_id: str = "") -> "ChatRecord":
        """Build a record; raises ValueError/KeyError/TypeError on bad shapes."""
        summaries: dict[int, SummaryEntry] = {}
        for key, value in (blob.get("summaries") or {}).items():
            summaries[int(key)] = SummaryEntry.from_value(value)

        characters: dict[str, Character] = {}
        raw_characters = blob.get("characters") or {}
        if isinstance(raw_characters, list):
            raw_characters = {c["name"]: c for c in raw_characters}
        for name, data in raw_characters.items():
            data = dict(data)
            data.setdefault("name", name)
            characters[str(data["name"])] = Character.from_dict(data)

        legacy = [LegacySummary.from_dict(s) for s in blob.get("legacySummaries") or []]
        legacy.sort(key=lambda s: s.order)

        return cls(
            chat_id=str(blob.get("chatId") or chat_id),
            character_name=str(blob.get("characterName") or ""),
            summaries=summaries,
            legacy_summaries=legacy,
            characters=characters,
            events=[StoryEvent.from_dict(e) for e in blob.get("events") or []],
            items=[Item.from_dict(i) for i in blob.get("items") or []],
            last_update=blob.get("lastUpdate"),
            version=int(blob.get("version") or DATA_VERSION),
            extra=_extra_fields(blob, _RECORD_FIELDS),
        )
