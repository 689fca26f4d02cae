"""Per-chat persistent state: summaries, catalogs and legacy carry-over."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Union

from storyrecap.errors import InvalidIndexError
from storyrecap.memory.persistence import PersistenceSink
from storyrecap.models import (
    Character,
    ChatRecord,
    Item,
    LegacySummary,
    StoryEvent,
    SummaryEntry,
    format_header,
    make_sentinel,
    parse_header,
    strip_header,
    utc_now,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[], None]


@dataclass(frozen=True)
class EntrySpan:
    """A real (non-sentinel) entry and the message range it covers."""

    key: int
    start: int
    end: int
    entry: SummaryEntry

    @property
    def is_group(self) -> bool:
        return self.start != self.end

    def contains(self, index: int) -> bool:
        return self.start <= index <= self.end

    def overlaps(self, start: int, end: int) -> bool:
        return self.start <= end and start <= self.end


class ChatStore:
    """Loads, mutates and persists the Chat Record of the active chat.

    Every mutation ends in :meth:`_commit`, which stamps ``last_update``,
    notifies change listeners and schedules a debounced write through the
    Persistence Sink. :meth:`flush` performs the write immediately.
    """

    def __init__(self, sink: PersistenceSink, save_delay: float = 0.5) -> None:
        self._sink = sink
        self._save_delay = save_delay
        self._record = ChatRecord(chat_id="")
        self._listeners: list[ChangeListener] = []
        self._dirty = False
        self._save_task: Optional[asyncio.Task] = None
        self._batch_depth = 0
        self._batch_changed = False

    # -- Lifecycle -----------------------------------------------------------

    @property
    def record(self) -> ChatRecord:
        return self._record

    @property
    def chat_id(self) -> str:
        return self._record.chat_id

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def add_listener(self, listener: ChangeListener) -> None:
        """Call ``listener`` after every mutation."""
        self._listeners.append(listener)

    async def load(self, chat_id: str, character_name: str = "") -> ChatRecord:
        """Load a chat's record, falling back to an empty one."""
        self._cancel_pending_save()
        blob: Any = None
        try:
            blob = await self._sink.load(chat_id)
        except (OSError, ValueError):
            logger.warning(
                "Stored data for chat %s is unreadable; starting empty",
                chat_id, exc_info=True,
            )

        record: Optional[ChatRecord] = None
        if blob is not None:
            try:
                if not isinstance(blob, dict):
                    raise TypeError(f"expected an object, got {type(blob).__name__}")
                record = ChatRecord.from_blob(blob, chat_id)
            except (ValueError, KeyError, TypeError, AttributeError):
                logger.warning(
                    "Stored data for chat %s is malformed; starting empty",
                    chat_id, exc_info=True,
                )
        if record is None:
            record = ChatRecord(chat_id=chat_id)
        record.chat_id = chat_id
        if character_name and not record.character_name:
            record.character_name = character_name

        self._record = record
        self._dirty = False
        logger.info(
            "Loaded chat %s (%d summaries, %d legacy)",
            chat_id, len(record.summaries), len(record.legacy_summaries),
        )
        self._notify()
        return record

    async def switch_chat(self, chat_id: str, character_name: str = "") -> ChatRecord:
        """Finish writing the current chat, then load another."""
        await self.flush()
        return await self.load(chat_id, character_name)

    async def flush(self) -> None:
        """Write the record now if it has unsaved changes."""
        self._cancel_pending_save()
        if not self._dirty or not self._record.chat_id:
            return
        blob = self._record.to_blob()
        await self._sink.save(self._record.chat_id, blob)
        self._dirty = False

    def _cancel_pending_save(self) -> None:
        task = self._save_task
        self._save_task = None
        if task is not None and not task.done():
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if task is not current:
                task.cancel()

    def _schedule_save(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no loop: the next flush() writes
        self._cancel_pending_save()
        self._save_task = loop.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        try:
            await asyncio.sleep(self._save_delay)
            await self.flush()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Saving chat %s failed", self._record.chat_id)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener()

    def _commit(self) -> None:
        if self._batch_depth:
            self._batch_changed = True
            return
        self._record.last_update = utc_now()
        self._dirty = True
        self._notify()
        self._schedule_save()

    @contextmanager
    def batch(self) -> Iterator[None]:
        """Group several mutations into a single commit."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._batch_changed:
                self._batch_changed = False
                self._commit()

    # -- Summary entries -----------------------------------------------------

    def get_summary(self, index: int) -> Optional[SummaryEntry]:
        return self._record.summaries.get(index)

    def summary_keys(self) -> list[int]:
        return sorted(self._record.summaries)

    def span_at(self, key: int) -> Optional[EntrySpan]:
        """The real entry stored at ``key``, with its range."""
        entry = self._record.summaries.get(key)
        if entry is None or entry.is_sentinel:
            return None
        start, end = parse_header(entry.content) or (key, key)
        return EntrySpan(key=key, start=min(start, key), end=key, entry=entry)

    def spans(self, include_invalidated: bool = True) -> list[EntrySpan]:
        """All real entries in ascending key order."""
        result: list[EntrySpan] = []
        for key in self.summary_keys():
            span = self.span_at(key)
            if span is None:
                continue
            if not include_invalidated and span.entry.invalidated:
                continue
            result.append(span)
        return result

    def find_span(self, index: int) -> Optional[EntrySpan]:
        """The real entry whose range contains ``index``, if any."""
        entry = self._record.summaries.get(index)
        if entry is not None:
            target = entry.sentinel_target
            if target is not None:
                span = self.span_at(target[1])
                if span is not None:
                    return span
            else:
                return self.span_at(index)
        for span in self.spans():
            if span.contains(index):
                return span
        return None

    def covered_indices(self, include_invalidated: bool = True) -> set[int]:
        covered: set[int] = set()
        for span in self.spans(include_invalidated=include_invalidated):
            covered.update(range(span.start, span.end + 1))
        return covered

    def last_covered_index(self) -> int:
        """Highest message index covered by any entry, or -1."""
        spans = self.spans()
        return max((s.end for s in spans), default=-1)

    def set_summary(
        self,
        start: int,
        end: int,
        content: str,
        preserve_meta: bool = True,
    ) -> SummaryEntry:
        """Write the entry covering ``[start, end]`` keyed at ``end``.

        The header is normalised to the range; message indices ``start..end-1``
        become group sentinels. Overlapping entries that the new range covers
        (or partially overlaps) are removed with their sentinels; a write that
        falls inside a wider existing group is dropped.
        """
        if start < 0 or end < start:
            raise InvalidIndexError(f"Invalid summary range #{start}-{end}")

        for span in self.spans():
            if span.key == end or not span.overlaps(start, end):
                continue
            if span.start <= start and end <= span.end:
                logger.warning(
                    "Ignoring #%s: already covered by the wider entry #%d-%d",
                    format_header(start, end)[1:], span.start, span.end,
                )
                return span.entry
            logger.debug(
                "Replacing overlapping entry #%d-%d with #%d-%d",
                span.start, span.end, start, end,
            )
            self._remove_span(span)

        previous = self.span_at(end)
        if previous is not None and previous.start < start:
            # Narrowing a group: drop sentinels outside the new range
            self._remove_span(previous)

        body = strip_header(content).strip()
        entry = SummaryEntry(content=f"{format_header(start, end)}\n{body}")
        if preserve_meta and previous is not None:
            entry.pinned = previous.entry.pinned
            entry.memo = previous.entry.memo

        summaries = self._record.summaries
        summaries[end] = entry
        sentinel = make_sentinel(start, end)
        for i in range(start, end):
            summaries[i] = SummaryEntry(content=sentinel)
        self._commit()
        return entry

    def delete_summary(self, index: int) -> bool:
        """Delete the entry at ``index``; groups go with all their sentinels."""
        span = self.find_span(index)
        if span is None:
            entry = self._record.summaries.pop(index, None)
            if entry is None:
                return False
        else:
            self._remove_span(span)
        self._commit()
        return True

    def _remove_span(self, span: EntrySpan) -> None:
        summaries = self._record.summaries
        summaries.pop(span.key, None)
        for i in range(span.start, span.end):
            entry = summaries.get(i)
            if entry is not None and entry.sentinel_target == (span.start, span.end):
                del summaries[i]

    def replace_contents(self, replacements: dict[int, str]) -> int:
        """Swap the body of several entries in one commit.

        Header, pinned flag, memo and timestamp are kept.
        """
        applied = 0
        for key, text in replacements.items():
            span = self.span_at(key)
            if span is None:
                logger.warning("No summary at #%d to replace", key)
                continue
            body = strip_header(text).strip()
            span.entry.content = f"{format_header(span.start, span.end)}\n{body}"
            applied += 1
        if applied:
            self._commit()
        return applied

    def set_pinned(self, index: int, pinned: bool = True) -> SummaryEntry:
        span = self._require_span(index)
        span.entry.pinned = pinned
        self._commit()
        return span.entry

    def set_memo(self, index: int, memo: str) -> SummaryEntry:
        span = self._require_span(index)
        span.entry.memo = memo
        self._commit()
        return span.entry

    def _require_span(self, index: int) -> EntrySpan:
        span = self.find_span(index)
        if span is None:
            raise InvalidIndexError(f"No summary covers message #{index}")
        return span

    def invalidate_covering(self, index: int, reason: str) -> list[int]:
        """Mark every entry whose range contains ``index`` as invalidated."""
        touched: list[int] = []
        for span in self.spans():
            if span.contains(index) and not span.entry.invalidated:
                span.entry.invalidated = True
                span.entry.invalid_reason = reason
                touched.append(span.key)
        if touched:
            logger.info("Invalidated %s: %s", touched, reason)
            self._commit()
        return touched

    def cleanup_orphans(self, chat_length: int) -> int:
        """Drop entries that reach beyond the end of the chat."""
        removed = 0
        for span in self.spans():
            if span.end >= chat_length:
                self._remove_span(span)
                removed += 1
        summaries = self._record.summaries
        for key in [k for k in summaries if k >= chat_length]:
            del summaries[key]
            removed += 1
        for key in list(summaries):
            target = summaries[key].sentinel_target
            if target is not None and self.span_at(target[1]) is None:
                del summaries[key]
                removed += 1
        if removed:
            logger.info("Removed %d orphaned summaries", removed)
            self._commit()
        return removed

    def clear_summaries(self) -> None:
        """Remove every summary; characters and legacy entries stay."""
        self._record.summaries.clear()
        self._commit()

    def reset(self) -> None:
        """Forget everything recorded for this chat."""
        record = self._record
        record.summaries.clear()
        record.legacy_summaries.clear()
        record.characters.clear()
        record.events.clear()
        record.items.clear()
        self._commit()

    def context_summaries(self, before_index: int, count: int) -> list[str]:
        """Prior summary texts for prompt context, oldest first.

        Legacy entries rank as oldest. ``count`` of -1 keeps all, 0 keeps none.
        """
        if count == 0:
            return []
        texts = [s.content for s in self._record.legacy_summaries if s.content.strip()]
        for span in self.spans(include_invalidated=False):
            if span.end < before_index:
                texts.append(span.entry.content)
        if count > 0:
            texts = texts[-count:]
        return texts

    # -- Characters ----------------------------------------------------------

    def get_character(self, name: str) -> Optional[Character]:
        characters = self._record.characters
        if name in characters:
            return characters[name]
        folded = name.casefold()
        for key, character in characters.items():
            if key.casefold() == folded:
                return character
        return None

    def upsert_character(
        self, character: Character, fallback_index: Optional[int] = None
    ) -> Character:
        """Add a character or merge it into the existing one with that name."""
        if character.first_appearance is None:
            character.first_appearance = fallback_index
        existing = self.get_character(character.name)
        if existing is None:
            self._record.characters[character.name] = character
            result = character
        else:
            existing.merge_from(character)
            result = existing
        self._commit()
        return result

    def update_character(self, name: str, **fields: Any) -> Character:
        character = self.get_character(name)
        if character is None:
            raise KeyError(f"Unknown character: {name}")
        for attr, value in fields.items():
            if not hasattr(character, attr):
                raise AttributeError(f"Character has no field {attr!r}")
            setattr(character, attr, value)
        character.last_update = utc_now()
        self._commit()
        return character

    def remove_character(self, name: str) -> bool:
        character = self.get_character(name)
        if character is None:
            return False
        self._record.characters.pop(character.name, None)
        self._commit()
        return True

    def relevant_characters(self, last_index: int) -> list[Character]:
        """Characters already introduced by ``last_index`` on this branch."""
        return [
            c for c in self._record.characters.values()
            if c.first_appearance is None or c.first_appearance <= last_index
        ]

    # -- Events --------------------------------------------------------------

    def get_event(self, event_id: str) -> Optional[StoryEvent]:
        return next((e for e in self._record.events if e.id == event_id), None)

    def add_event(self, event: StoryEvent) -> StoryEvent:
        """Add an event; one with the same title is updated instead."""
        title = event.title.casefold()
        existing = next(
            (e for e in self._record.events if e.title.casefold() == title), None
        )
        if existing is None:
            self._record.events.append(event)
            result = event
        else:
            if event.description:
                existing.description = event.description
            for person in event.participants:
                if person not in existing.participants:
                    existing.participants.append(person)
            existing.importance = event.importance
            if event.message_index is not None:
                existing.message_index = event.message_index
            existing.extra.update(event.extra)
            result = existing
        self._commit()
        return result

    def update_event(self, event_id: str, **fields: Any) -> StoryEvent:
        event = self.get_event(event_id)
        if event is None:
            raise KeyError(f"Unknown event: {event_id}")
        for attr, value in fields.items():
            if not hasattr(event, attr) or attr == "id":
                raise AttributeError(f"Event field {attr!r} cannot be updated")
            setattr(event, attr, value)
        self._commit()
        return event

    def remove_event(self, event_id: str) -> bool:
        before = len(self._record.events)
        self._record.events = [e for e in self._record.events if e.id != event_id]
        if len(self._record.events) == before:
            return False
        self._commit()
        return True

    def relevant_events(self, last_index: int) -> list[StoryEvent]:
        return [
            e for e in self._record.events
            if e.message_index is None or e.message_index <= last_index
        ]

    # -- Items ---------------------------------------------------------------

    def get_item(self, item_id: str) -> Optional[Item]:
        return next((i for i in self._record.items if i.id == item_id), None)

    def add_item(self, item: Item) -> Item:
        """Add an item; one with the same name is updated instead."""
        name = item.name.casefold()
        existing = next(
            (i for i in self._record.items if i.name.casefold() == name), None
        )
        if existing is None:
            self._record.items.append(item)
            result = item
        else:
            for attr in ("description", "owner", "origin"):
                value = getattr(item, attr)
                if value:
                    setattr(existing, attr, value)
            existing.status = item.status
            if item.message_index is not None and (
                existing.message_index is None
                or item.message_index >= existing.message_index
            ):
                existing.message_index = item.message_index
            existing.extra.update(item.extra)
            result = existing
        self._commit()
        return result

    def update_item(self, item_id: str, **fields: Any) -> Item:
        item = self.get_item(item_id)
        if item is None:
            raise KeyError(f"Unknown item: {item_id}")
        for attr, value in fields.items():
            if not hasattr(item, attr) or attr == "id":
                raise AttributeError(f"Item field {attr!r} cannot be updated")
            setattr(item, attr, value)
        self._commit()
        return item

    def remove_item(self, item_id: str) -> bool:
        before = len(self._record.items)
        self._record.items = [i for i in self._record.items if i.id != item_id]
        if len(self._record.items) == before:
            return False
        self._commit()
        return True

    def relevant_items(self, last_index: int) -> list[Item]:
        return [
            i for i in self._record.items
            if i.message_index is None or i.message_index <= last_index
        ]

    # -- Legacy summaries ----------------------------------------------------

    def _next_legacy_order(self) -> int:
        return max((s.order for s in self._record.legacy_summaries), default=0) + 1

    def add_legacy(
        self,
        content: str,
        imported_from: str = "",
        original_index: Optional[int] = None,
    ) -> LegacySummary:
        legacy = LegacySummary(
            order=self._next_legacy_order(),
            content=content,
            imported_from=imported_from,
            original_index=original_index,
        )
        self._record.legacy_summaries.append(legacy)
        self._commit()
        return legacy

    def update_legacy(self, order: int, content: str) -> LegacySummary:
        for legacy in self._record.legacy_summaries:
            if legacy.order == order:
                legacy.content = content
                self._commit()
                return legacy
        raise KeyError(f"Unknown legacy summary: {order}")

    def remove_legacy(self, order: int) -> bool:
        before = len(self._record.legacy_summaries)
        self._record.legacy_summaries = [
            s for s in self._record.legacy_summaries if s.order != order
        ]
        if len(self._record.legacy_summaries) == before:
            return False
        self._commit()
        return True

    # -- Search --------------------------------------------------------------

    def search_summaries(self, query: str) -> list[EntrySpan]:
        """Entries whose text contains ``query`` (case-insensitive), by index."""
        needle = query.casefold()
        return [s for s in self.spans() if needle in s.entry.content.casefold()]

    def search_legacy(self, query: str) -> list[LegacySummary]:
        """Legacy entries whose text contains ``query``, by order."""
        needle = query.casefold()
        matches = [
            s for s in self._record.legacy_summaries if needle in s.content.casefold()
        ]
        return sorted(matches, key=lambda s: s.order)

    # -- Import / export -----------------------------------------------------

    def export_full(self) -> dict[str, Any]:
        """The whole record wrapped in the user-facing export envelope."""
        return {
            "exportDate": utc_now(),
            "characterName": self._record.character_name,
            "chatId": self._record.chat_id,
            "data": self._record.to_blob(),
        }

    @staticmethod
    def _unwrap(payload: Union[str, dict[str, Any]]) -> ChatRecord:
        if isinstance(payload, str):
            payload = json.loads(payload)
        if not isinstance(payload, dict):
            raise ValueError("Import data must be a JSON object")
        blob = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        blob = {k: v for k, v in blob.items() if k != "exportDate"}
        if not blob.get("characterName") and payload.get("characterName"):
            blob["characterName"] = payload["characterName"]
        if "summaries" not in blob and "legacySummaries" not in blob:
            raise ValueError("Import data contains no summaries")
        return ChatRecord.from_blob(blob)

    def import_merge(self, payload: Union[str, dict[str, Any]]) -> int:
        """Union summaries by index; incoming entries win.

        Each incoming entry is written through :meth:`set_summary` so that any
        stored entry overlapping its range is removed with its sentinels.
        Incoming sentinels are rebuilt from their group entry.
        """
        incoming = self._unwrap(payload)
        merged = 0
        with self.batch():
            for key in sorted(incoming.summaries):
                source = incoming.summaries[key]
                if source.is_sentinel:
                    continue
                start, _ = parse_header(source.content) or (key, key)
                start = min(start, key)
                for span in self.spans():
                    if span.overlaps(start, key):
                        self._remove_span(span)
                entry = self.set_summary(start, key, source.content, preserve_meta=False)
                entry.timestamp = source.timestamp
                entry.pinned = source.pinned
                entry.memo = source.memo
                entry.invalidated = source.invalidated
                entry.invalid_reason = source.invalid_reason
                merged += 1
        logger.info("Merged %d summaries", merged)
        return merged

    def import_legacy(self, payload: Union[str, dict[str, Any]]) -> int:
        """Turn every incoming summary into a legacy entry; merge catalogs."""
        incoming = self._unwrap(payload)
        source = incoming.character_name or incoming.chat_id or "import"
        added = 0
        with self.batch():
            for legacy in sorted(incoming.legacy_summaries, key=lambda s: s.order):
                if legacy.content.strip():
                    self.add_legacy(legacy.content, legacy.imported_from or source)
                    added += 1
            for key in sorted(incoming.summaries):
                entry = incoming.summaries[key]
                if entry.is_sentinel or not entry.content.strip():
                    continue
                self.add_legacy(entry.content, source, original_index=key)
                added += 1
            self._merge_catalogs(incoming, keep_indices=False)
        logger.info("Imported %d legacy summaries from %s", added, source)
        return added

    def import_full(self, payload: Union[str, dict[str, Any]]) -> int:
        """Replace summaries, append legacy entries and merge catalogs."""
        incoming = self._unwrap(payload)
        record = self._record
        with self.batch():
            record.summaries = dict(incoming.summaries)
            order = max((s.order for s in record.legacy_summaries), default=0)
            for legacy in sorted(incoming.legacy_summaries, key=lambda s: s.order):
                order = legacy.order if legacy.order > order else order + 1
                legacy.order = order
                record.legacy_summaries.append(legacy)
            self._merge_catalogs(incoming, keep_indices=True)
            if not record.character_name:
                record.character_name = incoming.character_name
            record.extra.update(incoming.extra)
            self._commit()
        return len(incoming.summaries)

    def _merge_catalogs(self, incoming: ChatRecord, keep_indices: bool) -> None:
        for character in incoming.characters.values():
            if not keep_indices:
                character.first_appearance = None
            existing = self.get_character(character.name)
            if existing is None:
                self._record.characters[character.name] = character
            else:
                existing.merge_from(character)

        for event in incoming.events:
            if self.get_event(event.id) is not None:
                continue
            if not keep_indices:
                event.message_index = None
            self.add_event(event)

        for item in incoming.items:
            if self.get_item(item.id) is not None:
                continue
            if not keep_indices:
                item.message_index = None
            self.add_item(item)
        self._commit()
