"""Token-budgeted assembly of the injected scenario summary."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from storyrecap.config import SummarizerSettings
from storyrecap.constants import (
    CURRENT_STORY_MARKER,
    INCOMPLETE_BADGE,
    INJECTION_HEADER,
    PARSE_FAILED_BADGE,
    PREVIOUS_STORY_MARKER,
)
from storyrecap.host import ChatProvider, PromptSink
from storyrecap.memory.chat_store import ChatStore, EntrySpan
from storyrecap.models import Item, StoryEvent, strip_header
from storyrecap.pipeline.parser import strip_catalog_blocks
from storyrecap.pipeline.prompts import format_character
from storyrecap.utils.tokens import TokenCounter

logger = logging.getLogger(__name__)

_INNER_HEADER_RE = re.compile(
    r"^[ \t]*(?:-{3}[ \t]*)?\[?#\d+(?:[-~]\d+)?\]?(?:[ \t]*-{3})?[ \t]*$\n?",
    re.MULTILINE,
)


def entry_header(span: EntrySpan) -> str:
    if span.is_group:
        return f"--- #{span.start}~{span.end} ---"
    return f"--- #{span.start} ---"


def format_entry(span: EntrySpan) -> str:
    """Injection block for one entry: delimiter header plus visible prose."""
    body = strip_catalog_blocks(strip_header(span.entry.content))
    body = _INNER_HEADER_RE.sub("", body)
    lines = [
        line for line in body.splitlines()
        if line.strip() not in (INCOMPLETE_BADGE, PARSE_FAILED_BADGE)
    ]
    body = "\n".join(lines).strip()
    return f"{entry_header(span)}\n{body}" if body else entry_header(span)


def format_event(event: StoryEvent) -> str:
    line = f"- [{event.importance.value}] {event.title}"
    if event.description:
        line += f": {event.description}"
    if event.participants:
        line += f" ({', '.join(event.participants)})"
    return line


def format_item(item: Item) -> str:
    details = [v for v in (item.owner, item.status.value) if v]
    line = f"- {item.name} ({', '.join(details)})"
    if item.description:
        line += f": {item.description}"
    return line


@dataclass
class InjectionResult:
    """What the last build produced and which entries did not fit."""

    text: str = ""
    tokens: int = 0
    included_keys: list[int] = field(default_factory=list)
    skipped_keys: list[int] = field(default_factory=list)


class InjectionBuilder:
    """Selects entries within the token budget and installs the result.

    Priority: legacy entries always, then pinned entries, then the rest
    newest-first until the next one would overflow. Admitted entries are
    emitted in ascending index order.
    """

    def __init__(
        self,
        settings: SummarizerSettings,
        store: ChatStore,
        chat: ChatProvider,
        tokens: TokenCounter,
        sink: PromptSink,
    ) -> None:
        self.settings = settings
        self.store = store
        self.chat = chat
        self.tokens = tokens
        self.sink = sink
        self.last_result = InjectionResult()

    @property
    def skipped_keys(self) -> list[int]:
        """Entries left out of the last build for lack of budget."""
        return self.last_result.skipped_keys

    def _fits(self, used: int, cost: int) -> bool:
        budget = self.settings.token_budget
        return budget <= 0 or used + cost <= budget

    async def build(self) -> InjectionResult:
        settings = self.settings
        record = self.store.record
        if not settings.enabled:
            return InjectionResult()

        chat_length = len(self.chat.messages())
        candidates = [
            s for s in self.store.spans(include_invalidated=False)
            if s.end < chat_length
        ]
        legacy = [
            s for s in sorted(record.legacy_summaries, key=lambda s: s.order)
            if s.content.strip()
        ]
        if not candidates and not legacy:
            return InjectionResult()

        used = await self.tokens.count(INJECTION_HEADER)
        legacy_text = ""
        if legacy:
            legacy_text = "\n\n".join(
                [PREVIOUS_STORY_MARKER]
                + [strip_catalog_blocks(s.content) for s in legacy]
                + ([CURRENT_STORY_MARKER] if candidates else [])
            )
            used += await self.tokens.count(legacy_text)

        blocks = {s.key: format_entry(s) for s in candidates}
        costs = {key: await self.tokens.count(text) for key, text in blocks.items()}

        admitted: list[EntrySpan] = []
        skipped: list[int] = []
        pinned = sorted((s for s in candidates if s.entry.pinned), key=lambda s: -s.key)
        for span in pinned:
            cost = costs[span.key]
            if self._fits(used, cost):
                admitted.append(span)
                used += cost
            elif cost > settings.token_budget:
                logger.warning(
                    "Pinned entry #%d alone needs %d tokens (budget %d); including it anyway",
                    span.key, cost, settings.token_budget,
                )
                admitted.append(span)
                used += cost
            else:
                skipped.append(span.key)

        rest = sorted((s for s in candidates if not s.entry.pinned), key=lambda s: -s.key)
        for i, span in enumerate(rest):
            cost = costs[span.key]
            # An unpinned entry never displaces a pinned one
            if skipped or not self._fits(used, cost):
                skipped.extend(s.key for s in rest[i:])
                break
            admitted.append(span)
            used += cost

        catalogs: list[str] = []
        for section in self._catalog_sections(chat_length - 1):
            cost = await self.tokens.count(section)
            if self._fits(used, cost):
                catalogs.append(section)
                used += cost
            else:
                logger.info("Catalog section %s does not fit the budget", section.split("\n", 1)[0])

        admitted.sort(key=lambda s: s.key)
        text = self._assemble(legacy_text, [blocks[s.key] for s in admitted], catalogs)
        total = await self.tokens.count(text)

        # Joins can push a non-additive counter past the budget: shed catalogs,
        # then the oldest unpinned entries.
        budget = settings.token_budget
        while budget > 0 and total > budget:
            if catalogs:
                catalogs.pop()
            else:
                victim = next((s for s in admitted if not s.entry.pinned), None)
                if victim is None:
                    break
                admitted.remove(victim)
                skipped.append(victim.key)
            text = self._assemble(legacy_text, [blocks[s.key] for s in admitted], catalogs)
            total = await self.tokens.count(text)

        result = InjectionResult(
            text=text,
            tokens=total,
            included_keys=[s.key for s in admitted],
            skipped_keys=sorted(skipped),
        )
        if result.skipped_keys:
            logger.info(
                "Injection holds %d entries; %d skipped for the %d-token budget",
                len(result.included_keys), len(result.skipped_keys), budget,
            )
        return result

    @staticmethod
    def _assemble(legacy_text: str, blocks: list[str], catalogs: list[str]) -> str:
        parts = [p for p in [legacy_text, *blocks, *catalogs] if p]
        return INJECTION_HEADER + "\n\n".join(parts)

    def _catalog_sections(self, last_index: int) -> list[str]:
        settings = self.settings
        sections: list[str] = []
        if settings.character_tracking_enabled:
            characters = self.store.relevant_characters(last_index)
            if characters:
                lines = [format_character(c, self.chat.user_name) for c in characters]
                sections.append("[Characters]\n" + "\n".join(lines))
        if settings.event_tracking_enabled:
            events = self.store.relevant_events(last_index)
            if events:
                sections.append("[Events]\n" + "\n".join(format_event(e) for e in events))
        if settings.item_tracking_enabled:
            items = self.store.relevant_items(last_index)
            if items:
                sections.append("[Items]\n" + "\n".join(format_item(i) for i in items))
        return sections

    async def build_and_install(self) -> InjectionResult:
        """Rebuild and hand the text to the prompt sink (empty when nothing applies)."""
        result = await self.build()
        self.last_result = result
        self.sink.install(
            result.text, self.settings.injection_position, self.settings.injection_depth
        )
        logger.debug(
            "Installed injection: %d tokens, %d entries", result.tokens, len(result.included_keys)
        )
        return result
