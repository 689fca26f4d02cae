"""Two-phase compression of existing summary entries."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from storyrecap.config import SummarizerSettings
from storyrecap.constants import PARSE_FAILED_BADGE
from storyrecap.errors import LLMError
from storyrecap.host import ChatProvider
from storyrecap.llm.gateway import LLMGateway
from storyrecap.memory.chat_store import ChatStore, EntrySpan
from storyrecap.models import format_header
from storyrecap.pipeline.parser import (
    is_incomplete_summary,
    parse_response,
    split_sections,
)
from storyrecap.pipeline.prompts import PromptBuilder
from storyrecap.pipeline.run_state import RunGuard, RunStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


@dataclass
class CompressionPreview:
    """Proposed replacements; nothing in the store has changed yet."""

    status: RunStatus
    original_by_key: dict[int, str] = field(default_factory=dict)
    compressed_by_key: dict[int, str] = field(default_factory=dict)
    failed_keys: list[int] = field(default_factory=list)
    message: str = ""


@dataclass
class CompressionResult:
    applied: int
    backup: dict[str, Any]


class Compressor:
    """Rewrites selected entries tersely: preview first, then apply."""

    def __init__(
        self,
        settings: SummarizerSettings,
        store: ChatStore,
        chat: ChatProvider,
        gateway: LLMGateway,
        prompts: PromptBuilder,
        guard: RunGuard,
    ) -> None:
        self.settings = settings
        self.store = store
        self.chat = chat
        self.gateway = gateway
        self.prompts = prompts
        self.guard = guard

    def eligible_spans(self, keys: Optional[Iterable[int]] = None) -> list[EntrySpan]:
        """Valid entries among ``keys`` (all when None); sentinels resolve to nothing."""
        spans = self.store.spans(include_invalidated=False)
        if keys is None:
            return spans
        wanted = set(keys)
        return [s for s in spans if s.key in wanted]

    async def preview(
        self,
        keys: Optional[Iterable[int]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompressionPreview:
        if self.guard.is_running:
            return CompressionPreview(RunStatus.ALREADY_RUNNING, message="a run is in progress")
        spans = self.eligible_spans(keys)
        if not spans:
            return CompressionPreview(RunStatus.SUCCEEDED, message="nothing to compress")

        size = self.settings.batch_size
        batches = [spans[i:i + size] for i in range(0, len(spans), size)]
        preview = CompressionPreview(RunStatus.SUCCEEDED)
        done = 0

        self.guard.acquire("compress")
        try:
            for batch in batches:
                if self.guard.stop_requested:
                    preview.status = RunStatus.CANCELLED
                    break
                try:
                    response = await self.gateway.generate(
                        self.prompts.compress_prompt(self.chat, batch)
                    )
                except LLMError as e:
                    logger.warning("Compression of %d entries failed: %s", len(batch), e, exc_info=True)
                    preview.failed_keys.extend(s.key for s in batch)
                    response = None
                if self.guard.stop_requested:
                    preview.status = RunStatus.CANCELLED
                    break
                if response is not None:
                    self._collect(batch, response, preview)
                done += len(batch)
                if on_progress is not None:
                    on_progress(done, len(spans))
        except BaseException:
            self.guard.release(RunStatus.FAILED)
            raise

        if preview.status != RunStatus.CANCELLED and preview.failed_keys:
            preview.status = RunStatus.FAILED
        preview.message = (
            f"{len(preview.compressed_by_key)} compressed, {len(preview.failed_keys)} failed"
        )
        self.guard.release(preview.status)
        logger.info("Compression preview %s: %s", preview.status.value, preview.message)
        return preview

    def _collect(self, batch: list[EntrySpan], response: str, preview: CompressionPreview) -> None:
        body = parse_response(response).body_text
        if body.startswith(PARSE_FAILED_BADGE):
            preview.failed_keys.extend(s.key for s in batch)
            return

        sections = split_sections(body)
        by_range: dict[tuple[int, int], str] = {}
        for section in sections:
            by_range.setdefault((section.start, section.end), section.text)
        if len(batch) == 1:
            only = (batch[0].start, batch[0].end)
            if only not in by_range and len(sections) == 1:
                by_range[only] = sections[0].text
            elif not sections:
                by_range[only] = body.strip()

        for span in batch:
            text = by_range.get((span.start, span.end), "")
            if not text or is_incomplete_summary(text):
                preview.failed_keys.append(span.key)
                continue
            preview.original_by_key[span.key] = span.entry.content
            preview.compressed_by_key[span.key] = f"{format_header(span.start, span.end)}\n{text}"

    def apply(self, preview: CompressionPreview) -> CompressionResult:
        """Replace entries in one commit; returns the pre-apply export as backup."""
        backup = self.store.export_full()
        replacements: dict[int, str] = {}
        for key, text in preview.compressed_by_key.items():
            entry = self.store.get_summary(key)
            if entry is None or entry.content != preview.original_by_key.get(key):
                logger.warning("Entry #%d changed since the preview; not compressing it", key)
                continue
            replacements[key] = text
        applied = self.store.replace_contents(replacements) if replacements else 0
        logger.info("Applied compression to %d entries", applied)
        return CompressionResult(applied=applied, backup=backup)
