"""Summarization runs: incremental, single re-summary and multi-group."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from storyrecap.config import SummarizerSettings, SummaryMode
from storyrecap.constants import INCOMPLETE_BADGE, PARSE_FAILED_BADGE
from storyrecap.errors import InvalidIndexError, LLMError
from storyrecap.host import ChatMessage, ChatProvider
from storyrecap.llm.gateway import LLMGateway
from storyrecap.memory.chat_store import ChatStore
from storyrecap.models import SummaryEntry
from storyrecap.pipeline.parser import (
    ParsedOutput,
    is_incomplete_summary,
    map_groups,
    map_individual,
    parse_response,
)
from storyrecap.pipeline.prompts import PromptBuilder
from storyrecap.pipeline.run_state import FailedUnit, RunGuard, RunReport, RunStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
Range = tuple[int, int]


def _chunk(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class Summarizer:
    """Drives the LLM over uncovered or selected message ranges.

    A *unit* is the list of ranges sent in one LLM call. Individual units
    hold single-message ranges; group units hold ``[A, B]`` ranges.
    """

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

    # -- Planning ------------------------------------------------------------

    def summarizable_limit(self, chat_length: int) -> int:
        """Messages below this index may be summarized."""
        return max(0, chat_length - self.settings.preserve_recent_messages)

    def pending_count(self) -> int:
        """Messages between the last covered index and the preserved tail."""
        limit = self.summarizable_limit(len(self.chat.messages()))
        return max(0, limit - (self.store.last_covered_index() + 1))

    def plan_units(self, start: int, limit: int, partial: bool = False) -> list[list[Range]]:
        """Split ``[start, limit)`` into per-call units for the current mode.

        Batch mode keeps only complete groups unless ``partial`` is set.
        """
        settings = self.settings
        if settings.summary_mode == SummaryMode.INDIVIDUAL:
            singles = [(i, i) for i in range(start, limit)]
            return _chunk(singles, settings.batch_size)

        size = settings.batch_group_size
        groups: list[Range] = []
        cursor = start
        while cursor + size <= limit:
            groups.append((cursor, cursor + size - 1))
            cursor += size
        if partial and cursor < limit:
            groups.append((cursor, limit - 1))
        per_call = max(1, settings.batch_size // size)
        return _chunk(groups, per_call)

    # -- Public operations ---------------------------------------------------

    async def summarize_incremental(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        """Summarize everything after the last covered message."""
        if self.guard.is_running:
            return RunReport(RunStatus.ALREADY_RUNNING, message="a run is in progress")
        messages = self.chat.messages()
        if not messages:
            return RunReport(RunStatus.SUCCEEDED, message="chat is empty")

        start = self.store.last_covered_index() + 1
        limit = self.summarizable_limit(len(messages))
        units = self.plan_units(start, limit) if start < limit else []
        if not units:
            return RunReport(RunStatus.SUCCEEDED, message="nothing to summarize")

        logger.info(
            "Summarizing messages #%d-%d in %d call(s)",
            units[0][0][0], units[-1][-1][1], len(units),
        )
        return await self._run("summarize", messages, units, on_progress, write_missing=True)

    async def summarize_range(
        self, start: int, end: int, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        """Summarize messages ``start..end`` regardless of what is covered.

        The preserved tail does not apply. In batch mode the last group may be
        shorter than ``batch_group_size``.
        """
        if self.guard.is_running:
            return RunReport(RunStatus.ALREADY_RUNNING, message="a run is in progress")
        messages = self.chat.messages()
        if start < 0 or end < start or start >= len(messages):
            raise InvalidIndexError(
                f"Invalid range #{start}-{end} for a chat of {len(messages)} messages"
            )
        end = min(end, len(messages) - 1)
        units = self.plan_units(start, end + 1, partial=True)
        logger.info("Summarizing requested range #%d-%d in %d call(s)", start, end, len(units))
        return await self._run("summarize-range", messages, units, on_progress, write_missing=True)

    async def resummarize(
        self, index: int, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        """Rebuild the entry (or whole group) covering ``index`` in place."""
        if self.guard.is_running:
            return RunReport(RunStatus.ALREADY_RUNNING, message="a run is in progress")
        messages = self.chat.messages()
        if not 0 <= index < len(messages):
            raise InvalidIndexError(
                f"Message #{index} is outside the chat (0-{len(messages) - 1})"
            )

        span = self.store.find_span(index)
        start, end = (span.start, span.end) if span is not None else (index, index)
        end = min(end, len(messages) - 1)
        if span is not None and end != span.end:
            logger.info(
                "Group #%d-%d now ends at #%d after deletions", span.start, span.end, end
            )
        return await self._run(
            "resummarize", messages, [[(start, end)]], on_progress, write_missing=True
        )

    async def resummarize_multiple_groups(
        self,
        ranges: list[Range],
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunReport:
        """Rebuild several groups, packing them into calls of <= batch_size messages."""
        if self.guard.is_running:
            return RunReport(RunStatus.ALREADY_RUNNING, message="a run is in progress")
        messages = self.chat.messages()
        last = len(messages) - 1

        valid: list[Range] = []
        dropped: list[int] = []
        for start, end in sorted(set(ranges)):
            if start < 0 or end < start:
                raise InvalidIndexError(f"Invalid range #{start}-{end}")
            if start > last:
                # Every message of the group was deleted
                span = self.store.find_span(end) or self.store.find_span(start)
                if span is not None and self.store.delete_summary(span.key):
                    dropped.append(span.key)
                continue
            valid.append((start, min(end, last)))

        units: list[list[Range]] = []
        current: list[Range] = []
        size = 0
        for rng in valid:
            length = rng[1] - rng[0] + 1
            if current and size + length > self.settings.batch_size:
                units.append(current)
                current, size = [], 0
            current.append(rng)
            size += length
        if current:
            units.append(current)

        if not units:
            return RunReport(RunStatus.SUCCEEDED, message=f"removed {len(dropped)} group(s)")
        return await self._run(
            "resummarize-groups", messages, units, on_progress, write_missing=False
        )

    # -- Execution -----------------------------------------------------------

    async def _run(
        self,
        name: str,
        messages: list[ChatMessage],
        units: list[list[Range]],
        on_progress: Optional[ProgressCallback],
        write_missing: bool,
    ) -> RunReport:
        self.guard.acquire(name)
        report = RunReport(RunStatus.SUCCEEDED)
        total = sum(end - start + 1 for unit in units for start, end in unit)
        done = 0
        try:
            for unit in units:
                if self.guard.stop_requested:
                    report.status = RunStatus.CANCELLED
                    break
                try:
                    completed = await self._process_unit(messages, unit, report, write_missing)
                except LLMError as e:
                    logger.warning(
                        "Summary of #%d-%d failed: %s", unit[0][0], unit[-1][1], e,
                        exc_info=True,
                    )
                    report.failures.append(FailedUnit(unit[0][0], unit[-1][1], str(e)))
                    completed = True
                if not completed:
                    report.status = RunStatus.CANCELLED
                    break
                done += sum(end - start + 1 for start, end in unit)
                if on_progress is not None:
                    on_progress(done, total)
        except BaseException:
            self.guard.release(RunStatus.FAILED)
            raise

        if report.status != RunStatus.CANCELLED and report.failures:
            report.status = RunStatus.FAILED
        report.message = (
            f"{len(report.written_keys)} written, {len(report.failures)} failed"
        )
        self.guard.release(report.status)
        logger.info("Run %s %s: %s", name, report.status.value, report.message)
        return report

    async def _process_unit(
        self,
        messages: list[ChatMessage],
        unit: list[Range],
        report: RunReport,
        write_missing: bool,
    ) -> bool:
        """Summarize one unit; False when a stop request discarded the result."""
        is_group = any(start != end for start, end in unit)
        if is_group:
            prompt = await self.prompts.batch_prompt(self.store, self.chat, messages, unit)
        else:
            indices = [start for start, _ in unit]
            prompt = await self.prompts.individual_prompt(
                self.store, self.chat, messages, indices
            )

        response = await self.gateway.generate(prompt)
        if self.guard.stop_requested:
            logger.info("Discarding result for #%d-%d after stop", unit[0][0], unit[-1][1])
            return False

        parsed = parse_response(response)
        texts = self._assign(parsed, unit, is_group)

        with self.store.batch():
            self._merge_catalogs(parsed, unit[0][0])
            for start, end in unit:
                text = texts.get((start, end))
                if text is None:
                    if not write_missing:
                        report.failures.append(
                            FailedUnit(start, end, "no section for this range in the response")
                        )
                        continue
                    text = PARSE_FAILED_BADGE
                    report.incomplete_keys.append(end)
                elif text.startswith((PARSE_FAILED_BADGE, INCOMPLETE_BADGE)):
                    report.incomplete_keys.append(end)
                with self.store.batch():
                    stale = self._replace_stale(start, end)
                    entry = self.store.set_summary(start, end, text)
                    if stale is not None:
                        entry.pinned = stale.pinned
                        entry.memo = stale.memo
                report.written_keys.append(end)
        return True

    def _assign(
        self, parsed: ParsedOutput, unit: list[Range], is_group: bool
    ) -> dict[Range, str]:
        body = parsed.body_text
        if body.startswith(PARSE_FAILED_BADGE):
            return {rng: body for rng in unit}

        block_failed = body.startswith(INCOMPLETE_BADGE)
        if block_failed:
            body = body[len(INCOMPLETE_BADGE):].lstrip("\n")

        if is_group:
            mapped = map_groups(body, unit)
        else:
            by_index = map_individual(body, [start for start, _ in unit])
            mapped = {(i, i): text for i, text in by_index.items()}

        result: dict[Range, str] = {}
        for rng, text in mapped.items():
            if block_failed or is_incomplete_summary(text):
                text = f"{INCOMPLETE_BADGE}\n{text}"
            result[rng] = text
        return result

    def _replace_stale(self, start: int, end: int) -> Optional[SummaryEntry]:
        """Drop a wider stored group that an explicit rebuild narrows.

        Returns the dropped entry so its pin and memo can carry over.
        """
        old = self.store.find_span(start)
        if old is None or (old.start, old.end) == (start, end):
            return None
        if old.start <= start and end <= old.end:
            self.store.delete_summary(old.key)
            return old.entry
        return None

    def _merge_catalogs(self, parsed: ParsedOutput, fallback_index: int) -> None:
        settings = self.settings
        if settings.character_tracking_enabled:
            for character in parsed.characters:
                self.store.upsert_character(character, fallback_index=fallback_index)
        if settings.event_tracking_enabled:
            for event in parsed.events:
                if event.message_index is None:
                    event.message_index = fallback_index
                self.store.add_event(event)
        if settings.item_tracking_enabled:
            for item in parsed.items:
                if item.message_index is None:
                    item.message_index = fallback_index
                self.store.add_item(item)
