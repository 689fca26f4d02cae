"""The long-lived summary engine for one host application."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

import httpx

from storyrecap.config import SummarizerSettings
from storyrecap.events.bus import EventBus
from storyrecap.events.dispatcher import EventDispatcher
from storyrecap.events.middleware import EventLogger
from storyrecap.events.types import Event, EventType
from storyrecap.host import ChatProvider, PromptSink
from storyrecap.llm.gateway import LLMGateway
from storyrecap.llm.host import ConnectionProfiles, HostGenerator
from storyrecap.memory.chat_store import ChatStore
from storyrecap.memory.persistence import PersistenceSink
from storyrecap.pipeline.compressor import CompressionPreview, CompressionResult, Compressor
from storyrecap.pipeline.injection import InjectionBuilder, InjectionResult
from storyrecap.pipeline.prompts import PromptBuilder
from storyrecap.pipeline.run_state import RunGuard, RunReport, RunStatus
from storyrecap.pipeline.summarizer import Summarizer
from storyrecap.pipeline.visibility import ChatStats, VisibilityController
from storyrecap.utils.logging import ErrorLogBuffer, ErrorRecord
from storyrecap.utils.tokens import CounterFn, TokenCounter

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


class ImportMode(str, Enum):
    MERGE = "merge"
    LEGACY = "legacy"
    FULL = "full"


class SummaryEngine:
    """Owns the Chat Store and every component that reads or writes it.

    Operations that change summaries finish by rebuilding the injection and
    publishing ``SUMMARY_DATA_CHANGED`` / ``INJECTION_UPDATED`` on the bus.
    """

    def __init__(
        self,
        settings: SummarizerSettings,
        chat: ChatProvider,
        sink: PersistenceSink,
        prompt_sink: PromptSink,
        host: Optional[HostGenerator] = None,
        profiles: Optional[ConnectionProfiles] = None,
        token_counter: Optional[CounterFn] = None,
        model_fingerprint: str = "",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings
        self.chat = chat
        self.store = ChatStore(sink, save_delay=settings.save_debounce_seconds)
        self.tokens = TokenCounter(token_counter, model_fingerprint)
        self.gateway = LLMGateway(settings, host=host, profiles=profiles, transport=transport)
        self.prompts = PromptBuilder(settings, self.tokens)
        self.guard = RunGuard()

        self.summarizer = Summarizer(
            settings, self.store, chat, self.gateway, self.prompts, self.guard
        )
        self.compressor = Compressor(
            settings, self.store, chat, self.gateway, self.prompts, self.guard
        )
        self.injection = InjectionBuilder(settings, self.store, chat, self.tokens, prompt_sink)
        self.visibility = VisibilityController(settings, self.store, chat)

        self.bus = bus or EventBus()
        self.bus.add_middleware(EventLogger())
        self.dispatcher = EventDispatcher(self, self.bus)

        self.errors = ErrorLogBuffer()
        self._data_changed = False
        self.store.add_listener(self._on_store_changed)

    # -- Lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Load the active chat, subscribe to host events and install the injection."""
        logging.getLogger("storyrecap").addHandler(self.errors)
        await self.store.load(self.chat.chat_id, self.chat.character_name)
        self.dispatcher.attach()
        await self.refresh()

    async def close(self) -> None:
        self.dispatcher.detach()
        await self.store.flush()
        logging.getLogger("storyrecap").removeHandler(self.errors)

    async def __aenter__(self) -> SummaryEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _on_store_changed(self) -> None:
        self.tokens.invalidate()
        self._data_changed = True

    async def notify(self, level: str, message: str, **details: Any) -> None:
        await self.bus.publish(Event.notification(level, message, **details))

    async def refresh(self) -> InjectionResult:
        """Re-sync hidden messages and reinstall the injection."""
        if self._data_changed:
            self._data_changed = False
            await self.bus.publish(Event(
                event_type=EventType.SUMMARY_DATA_CHANGED,
                source="engine",
                chat_id=self.store.chat_id,
            ))
        self.visibility.apply()
        result = await self.injection.build_and_install()
        await self.bus.publish(Event(
            event_type=EventType.INJECTION_UPDATED,
            payload={
                "tokens": result.tokens,
                "includedKeys": result.included_keys,
                "skippedKeys": result.skipped_keys,
            },
            source="engine",
            chat_id=self.store.chat_id,
        ))
        return result

    async def _finish(self, name: str, report: RunReport) -> RunReport:
        if report.status == RunStatus.ALREADY_RUNNING:
            await self.notify("warning", f"Cannot start {name}: {report.message}")
            return report
        if report.failures:
            first = report.failures[0]
            await self.notify(
                "error",
                f"{name}: {len(report.failures)} range(s) failed "
                f"(first #{first.start}-{first.end}: {first.error})",
                failures=[(f.start, f.end) for f in report.failures],
            )
        elif report.status == RunStatus.CANCELLED:
            await self.notify("info", f"{name} stopped: {report.message}")
        await self.refresh()
        return report

    # -- Summaries -----------------------------------------------------------

    def pending_count(self) -> int:
        return self.summarizer.pending_count()

    async def summarize_incremental(
        self, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        report = await self.summarizer.summarize_incremental(on_progress)
        return await self._finish("summary", report)

    async def summarize_range(
        self, start: int, end: int, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        report = await self.summarizer.summarize_range(start, end, on_progress)
        return await self._finish("range summary", report)

    async def resummarize(
        self, index: int, on_progress: Optional[ProgressCallback] = None
    ) -> RunReport:
        report = await self.summarizer.resummarize(index, on_progress)
        return await self._finish("re-summary", report)

    async def resummarize_multiple_groups(
        self,
        ranges: list[tuple[int, int]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> RunReport:
        report = await self.summarizer.resummarize_multiple_groups(ranges, on_progress)
        return await self._finish("group re-summary", report)

    def request_stop(self) -> None:
        self.guard.request_stop()

    # -- Compression ---------------------------------------------------------

    async def compress_preview(
        self,
        keys: Optional[Iterable[int]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> CompressionPreview:
        preview = await self.compressor.preview(keys, on_progress)
        if preview.status == RunStatus.ALREADY_RUNNING:
            await self.notify("warning", f"Cannot start compression: {preview.message}")
        elif preview.failed_keys:
            await self.notify(
                "warning",
                f"{len(preview.failed_keys)} entries could not be compressed",
                failedKeys=list(preview.failed_keys),
            )
        return preview

    async def compress_apply(self, preview: CompressionPreview) -> CompressionResult:
        result = self.compressor.apply(preview)
        await self.refresh()
        return result

    # -- Host events ---------------------------------------------------------

    async def invalidate_message(self, index: int, reason: str) -> list[int]:
        """Mark every entry covering ``index`` stale and rebuild."""
        touched = self.store.invalidate_covering(index, reason)
        self.tokens.invalidate()
        await self.refresh()
        return touched

    async def handle_deletion(self, index: Optional[int]) -> None:
        if index is not None:
            self.store.invalidate_covering(index, "message deleted")
        self.store.cleanup_orphans(len(self.chat.messages()))
        self.tokens.invalidate()
        await self.refresh()

    async def switch_chat(self, chat_id: Optional[str] = None) -> None:
        """Save the current record, then load and install the new chat's."""
        self.guard.request_stop()
        self.dispatcher.cancel_pending()
        self.visibility.forget()
        self.tokens.invalidate()
        target = chat_id or self.chat.chat_id
        await self.store.switch_chat(target, self.chat.character_name)
        self._data_changed = False
        await self.refresh()

    # -- Status, import and export --------------------------------------------

    def stats(self) -> ChatStats:
        return self.visibility.stats(self.pending_count())

    def recent_errors(self) -> list[ErrorRecord]:
        return self.errors.records()

    async def health_check(self) -> bool:
        return await self.gateway.health_check()

    def export_data(self) -> dict[str, Any]:
        return self.store.export_full()

    async def import_data(
        self,
        payload: Union[str, dict[str, Any]],
        mode: Union[ImportMode, str] = ImportMode.MERGE,
    ) -> int:
        mode = ImportMode(mode)
        if mode == ImportMode.LEGACY:
            count = self.store.import_legacy(payload)
        elif mode == ImportMode.FULL:
            count = self.store.import_full(payload)
        else:
            count = self.store.import_merge(payload)
        await self.refresh()
        return count
