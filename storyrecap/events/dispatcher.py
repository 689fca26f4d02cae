"""Reacts to host chat events: debounced auto-summary, invalidation, chat switches."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from storyrecap.errors import SummaryEngineError
from storyrecap.events.bus import EventBus
from storyrecap.events.types import Event, EventType

if TYPE_CHECKING:
    from storyrecap.engine import SummaryEngine

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Subscribes the engine to host events on the bus.

    New messages are debounced: a burst of received/sent events results in
    one rebuild (and, in automatic mode, one incremental run) after
    ``debounce_seconds`` of quiet.
    """

    def __init__(self, engine: SummaryEngine, bus: EventBus) -> None:
        self.engine = engine
        self.bus = bus
        self._pending: Optional[asyncio.Task] = None
        self._attached = False

    def attach(self) -> None:
        if self._attached:
            return
        self.bus.subscribe(EventType.MESSAGE_RECEIVED, self._on_new_message)
        self.bus.subscribe(EventType.MESSAGE_SENT, self._on_new_message)
        self.bus.subscribe(EventType.MESSAGE_EDITED, self._on_changed_message)
        self.bus.subscribe(EventType.MESSAGE_REGENERATED, self._on_changed_message)
        self.bus.subscribe(EventType.MESSAGE_DELETED, self._on_deleted_message)
        self.bus.subscribe(EventType.CHAT_SWITCHED, self._on_chat_switched)
        self._attached = True

    def detach(self) -> None:
        self.bus.unsubscribe(EventType.MESSAGE_RECEIVED, self._on_new_message)
        self.bus.unsubscribe(EventType.MESSAGE_SENT, self._on_new_message)
        self.bus.unsubscribe(EventType.MESSAGE_EDITED, self._on_changed_message)
        self.bus.unsubscribe(EventType.MESSAGE_REGENERATED, self._on_changed_message)
        self.bus.unsubscribe(EventType.MESSAGE_DELETED, self._on_deleted_message)
        self.bus.unsubscribe(EventType.CHAT_SWITCHED, self._on_chat_switched)
        self.cancel_pending()
        self._attached = False

    @property
    def has_pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def cancel_pending(self) -> None:
        if self.has_pending:
            self._pending.cancel()
            logger.debug("Cancelled pending debounced work")
        self._pending = None

    async def wait_idle(self) -> None:
        """Wait for any scheduled debounced work to finish."""
        task = self._pending
        if task is not None and not task.done():
            try:
                await task
            except asyncio.CancelledError:
                pass

    # -- Handlers ------------------------------------------------------------

    async def _on_new_message(self, event: Event) -> None:
        self.cancel_pending()
        self._pending = asyncio.get_running_loop().create_task(self._debounced_update())
        self._pending.add_done_callback(self._log_crash)

    @staticmethod
    def _log_crash(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced update crashed", exc_info=task.exception())

    async def _debounced_update(self) -> None:
        await asyncio.sleep(self.engine.settings.debounce_seconds)
        engine = self.engine
        settings = engine.settings
        try:
            if settings.enabled and settings.automatic_mode:
                pending = engine.pending_count()
                if pending >= settings.summary_interval:
                    logger.info("%d messages pending; starting automatic summary", pending)
                    await engine.summarize_incremental()
                    return
            await engine.refresh()
        except SummaryEngineError as e:
            logger.exception("Automatic update failed")
            await engine.notify("error", f"Automatic summary failed: {e}")

    async def _on_changed_message(self, event: Event) -> None:
        index = event.message_index
        if index is None:
            logger.warning("%s without a message index", event.event_type.value)
            return
        reason = (
            "message regenerated"
            if event.event_type == EventType.MESSAGE_REGENERATED
            else "message edited"
        )
        await self.engine.invalidate_message(index, reason)

    async def _on_deleted_message(self, event: Event) -> None:
        await self.engine.handle_deletion(event.message_index)

    async def _on_chat_switched(self, event: Event) -> None:
        self.cancel_pending()
        await self.engine.switch_chat(event.chat_id)
