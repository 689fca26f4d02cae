"""Advisory hiding of summarized messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from storyrecap.config import SummarizerSettings
from storyrecap.host import ChatProvider
from storyrecap.memory.chat_store import ChatStore

logger = logging.getLogger(__name__)


@dataclass
class ChatStats:
    total: int
    summarized: int
    hidden: int
    pending_count: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "summarized": self.summarized,
            "hidden": self.hidden,
            "pendingCount": self.pending_count,
        }


class VisibilityController:
    """Tells the host which messages the model may skip.

    A message is hidden when a valid summary covers it and it lies before
    the preserved tail.
    """

    def __init__(self, settings: SummarizerSettings, store: ChatStore, chat: ChatProvider) -> None:
        self.settings = settings
        self.store = store
        self.chat = chat
        self._hidden: set[int] = set()

    @property
    def hidden(self) -> set[int]:
        return set(self._hidden)

    def hideable(self) -> set[int]:
        limit = len(self.chat.messages()) - self.settings.preserve_recent_messages
        covered = self.store.covered_indices(include_invalidated=False)
        return {i for i in covered if i < limit}

    def apply(self) -> int:
        """Sync host visibility with the covered range; returns the hidden count.

        Messages that were already hidden by someone else are left alone and
        never restored.
        """
        messages = self.chat.messages()
        ours = self._hidden | {i for i, m in enumerate(messages) if m.summary_hidden}
        if not self.settings.auto_hide_enabled:
            if ours:
                self.restore_all()
            return 0
        target = {
            i for i in self.hideable()
            if i in ours or not messages[i].is_system
        }
        for index in sorted(ours - target):
            if index < len(messages):
                self.chat.set_hidden(index, False)
        for index in sorted(target - ours):
            self.chat.set_hidden(index, True)
        if target != ours:
            logger.debug("Hiding %d messages (was %d)", len(target), len(ours))
        self._hidden = target
        return len(target)

    def restore_all(self) -> int:
        """Make every message hidden for summarization visible again."""
        messages = self.chat.messages()
        restored = sum(1 for m in messages if m.summary_hidden)
        for index in range(len(messages)):
            self.chat.set_hidden(index, False)
        self._hidden.clear()
        logger.info("Restored %d hidden messages", restored)
        return restored

    def forget(self) -> None:
        """Drop tracking without touching the host, e.g. after a chat switch."""
        self._hidden.clear()

    def stats(self, pending_count: int) -> ChatStats:
        total = len(self.chat.messages())
        summarized = len({i for i in self.store.covered_indices() if i < total})
        return ChatStats(
            total=total,
            summarized=summarized,
            hidden=len(self._hidden),
            pending_count=pending_count,
        )
