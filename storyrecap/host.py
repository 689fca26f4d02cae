"""Interfaces to the host chat application and simple in-process versions."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from storyrecap.config import InjectionPosition

logger = logging.getLogger(__name__)


@dataclass
class ChatMessage:
    """One message of the active chat."""

    name: str
    text: str
    is_user: bool = False
    is_system: bool = False  # hidden from the model's context
    summary_hidden: bool = False  # is_system was set because a summary covers it

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "text": self.text,
            "isUser": self.is_user,
            "isSystem": self.is_system,
            "summaryHidden": self.summary_hidden,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls(
            name=str(data.get("name") or ""),
            text=str(data.get("text") or data.get("mes") or ""),
            is_user=bool(data.get("isUser", data.get("is_user", False))),
            is_system=bool(data.get("isSystem", data.get("is_system", False))),
            summary_hidden=bool(data.get("summaryHidden", data.get("_summarizedHidden", False))),
        )


class ChatProvider(ABC):
    """Ordered, 0-indexed messages of the active chat branch."""

    @property
    @abstractmethod
    def chat_id(self) -> str:
        ...

    @property
    @abstractmethod
    def character_name(self) -> str:
        ...

    @property
    @abstractmethod
    def user_name(self) -> str:
        ...

    @abstractmethod
    def messages(self) -> list[ChatMessage]:
        """Current messages; index in the list is the message index."""
        ...

    @abstractmethod
    def set_hidden(self, index: int, hidden: bool) -> None:
        """Hide a message because a summary covers it, or undo that.

        Restoring only affects messages hidden this way; messages the user
        or the host hid stay hidden.
        """
        ...


class PromptSink(ABC):
    """Accepts the injection string at a declared position."""

    @abstractmethod
    def install(self, text: str, position: InjectionPosition, depth: int) -> None:
        ...


class InMemoryChat(ChatProvider):
    """A chat held in a Python list, loadable from a JSON file."""

    def __init__(
        self,
        chat_id: str,
        messages: Optional[list[ChatMessage]] = None,
        character_name: str = "",
        user_name: str = "User",
    ) -> None:
        self._chat_id = chat_id
        self._messages = list(messages or [])
        self._character_name = character_name
        self._user_name = user_name

    @property
    def chat_id(self) -> str:
        return self._chat_id

    @property
    def character_name(self) -> str:
        return self._character_name

    @property
    def user_name(self) -> str:
        return self._user_name

    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def set_hidden(self, index: int, hidden: bool) -> None:
        message = self._messages[index]
        if hidden:
            if message.is_system and not message.summary_hidden:
                return
            message.is_system = True
            message.summary_hidden = True
        elif message.summary_hidden:
            message.is_system = False
            message.summary_hidden = False

    def append(self, message: ChatMessage) -> int:
        self._messages.append(message)
        return len(self._messages) - 1

    def edit(self, index: int, text: str) -> None:
        self._messages[index].text = text

    def delete(self, index: int) -> None:
        del self._messages[index]

    def switch(self, chat_id: str, messages: list[ChatMessage], character_name: str = "") -> None:
        """Point this provider at another chat."""
        self._chat_id = chat_id
        self._messages = list(messages)
        if character_name:
            self._character_name = character_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "chatId": self._chat_id,
            "characterName": self._character_name,
            "userName": self._user_name,
            "messages": [m.to_dict() for m in self._messages],
        }

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryChat":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return cls(
            chat_id=str(data.get("chatId") or path.stem),
            messages=[ChatMessage.from_dict(m) for m in data.get("messages") or []],
            character_name=str(data.get("characterName") or ""),
            user_name=str(data.get("userName") or "User"),
        )

    def save(self, path: Path) -> None:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)


class BufferPromptSink(PromptSink):
    """Remembers the last installed injection."""

    def __init__(self) -> None:
        self.text = ""
        self.position = InjectionPosition.AFTER_MAIN
        self.depth = 0
        self.installs = 0

    def install(self, text: str, position: InjectionPosition, depth: int) -> None:
        self.text = text
        self.position = position
        self.depth = depth
        self.installs += 1
        logger.debug("Installed %d chars at %s (depth %d)", len(text), position.value, depth)
