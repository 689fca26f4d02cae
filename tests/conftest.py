"""Shared fixtures: a deterministic scripted LLM host and chat builders."""

import logging
import re
from typing import Awaitable, Callable, Optional

import pytest

from storyrecap.config import SummarizerSettings
from storyrecap.engine import SummaryEngine
from storyrecap.host import BufferPromptSink, ChatMessage, InMemoryChat
from storyrecap.llm.host import HostGenerator
from storyrecap.memory.chat_store import ChatStore
from storyrecap.memory.persistence import InMemorySink

_MESSAGE_RE = re.compile(r"^\[#(\d+)\]", re.MULTILINE)
_GROUP_RE = re.compile(r"^=== Group #(\d+)-(\d+) ===", re.MULTILINE)
_HEADER_RE = re.compile(r"^#(\d+)(?:-(\d+))?[ \t]*$", re.MULTILINE)


def message_section(prompt: str) -> str:
    """The part of a summary prompt that lists the messages."""
    start = prompt.find("## Messages to Summarize")
    end = prompt.find("## Output Format", start)
    return prompt[start:end] if start != -1 else ""


def scripted_response(prompt: str, fail_indices: set[int], extra: str = "") -> str:
    """Deterministic LLM output derived from what the prompt asks for."""
    if "## Summaries to Compress" in prompt:
        start = prompt.index("## Summaries to Compress")
        end = prompt.find("## Output Format", start)
        section = prompt[start:end]
        parts = []
        for match in _HEADER_RE.finditer(section):
            a = match.group(1)
            header = f"#{a}-{match.group(2)}" if match.group(2) else f"#{a}"
            parts.append(f"{header}\n* Scenario: Condensed recap of {header}.")
        return "\n\n".join(parts)

    section = message_section(prompt)
    groups = _GROUP_RE.findall(section)
    if groups:
        covered = {i for a, b in groups for i in range(int(a), int(b) + 1)}
        if covered & fail_indices:
            raise ConnectionError("scripted connection failure")
        parts = [
            f"#{a}-{b}\n* Scenario: Messages {a} to {b} move the story forward."
            for a, b in groups
        ]
    else:
        indices = [int(i) for i in _MESSAGE_RE.findall(section)]
        if set(indices) & fail_indices:
            raise ConnectionError("scripted connection failure")
        parts = [f"#{i}\n* Scenario: Message {i} moves the story forward." for i in indices]
    body = "\n\n".join(parts)
    return f"{body}\n\n{extra}" if extra else body


class ScriptedHost(HostGenerator):
    """A host generator that answers from the prompt's own structure."""

    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.raw_calls: list[dict] = []
        self.fail_indices: set[int] = set()
        self.extra = ""
        self.responder: Optional[Callable[[str], str]] = None
        self.on_call: Optional[Callable[[str], Awaitable[None]]] = None

    async def generate_quiet(self, prompt: str) -> str:
        return await self._answer(prompt)

    async def generate_raw(self, prompt, system_prompt=None, skip_world_info=True):
        self.raw_calls.append({"system_prompt": system_prompt, "skip_world_info": skip_world_info})
        return await self._answer(prompt)

    async def _answer(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.on_call is not None:
            await self.on_call(prompt)
        if self.responder is not None:
            return self.responder(prompt)
        return scripted_response(prompt, self.fail_indices, self.extra)


def make_messages(count: int, start: int = 0) -> list[ChatMessage]:
    return [
        ChatMessage(
            name="User" if i % 2 == 0 else "Alice",
            text=f"Line {i} of the story.",
            is_user=i % 2 == 0,
        )
        for i in range(start, start + count)
    ]


def make_chat(count: int, chat_id: str = "chat-1") -> InMemoryChat:
    return InMemoryChat(chat_id, make_messages(count), character_name="Alice", user_name="User")


def word_count(text: str) -> int:
    return len(text.split())


@pytest.fixture
def host():
    return ScriptedHost()


@pytest.fixture
def sink():
    return InMemorySink()


@pytest.fixture
def prompt_sink():
    return BufferPromptSink()


@pytest.fixture
def store(sink):
    return ChatStore(sink, save_delay=0)


@pytest.fixture
def engine_factory(host, sink, prompt_sink):
    """Build (not start) engines over the shared host and sinks."""
    created: list[SummaryEngine] = []

    def _make(chat: InMemoryChat, token_counter=None, **overrides) -> SummaryEngine:
        options = {"debounce_seconds": 0, "save_debounce_seconds": 0}
        options.update(overrides)
        engine = SummaryEngine(
            SummarizerSettings(**options),
            chat,
            sink,
            prompt_sink,
            host=host,
            token_counter=token_counter,
        )
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        logging.getLogger("storyrecap").removeHandler(engine.errors)
