"""Prompt assembly from Jinja2 templates."""

from __future__ import annotations

import logging
from typing import Any, Optional

from jinja2 import Environment, TemplateSyntaxError

from storyrecap.config import SummarizerSettings
from storyrecap.constants import (
    DEFAULT_BATCH_TEMPLATE,
    DEFAULT_CATEGORY_LINE,
    DEFAULT_CHARACTER_EXTRACT_TEMPLATE,
    DEFAULT_COMPRESS_TEMPLATE,
    DEFAULT_EVENT_EXTRACT_TEMPLATE,
    DEFAULT_INDIVIDUAL_TEMPLATE,
    DEFAULT_ITEM_EXTRACT_TEMPLATE,
    LANG_INSTRUCTIONS,
    LANG_REMINDERS,
)
from storyrecap.errors import ConfigurationError
from storyrecap.host import ChatMessage, ChatProvider
from storyrecap.memory.chat_store import ChatStore, EntrySpan
from storyrecap.models import Character, format_header, strip_header
from storyrecap.pipeline.parser import strip_catalog_blocks
from storyrecap.utils.tokens import TokenCounter

logger = logging.getLogger(__name__)


def format_message(index: int, message: ChatMessage, chat: ChatProvider) -> str:
    speaker = message.name or (chat.user_name if message.is_user else chat.character_name)
    return f"[#{index}] {speaker}: {message.text.strip()}"


def format_character(character: Character, user_label: str = "{{user}}") -> str:
    """One-line character description shared by prompts and injection."""
    details = [v for v in (character.role, character.age, character.occupation) if v]
    line = f"- {character.name}"
    if details:
        line += f" ({', '.join(details)})"
    if character.relationship_with_user:
        line += f" [Relationship with {user_label}: {character.relationship_with_user}]"
    if character.traits:
        line += f" [Traits: {', '.join(character.traits)}]"
    if character.description:
        line += f" [Description: {character.description}]"
    return line


class PromptBuilder:
    """Renders summary, extraction and compression prompts.

    Templates are Jinja2 strings; the built-in defaults apply wherever the
    settings leave a template unset.
    """

    def __init__(self, settings: SummarizerSettings, tokens: TokenCounter) -> None:
        self.settings = settings
        self._tokens = tokens
        self._env = Environment(trim_blocks=True, lstrip_blocks=True)

    def render(self, template_text: str, **variables: Any) -> str:
        try:
            template = self._env.from_string(template_text)
        except TemplateSyntaxError as e:
            raise ConfigurationError(f"Invalid prompt template: {e}") from e
        return template.render(**variables).strip()

    def _template(self, name: str, default: str) -> str:
        custom: Optional[str] = getattr(self.settings.prompts, name)
        return custom if custom and custom.strip() else default

    def language_instruction(self) -> str:
        return LANG_INSTRUCTIONS.get(self.settings.summary_language, LANG_INSTRUCTIONS["en"])

    def language_reminder(self) -> str:
        return LANG_REMINDERS.get(self.settings.summary_language, LANG_REMINDERS["en"])

    def categories_text(self, chat: ChatProvider) -> str:
        lines = []
        for category in self.settings.ordered_categories():
            prompt = self.render(
                category.prompt, user=chat.user_name, char=chat.character_name
            )
            lines.append(f"* {category.label}: ({prompt})")
        return "\n".join(lines) if lines else DEFAULT_CATEGORY_LINE

    def existing_characters_text(
        self, store: ChatStore, chat: ChatProvider, last_index: int
    ) -> str:
        characters = store.relevant_characters(last_index)
        return "\n".join(format_character(c, chat.user_name) for c in characters)

    async def previous_summaries_text(self, store: ChatStore, before_index: int) -> str:
        """Prior summaries, clipped from the oldest side to the token limit."""
        texts = [
            strip_catalog_blocks(t)
            for t in store.context_summaries(before_index, self.settings.summary_context_count)
        ]
        texts = [t for t in texts if t]
        limit = self.settings.previous_summaries_token_limit
        if limit > 0 and texts:
            costs = [await self._tokens.count(t) for t in texts]
            dropped = 0
            while texts and sum(costs) > limit:
                texts.pop(0)
                costs.pop(0)
                dropped += 1
            if dropped:
                logger.info(
                    "Clipped %d oldest prior summaries to stay within %d tokens",
                    dropped, limit,
                )
        return "\n\n".join(texts)

    async def _common_variables(
        self, store: ChatStore, chat: ChatProvider, first_index: int, last_index: int
    ) -> dict[str, Any]:
        existing = ""
        if self.settings.character_tracking_enabled:
            existing = self.existing_characters_text(store, chat, last_index)
        return {
            "user": chat.user_name,
            "char": chat.character_name,
            "language": self.language_instruction(),
            "categories": self.categories_text(chat),
            "previousSummaries": await self.previous_summaries_text(store, first_index),
            "existingCharacters": existing,
        }

    def _extraction_blocks(self, variables: dict[str, Any]) -> list[str]:
        blocks = []
        if self.settings.character_tracking_enabled:
            blocks.append(self.render(
                self._template("character_extract", DEFAULT_CHARACTER_EXTRACT_TEMPLATE),
                **variables,
            ))
        if self.settings.event_tracking_enabled:
            blocks.append(self.render(
                self._template("event_extract", DEFAULT_EVENT_EXTRACT_TEMPLATE),
                **variables,
            ))
        if self.settings.item_tracking_enabled:
            blocks.append(self.render(
                self._template("item_extract", DEFAULT_ITEM_EXTRACT_TEMPLATE),
                **variables,
            ))
        return blocks

    async def individual_prompt(
        self,
        store: ChatStore,
        chat: ChatProvider,
        messages: list[ChatMessage],
        indices: list[int],
    ) -> str:
        """Prompt asking for one "#N" section per message."""
        variables = await self._common_variables(store, chat, indices[0], indices[-1])
        variables["messages"] = "\n\n".join(
            format_message(i, messages[i], chat) for i in indices
        )
        parts = [self.render(self._template("individual", DEFAULT_INDIVIDUAL_TEMPLATE), **variables)]
        parts.extend(self._extraction_blocks(variables))
        parts.append(self.language_reminder())
        return "\n\n".join(parts)

    async def batch_prompt(
        self,
        store: ChatStore,
        chat: ChatProvider,
        messages: list[ChatMessage],
        ranges: list[tuple[int, int]],
    ) -> str:
        """Prompt asking for one "#A-B" section per group."""
        variables = await self._common_variables(store, chat, ranges[0][0], ranges[-1][1])
        groups = []
        for start, end in ranges:
            lines = [f"=== Group #{start}-{end} ==="]
            lines.extend(format_message(i, messages[i], chat) for i in range(start, end + 1))
            groups.append("\n\n".join(lines))
        variables["messages"] = "\n\n".join(groups)
        parts = [self.render(self._template("batch", DEFAULT_BATCH_TEMPLATE), **variables)]
        parts.extend(self._extraction_blocks(variables))
        parts.append(self.language_reminder())
        return "\n\n".join(parts)

    def compress_prompt(self, chat: ChatProvider, spans: list[EntrySpan]) -> str:
        """Prompt asking for terser rewrites of existing entries."""
        summaries = "\n\n".join(
            f"{format_header(s.start, s.end)}\n{strip_catalog_blocks(strip_header(s.entry.content))}"
            for s in spans
        )
        return self.render(
            self._template("compress", DEFAULT_COMPRESS_TEMPLATE),
            user=chat.user_name,
            char=chat.character_name,
            language=self.language_instruction(),
            summaries=summaries,
        )
