"""Abstract LLM backend interface and shared types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from storyrecap.errors import EmptyResponseError


@dataclass
class GenerationRequest:
    """A single prompt sent to whichever backend is configured."""

    prompt: str
    system_hint: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: float = 0.3
    options: dict[str, Any] = field(default_factory=dict)


class LLMBackend(ABC):
    """Abstract interface for all summary backends."""

    name: str = "backend"

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> str:
        """Send the prompt and return the response text."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Verify the backend is reachable."""
        ...


def normalize_response(raw: Any) -> str:
    """Pull the text out of the response shapes backends hand back."""
    text: Any = raw
    if isinstance(raw, dict):
        choices = raw.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] or {}
            message = first.get("message") or {}
            text = message.get("content") if isinstance(message, dict) else None
            if text is None:
                text = first.get("text")
        else:
            text = raw.get("content", raw.get("text"))
    elif raw is not None and not isinstance(raw, str):
        text = getattr(raw, "content", None)

    if isinstance(text, list):
        # content parts: [{"type": "text", "text": "..."}]
        text = "".join(
            part.get("text", "") if isinstance(part, dict) else str(part)
            for part in text
        )
    if not isinstance(text, str) or not text.strip():
        raise EmptyResponseError("The LLM returned an empty response")
    return text.strip()
