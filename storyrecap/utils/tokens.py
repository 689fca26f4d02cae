"""Token counting utilities."""

from __future__ import annotations

import inspect
import logging
import math
from typing import Awaitable, Callable, Optional, Union

from storyrecap.constants import KOREAN_CHAR_RE

logger = logging.getLogger(__name__)

CounterFn = Callable[[str], Union[int, Awaitable[int]]]


def estimate_tokens(text: str) -> int:
    """Heuristic count: Hangul at ~2 chars/token, everything else at ~4."""
    if not text:
        return 0
    korean = len(KOREAN_CHAR_RE.findall(text))
    other = len(text) - korean
    return math.ceil(korean / 2 + other / 4)


def tiktoken_counter(model: str = "gpt-4o") -> Callable[[str], int]:
    """Build a counter backed by tiktoken's encoding for a model."""
    import tiktoken

    try:
        enc = tiktoken.encoding_for_model(model)
    except KeyError:
        logger.warning("No tiktoken encoding for %s, using o200k_base", model)
        enc = tiktoken.get_encoding("o200k_base")
    return lambda text: len(enc.encode(text))


class TokenCounter:
    """Cached token counting over an optional external counter.

    Results are cached per ``(text, model_fingerprint)``. A failing external
    counter falls back to :func:`estimate_tokens` for that call.
    """

    def __init__(
        self,
        counter: Optional[CounterFn] = None,
        model_fingerprint: str = "",
    ) -> None:
        self._counter = counter
        self._fingerprint = model_fingerprint
        self._cache: dict[tuple[str, str], int] = {}

    @property
    def model_fingerprint(self) -> str:
        return self._fingerprint

    def set_counter(
        self, counter: Optional[CounterFn], model_fingerprint: str = ""
    ) -> None:
        self._counter = counter
        self._fingerprint = model_fingerprint
        self.invalidate()

    async def count(self, text: str) -> int:
        key = (text, self._fingerprint)
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        tokens = await self._count_uncached(text)
        self._cache[key] = tokens
        return tokens

    async def _count_uncached(self, text: str) -> int:
        if self._counter is None:
            return estimate_tokens(text)
        try:
            result = self._counter(text)
            if inspect.isawaitable(result):
                result = await result
            return int(result)
        except Exception:
            logger.warning(
                "Token counter failed, using the heuristic estimate", exc_info=True
            )
            return estimate_tokens(text)

    def invalidate(self) -> None:
        """Drop every cached count."""
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
