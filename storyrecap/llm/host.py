"""Backends that delegate generation to the host chat application."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

from storyrecap.constants import PROFILE_SYSTEM_PROMPT
from storyrecap.errors import (
    LLMError,
    LLMTimeoutError,
    NetworkError,
    NoBackendConfigured,
    UpstreamError,
)
from storyrecap.llm.base import GenerationRequest, LLMBackend, normalize_response

logger = logging.getLogger(__name__)


class HostGenerator(ABC):
    """The host's built-in generation entry points."""

    @abstractmethod
    async def generate_quiet(self, prompt: str) -> Any:
        """Generate with the chat history in context."""
        ...

    @abstractmethod
    async def generate_raw(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        skip_world_info: bool = True,
    ) -> Any:
        """Generate from the prompt alone, history suppressed."""
        ...


class ConnectionProfiles(ABC):
    """Named connection profiles managed by the host."""

    @abstractmethod
    def has_profile(self, name: str) -> bool:
        ...

    @abstractmethod
    async def send_request(
        self, name: str, messages: list[dict[str, str]], max_tokens: int
    ) -> Any:
        ...


async def _call_host(coro: Any, label: str) -> str:
    """Await a host call and map its failures onto gateway errors."""
    try:
        raw = await coro
    except LLMError:
        raise
    except (asyncio.TimeoutError, TimeoutError) as e:
        raise LLMTimeoutError(f"{label} timed out") from e
    except (ConnectionError, OSError) as e:
        raise NetworkError(f"{label} failed: {e}") from e
    except Exception as e:
        status = getattr(e, "status", None) or getattr(e, "status_code", None)
        raise UpstreamError(status if isinstance(status, int) else None, str(e)) from e
    return normalize_response(raw)


class HostNativeBackend(LLMBackend):
    """Uses the host's own generation in quiet or raw mode."""

    name = "host"

    def __init__(
        self,
        generator: HostGenerator,
        use_raw_prompt: bool = True,
        include_world_info: bool = False,
    ) -> None:
        self._generator = generator
        self._use_raw_prompt = use_raw_prompt
        self._include_world_info = include_world_info

    async def generate(self, request: GenerationRequest) -> str:
        if self._use_raw_prompt:
            coro = self._generator.generate_raw(
                request.prompt,
                system_prompt=request.system_hint,
                skip_world_info=not self._include_world_info,
            )
            return await _call_host(coro, "Host raw generation")
        return await _call_host(
            self._generator.generate_quiet(request.prompt), "Host quiet generation"
        )

    async def health_check(self) -> bool:
        return True


class ProfileBackend(LLMBackend):
    """Routes requests through a named host connection profile."""

    name = "profile"

    def __init__(
        self,
        profiles: ConnectionProfiles,
        profile_name: str,
        fallback: Optional[HostNativeBackend] = None,
        max_tokens: int = 4000,
    ) -> None:
        self._profiles = profiles
        self._profile_name = profile_name
        self._fallback = fallback
        self._max_tokens = max_tokens

    async def generate(self, request: GenerationRequest) -> str:
        if not self._profiles.has_profile(self._profile_name):
            if self._fallback is None:
                raise NoBackendConfigured(
                    f"Connection profile {self._profile_name!r} not found"
                )
            logger.warning(
                "Connection profile %r not found, using host generation",
                self._profile_name,
            )
            return await self._fallback.generate(request)

        messages = [
            {"role": "system", "content": request.system_hint or PROFILE_SYSTEM_PROMPT},
            {"role": "user", "content": request.prompt},
        ]
        coro = self._profiles.send_request(
            self._profile_name, messages, request.max_tokens or self._max_tokens
        )
        return await _call_host(coro, f"Profile {self._profile_name!r}")

    async def health_check(self) -> bool:
        if self._profiles.has_profile(self._profile_name):
            return True
        return self._fallback is not None
