"""LLM gateway: picks a backend from settings and sends prompts to it."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from storyrecap.config import ApiSource, SummarizerSettings
from storyrecap.errors import NoBackendConfigured
from storyrecap.llm.base import GenerationRequest, LLMBackend
from storyrecap.llm.direct import DirectHTTPBackend
from storyrecap.llm.host import (
    ConnectionProfiles,
    HostGenerator,
    HostNativeBackend,
    ProfileBackend,
)

logger = logging.getLogger(__name__)


class LLMGateway:
    """Single entry point for summary generation.

    The backend is chosen per call so settings edits take effect at once:
    ``custom`` goes over direct HTTP; ``host`` uses the named connection
    profile when one is set (falling back to host-native generation), and
    host-native generation otherwise.
    """

    def __init__(
        self,
        settings: SummarizerSettings,
        host: Optional[HostGenerator] = None,
        profiles: Optional[ConnectionProfiles] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._host = host
        self._profiles = profiles
        self._transport = transport

    def backend(self) -> LLMBackend:
        """Build the backend the current settings call for."""
        settings = self.settings
        if settings.api_source == ApiSource.CUSTOM:
            return DirectHTTPBackend(settings.custom_api, transport=self._transport)

        native: Optional[HostNativeBackend] = None
        if self._host is not None:
            native = HostNativeBackend(
                self._host,
                use_raw_prompt=settings.use_raw_prompt,
                include_world_info=settings.include_world_info,
            )
        if settings.connection_profile and self._profiles is not None:
            return ProfileBackend(
                self._profiles,
                settings.connection_profile,
                fallback=native,
                max_tokens=settings.custom_api.max_tokens,
            )
        if native is None:
            raise NoBackendConfigured(
                "No host generator is available; configure the custom API instead"
            )
        return native

    async def generate(
        self,
        prompt: str,
        system_hint: Optional[str] = None,
        **options: Any,
    ) -> str:
        """Send a prompt; raises one of the LLMError subclasses on failure."""
        backend = self.backend()
        request = GenerationRequest(
            prompt=prompt,
            system_hint=system_hint,
            max_tokens=options.pop("max_tokens", None),
            temperature=options.pop("temperature", 0.3),
            options=options,
        )
        logger.debug("Sending %d-char prompt via %s", len(prompt), backend.name)
        text = await backend.generate(request)
        logger.debug("Received %d chars from %s", len(text), backend.name)
        return text

    async def health_check(self) -> bool:
        try:
            backend = self.backend()
        except NoBackendConfigured:
            logger.warning("No LLM backend configured")
            return False
        return await backend.health_check()
