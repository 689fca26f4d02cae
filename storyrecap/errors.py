"""Exception hierarchy for the summary engine."""

from __future__ import annotations

from typing import Optional


class SummaryEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(SummaryEngineError):
    """Settings are missing or inconsistent (never retried)."""


class NoBackendConfigured(ConfigurationError):
    """No LLM backend can serve the request with the current settings."""


class LLMError(SummaryEngineError):
    """A single LLM request failed; the caller moves on to the next unit."""


class NetworkError(LLMError):
    """The backend could not be reached."""


class LLMTimeoutError(LLMError, TimeoutError):
    """The backend did not answer within the configured timeout."""


class UpstreamError(LLMError):
    """The backend answered with a non-success status."""

    def __init__(self, status: Optional[int], message: str = "") -> None:
        self.status = status
        detail = f"HTTP {status}" if status is not None else "upstream error"
        super().__init__(f"{detail}: {message}" if message else detail)


class EmptyResponseError(LLMError):
    """The backend answered successfully but returned no text."""


class InvalidIndexError(SummaryEngineError, IndexError):
    """A message index lies outside the active chat."""


class AlreadyRunningError(SummaryEngineError):
    """A summarization or compression run is already in progress."""
