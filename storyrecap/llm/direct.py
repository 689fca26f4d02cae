"""Direct HTTP backend for OpenAI-compatible Chat Completions endpoints."""

from __future__ import annotations

import logging
import re
from typing import Any, Optional

import httpx

from storyrecap.config import CustomApiConfig
from storyrecap.errors import (
    LLMError,
    LLMTimeoutError,
    NetworkError,
    NoBackendConfigured,
    UpstreamError,
)
from storyrecap.llm.base import GenerationRequest, LLMBackend, normalize_response

logger = logging.getLogger(__name__)

# Reasoning-class models reject max_tokens and want max_completion_tokens
_COMPLETION_TOKEN_MODELS = re.compile(r"^(o1|o3|o4|gpt-5|gpt-4o-2024-1[12])", re.IGNORECASE)


def uses_completion_tokens(model: str) -> bool:
    name = (model or "").lower()
    return bool(_COMPLETION_TOKEN_MODELS.match(name)) or "o1-" in name or "o3-" in name


def models_url(chat_url: str) -> str:
    """Derive the model-listing URL from a chat completions URL."""
    url = chat_url.rstrip("/")
    if url.endswith("/chat/completions"):
        url = url[: -len("/chat/completions")]
    return url + "/models"


class DirectHTTPBackend(LLMBackend):
    """POSTs a single user message to a Chat Completions URL; one attempt."""

    name = "custom"

    def __init__(
        self,
        config: CustomApiConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not config.url or not config.model:
            raise NoBackendConfigured("Custom API needs both a URL and a model name")
        self.config = config
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.key:
            headers["Authorization"] = f"Bearer {self.config.key}"
        return headers

    def build_body(self, request: GenerationRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "temperature": request.temperature,
        }
        max_tokens = request.max_tokens or self.config.max_tokens
        if uses_completion_tokens(self.config.model):
            body["max_completion_tokens"] = max_tokens
        else:
            body["max_tokens"] = max_tokens
        return body

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, headers=self._headers(), **kwargs
                )
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(
                f"No response from {url} within {self.config.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

        if not response.is_success:
            raise UpstreamError(response.status_code, response.text[:300])
        return response

    async def generate(self, request: GenerationRequest) -> str:
        response = await self._send(
            "POST", self.config.url, json=self.build_body(request)
        )
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(response.status_code, "response is not JSON") from e
        return normalize_response(data)

    async def list_models(self) -> list[str]:
        """Model ids advertised by the endpoint."""
        response = await self._send("GET", models_url(self.config.url))
        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(response.status_code, "response is not JSON") from e
        entries = data.get("data", []) if isinstance(data, dict) else data
        return sorted(
            str(m.get("id")) for m in entries or [] if isinstance(m, dict) and m.get("id")
        )

    async def health_check(self) -> bool:
        try:
            await self.generate(GenerationRequest(prompt="Say OK", max_tokens=10))
        except LLMError:
            logger.warning("Custom API health check failed", exc_info=True)
            return False
        return True
