from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from lorekeeper.llm.base import (
    AuthenticationFailed,
    InvalidResponse,
    LLMBackend,
    ModelUnavailable,
    ProviderError,
    RateLimitExceeded,
    RequestFailed,
)

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You analyze source code and git history and answer only with TOML "
    "[[entry]] blocks as instructed."
)


class HttpChatBackend(LLMBackend):
    """Async client for an OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        name: str,
        base_url: str,
        model: str,
        api_key: str = "",
        temperature: float = 0.2,
        path: str = "/chat/completions",
        timeout_seconds: float = 120.0,
    ) -> None:
        self._name = name
        self._url = base_url.rstrip("/") + "/" + path.lstrip("/")
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._session: aiohttp.ClientSession | None = None

    @property
    def name(self) -> str:
        return self._name

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Lazily create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Content-Type": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
        return self._session

    def build_payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": self._temperature,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
        }

    async def query(self, prompt: str) -> str:
        session = await self._ensure_session()
        try:
            async with session.post(self._url, json=self.build_payload(prompt)) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise error_for_status(
                        self._name, resp.status, body, resp.headers.get("Retry-After")
                    )
                try:
                    data = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as exc:
                    raise InvalidResponse(self._name, f"response is not JSON: {exc}") from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RequestFailed(self._name, f"network error: {exc}") from exc

        return extract_content(self._name, data)

    async def close(self) -> None:
        """Close the underlying aiohttp session. Safe to call multiple times."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


def error_for_status(
    backend: str, status: int, body: str, retry_after: str | None = None
) -> ProviderError:
    """Map an HTTP error status to the matching provider error."""
    snippet = body.strip()[:200]
    if status in (401, 403):
        return AuthenticationFailed(backend, f"HTTP {status}: {snippet}")
    if status == 429:
        wait: float | None = None
        if retry_after:
            try:
                wait = float(retry_after)
            except ValueError:
                wait = None
        return RateLimitExceeded(backend, wait)
    if status in (502, 503, 504):
        return ModelUnavailable(backend, f"HTTP {status}: {snippet}")
    return RequestFailed(backend, f"HTTP {status}: {snippet}")


def extract_content(backend: str, data: Any) -> str:
    """Return the first choice's message text from a chat completion body."""
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise InvalidResponse(backend, "missing choices[0].message.content") from exc
    if isinstance(content, list):
        # Some servers return content as a list of typed parts.
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    if not isinstance(content, str) or not content.strip():
        raise InvalidResponse(backend, "empty message content")
    return content
