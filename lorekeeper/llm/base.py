from __future__ import annotations

import re
from abc import ABC, abstractmethod

_RETRY_AFTER_RE = re.compile(r"retry[- ]after:?\s*(\d+)", re.IGNORECASE)


class ProviderError(Exception):
    """A backend query failed."""

    retryable = True

    def __init__(self, backend: str, message: str) -> None:
        self.backend = backend
        self.detail = message
        super().__init__(f"{backend}: {message}")


class RequestFailed(ProviderError):
    """Connection failure, timeout, non-zero exit or unexpected status."""


class InvalidResponse(ProviderError):
    """The backend answered but the payload could not be understood."""


class RateLimitExceeded(ProviderError):
    def __init__(self, backend: str, retry_after: float | None = None) -> None:
        self.retry_after = retry_after
        suffix = f" (retry after {retry_after:g}s)" if retry_after is not None else ""
        super().__init__(backend, f"rate limit exceeded{suffix}")


class AuthenticationFailed(ProviderError):
    retryable = False

    def __init__(self, backend: str, message: str = "authentication failed") -> None:
        super().__init__(backend, message)


class ModelUnavailable(ProviderError):
    def __init__(self, backend: str, message: str = "model unavailable") -> None:
        super().__init__(backend, message)


def extract_retry_after(text: str) -> float | None:
    """Pull a ``retry-after: N`` hint out of an error message."""
    match = _RETRY_AFTER_RE.search(text)
    return float(match.group(1)) if match else None


def classify_error_text(backend: str, text: str) -> ProviderError:
    """Map a free-form error message to the matching provider error."""
    lower = text.lower()
    if "429" in lower or "rate limit" in lower or "quota exceeded" in lower:
        return RateLimitExceeded(backend, extract_retry_after(text))
    if "unauthorized" in lower or "authentication" in lower or "401" in lower:
        return AuthenticationFailed(backend, text.strip() or "authentication failed")
    if "503" in lower or "unavailable" in lower:
        return ModelUnavailable(backend, text.strip() or "model unavailable")
    return RequestFailed(backend, text.strip() or "request failed")


class LLMBackend(ABC):
    """A language-model endpoint that answers one prompt with free-form text."""

    timeout_seconds: float = 120.0

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier used for trust weighting and reporting."""

    @abstractmethod
    async def query(self, prompt: str) -> str:
        """Return the response text or raise a ``ProviderError``."""

    async def close(self) -> None:
        """Release any held resources. Safe to call multiple times."""
