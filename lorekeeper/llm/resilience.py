from __future__ import annotations

import asyncio
import logging
import random
import time as _time
from enum import Enum

from lorekeeper.llm.base import LLMBackend, ProviderError, RateLimitExceeded

logger = logging.getLogger(__name__)


class CircuitBreakerOpen(ProviderError):
    """Raised when a backend's circuit breaker is rejecting queries."""

    retryable = False


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Per-backend breaker: stop calling a backend that keeps failing.

    After ``threshold`` consecutive failures the breaker opens and queries
    are rejected without reaching the backend. Once ``cooldown_seconds``
    have passed it goes half-open and lets a trial query through; success
    closes it, failure reopens it for another cooldown.
    """

    def __init__(
        self, threshold: int = 5, cooldown_seconds: float = 30, backend: str = "backend"
    ) -> None:
        self.backend = backend
        self._threshold = threshold
        self._cooldown = cooldown_seconds
        self._failure_count = 0
        self._opened_at: float | None = None

    @property
    def state(self) -> BreakerState:
        if self._opened_at is None:
            return BreakerState.CLOSED
        if self.retry_in() > 0:
            return BreakerState.OPEN
        return BreakerState.HALF_OPEN

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def retry_in(self) -> float:
        """Seconds until a trial query is allowed; zero when not open."""
        if self._opened_at is None:
            return 0.0
        return max(0.0, self._cooldown - (_time.monotonic() - self._opened_at))

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("%s recovered; circuit closed", self.backend)
        self.reset()

    def record_failure(self) -> None:
        self._failure_count += 1
        if self.state == BreakerState.HALF_OPEN:
            self._opened_at = _time.monotonic()
            logger.warning("%s failed its trial query; circuit reopened", self.backend)
        elif self._opened_at is None and self._failure_count >= self._threshold:
            self._opened_at = _time.monotonic()
            logger.warning(
                "%s failed %d times in a row; circuit open for %.0fs",
                self.backend, self._failure_count, self._cooldown,
            )

    def reset(self) -> None:
        self._failure_count = 0
        self._opened_at = None

    def check(self, backend: str | None = None) -> None:
        """Raise CircuitBreakerOpen while open; half-open lets one query through."""
        if self.state == BreakerState.OPEN:
            raise CircuitBreakerOpen(
                backend or self.backend,
                f"circuit breaker is open ({self.retry_in():.0f}s cooldown remaining)",
            )


class RetryingBackend(LLMBackend):
    """Wrap a backend with exponential backoff, jitter and a circuit breaker.

    Retries only errors flagged ``retryable``; authentication failures and
    an open circuit surface immediately. A rate-limit hint from the backend
    replaces the computed delay, capped at ``retry_after_cap``.
    """

    def __init__(
        self,
        inner: LLMBackend,
        max_retries: int = 3,
        base_delay: float = 1.0,
        jitter_max: float = 1.0,
        retry_after_cap: float = 60.0,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self._inner = inner
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._jitter_max = jitter_max
        self._retry_after_cap = retry_after_cap
        self._breaker = breaker or CircuitBreaker(backend=inner.name)
        self.timeout_seconds = inner.timeout_seconds

    @property
    def name(self) -> str:
        return self._inner.name

    @property
    def inner(self) -> LLMBackend:
        return self._inner

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def query(self, prompt: str) -> str:
        self._breaker.check(self.name)

        attempt = 0
        while True:
            try:
                response = await self._inner.query(prompt)
            except ProviderError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    self._breaker.record_failure()
                    raise
                wait = self._backoff(attempt, exc)
                attempt += 1
                logger.warning(
                    "%s failed (%s), retrying in %.1fs (attempt %d/%d)",
                    self.name, exc.detail, wait, attempt, self._max_retries,
                )
                await asyncio.sleep(wait)
                continue

            self._breaker.record_success()
            return response

    def _backoff(self, attempt: int, exc: ProviderError) -> float:
        if isinstance(exc, RateLimitExceeded) and exc.retry_after is not None:
            wait = min(exc.retry_after, self._retry_after_cap)
        else:
            wait = self._base_delay * (2 ** attempt)
        return wait + random.uniform(0, self._jitter_max)

    async def close(self) -> None:
        await self._inner.close()
