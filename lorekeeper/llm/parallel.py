"""Concurrent fan-out of one prompt to every configured backend."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from pydantic import BaseModel, Field

from lorekeeper.llm.base import LLMBackend, ProviderError

logger = logging.getLogger(__name__)


class NoBackendsConfiguredError(Exception):
    """Raised when a fan-out is requested with an empty backend list."""

    def __init__(self) -> None:
        super().__init__("No providers configured")


class BackendSuccess(BaseModel):
    backend: str
    response: str


class BackendFailure(BaseModel):
    backend: str
    error: str


class AllBackendsFailedError(Exception):
    """Raised when no backend produced a response."""

    def __init__(self, failures: list[BackendFailure]) -> None:
        self.failures = failures
        names = ", ".join(f.backend for f in failures)
        reasons = "; ".join(f"{f.backend}: {f.error}" for f in failures)
        super().__init__(f"All {len(failures)} providers failed: {names} ({reasons})")


class FanOutResult(BaseModel):
    successes: list[BackendSuccess] = Field(default_factory=list)
    failures: list[BackendFailure] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    def responses(self) -> dict[str, str]:
        return {s.backend: s.response for s in self.successes}


async def _query_one(backend: LLMBackend, prompt: str) -> BackendSuccess | BackendFailure:
    name = backend.name
    timeout = backend.timeout_seconds
    try:
        # The timeout covers every retry the backend makes internally.
        response = await asyncio.wait_for(backend.query(prompt), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %gs", name, timeout)
        return BackendFailure(backend=name, error=f"timed out after {timeout:g}s")
    except ProviderError as exc:
        logger.warning("%s query failed: %s", name, exc.detail)
        return BackendFailure(backend=name, error=exc.detail)
    except OSError as exc:
        logger.warning("%s query failed: %s", name, exc)
        return BackendFailure(backend=name, error=str(exc))

    logger.info("%s query succeeded (%d chars)", name, len(response))
    return BackendSuccess(backend=name, response=response)


async def query_all(backends: Sequence[LLMBackend], prompt: str) -> FanOutResult:
    """Send ``prompt`` to every backend at once and wait for all of them.

    No branch is cancelled because another finished first. Returns the
    successes and failures, in backend order, as long as one backend
    answered.

    Raises:
        NoBackendsConfiguredError: ``backends`` is empty.
        AllBackendsFailedError: every backend failed or timed out.
    """
    if not backends:
        raise NoBackendsConfiguredError()

    logger.info("Querying %d backends in parallel", len(backends))
    outcomes = await asyncio.gather(*(_query_one(b, prompt) for b in backends))

    result = FanOutResult()
    for outcome in outcomes:
        if isinstance(outcome, BackendSuccess):
            result.successes.append(outcome)
        else:
            result.failures.append(outcome)

    if not result.successes:
        raise AllBackendsFailedError(result.failures)

    logger.info(
        "Parallel query complete: %d/%d succeeded",
        result.success_count, result.success_count + result.failure_count,
    )
    return result
