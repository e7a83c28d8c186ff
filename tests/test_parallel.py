from __future__ import annotations

import asyncio
import time

import pytest

from lorekeeper.llm.base import LLMBackend, RequestFailed
from lorekeeper.llm.parallel import (
    AllBackendsFailedError,
    NoBackendsConfiguredError,
    query_all,
)


class _FakeBackend(LLMBackend):
    def __init__(
        self,
        name: str,
        response: str = "ok",
        delay: float = 0.0,
        error: Exception | None = None,
        timeout_seconds: float = 5.0,
    ) -> None:
        self._name = name
        self._response = response
        self._delay = delay
        self._error = error
        self.timeout_seconds = timeout_seconds
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    async def query(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._response


@pytest.mark.asyncio
async def test_all_succeed_in_backend_order():
    backends = [
        _FakeBackend("claude", "a", delay=0.05),
        _FakeBackend("codex", "b"),
        _FakeBackend("gemini", "c", delay=0.02),
    ]
    result = await query_all(backends, "prompt")
    assert [s.backend for s in result.successes] == ["claude", "codex", "gemini"]
    assert result.responses() == {"claude": "a", "codex": "b", "gemini": "c"}
    assert result.failure_count == 0
    assert all(b.prompts == ["prompt"] for b in backends)


@pytest.mark.asyncio
async def test_partial_failure_is_reported():
    backends = [
        _FakeBackend("claude", "a"),
        _FakeBackend("codex", error=RequestFailed("codex", "exit status 1")),
    ]
    result = await query_all(backends, "prompt")
    assert result.success_count == 1
    assert result.failures[0].backend == "codex"
    assert result.failures[0].error == "exit status 1"


@pytest.mark.asyncio
async def test_all_failed_raises_with_every_reason():
    backends = [
        _FakeBackend("claude", error=RequestFailed("claude", "boom")),
        _FakeBackend("codex", error=RequestFailed("codex", "bang")),
    ]
    with pytest.raises(AllBackendsFailedError) as exc_info:
        await query_all(backends, "prompt")
    message = str(exc_info.value)
    assert "All 2 providers failed" in message
    assert "boom" in message and "bang" in message
    assert len(exc_info.value.failures) == 2


@pytest.mark.asyncio
async def test_no_backends():
    with pytest.raises(NoBackendsConfiguredError, match="No providers configured"):
        await query_all([], "prompt")


@pytest.mark.asyncio
async def test_timeout_is_a_failure_without_cancelling_others():
    backends = [
        _FakeBackend("slow", delay=5.0, timeout_seconds=0.1),
        _FakeBackend("fast", "done", delay=0.2),
    ]
    result = await query_all(backends, "prompt")
    assert result.responses() == {"fast": "done"}
    assert result.failures[0].backend == "slow"
    assert "timed out" in result.failures[0].error


@pytest.mark.asyncio
async def test_os_error_is_a_failure():
    backends = [_FakeBackend("a", "x"), _FakeBackend("b", error=OSError("broken pipe"))]
    result = await query_all(backends, "prompt")
    assert result.failures[0].error == "broken pipe"


@pytest.mark.asyncio
async def test_backends_run_concurrently():
    backends = [_FakeBackend(f"b{i}", delay=0.2) for i in range(5)]
    start = time.monotonic()
    result = await query_all(backends, "prompt")
    assert result.success_count == 5
    assert time.monotonic() - start < 0.8
