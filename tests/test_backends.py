from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from lorekeeper.llm.base import (
    AuthenticationFailed,
    InvalidResponse,
    ModelUnavailable,
    RateLimitExceeded,
    RequestFailed,
    classify_error_text,
    extract_retry_after,
)
from lorekeeper.llm.cli import CliBackend
from lorekeeper.llm.http import HttpChatBackend, error_for_status, extract_content


class TestErrorClassification:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("HTTP 429 Too Many Requests", RateLimitExceeded),
            ("Rate limit reached for requests", RateLimitExceeded),
            ("Quota exceeded for this project", RateLimitExceeded),
            ("401 Unauthorized", AuthenticationFailed),
            ("authentication required: run login", AuthenticationFailed),
            ("503 Service Unavailable", ModelUnavailable),
            ("model is currently unavailable", ModelUnavailable),
            ("segmentation fault", RequestFailed),
        ],
    )
    def test_classify(self, text: str, expected: type) -> None:
        error = classify_error_text("codex", text)
        assert isinstance(error, expected)
        assert error.backend == "codex"

    def test_retry_after_hint(self) -> None:
        assert extract_retry_after("rate limit hit, Retry-After: 12") == 12.0
        assert extract_retry_after("retry after 3 seconds") == 3.0
        assert extract_retry_after("no hint") is None
        error = classify_error_text("gemini", "429: retry-after 30")
        assert isinstance(error, RateLimitExceeded)
        assert error.retry_after == 30.0

    def test_auth_is_not_retryable(self) -> None:
        assert AuthenticationFailed("x").retryable is False
        assert RequestFailed("x", "y").retryable is True


class TestCliBackend:
    def test_build_argv_substitutes_placeholder(self) -> None:
        backend = CliBackend("claude", ["claude", "-p", "{prompt}", "--output-format", "json"])
        assert backend.build_argv("hello") == ["claude", "-p", "hello", "--output-format", "json"]

    def test_build_argv_appends_without_placeholder(self) -> None:
        backend = CliBackend("gemini", ["gemini"])
        assert backend.build_argv("hello") == ["gemini", "hello"]

    def test_rejects_bad_configuration(self) -> None:
        with pytest.raises(ValueError):
            CliBackend("empty", [])
        with pytest.raises(ValueError):
            CliBackend("odd", ["tool"], output_mode="xml")

    @pytest.mark.asyncio
    async def test_text_mode_returns_stdout(self) -> None:
        backend = CliBackend("echo", ["sh", "-c", 'printf "%s" "$1"', "sh", "{prompt}"])
        assert await backend.query("what = 'x'") == "what = 'x'"

    @pytest.mark.asyncio
    async def test_json_stdout_mode(self) -> None:
        backend = CliBackend(
            "claude", ["sh", "-c", 'printf \'{"result": "answer"}\''], output_mode="json-stdout"
        )
        assert await backend.query("p") == "answer"

    @pytest.mark.asyncio
    async def test_json_stderr_mode(self) -> None:
        backend = CliBackend(
            "codex",
            ["sh", "-c", 'printf \'{"agent_message": "from stderr"}\' 1>&2'],
            output_mode="json-stderr",
        )
        assert await backend.query("p") == "from stderr"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_classified(self) -> None:
        backend = CliBackend(
            "codex", ["sh", "-c", "echo 'Error 429: retry-after: 12' 1>&2; exit 1"]
        )
        with pytest.raises(RateLimitExceeded) as exc_info:
            await backend.query("p")
        assert exc_info.value.retry_after == 12.0

    @pytest.mark.asyncio
    async def test_missing_binary(self) -> None:
        backend = CliBackend("ghost", ["lorekeeper-no-such-binary-xyz"])
        with pytest.raises(ModelUnavailable):
            await backend.query("p")

    @pytest.mark.asyncio
    async def test_empty_output_is_invalid(self) -> None:
        backend = CliBackend("quiet", ["sh", "-c", "true"])
        with pytest.raises(InvalidResponse):
            await backend.query("p")

    @pytest.mark.asyncio
    async def test_bad_json_is_invalid(self) -> None:
        backend = CliBackend("claude", ["sh", "-c", "echo not-json"], output_mode="json-stdout")
        with pytest.raises(InvalidResponse):
            await backend.query("p")

    def test_json_without_key_is_invalid(self) -> None:
        backend = CliBackend("claude", ["claude"], output_mode="json-stdout")
        with pytest.raises(InvalidResponse):
            backend.extract_response('{"other": 1}', "")


def _make_app(status: int = 200, body: Any = None, headers: dict | None = None) -> tuple[web.Application, list]:
    seen: list[dict] = []

    async def handler(request: web.Request) -> web.Response:
        seen.append({"json": await request.json(), "auth": request.headers.get("Authorization")})
        if status >= 400:
            return web.Response(status=status, text="upstream says no", headers=headers)
        return web.json_response(body)

    app = web.Application()
    app.router.add_post("/v1/chat/completions", handler)
    return app, seen


def _completion(content: Any) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class TestHttpChatBackend:
    @pytest.mark.asyncio
    async def test_query_success(self) -> None:
        app, seen = _make_app(body=_completion("[[entry]]\nwhat = 'x'\n"))
        async with TestServer(app) as server:
            backend = HttpChatBackend(
                "local", base_url=str(server.make_url("/v1")), model="m1", api_key="secret"
            )
            try:
                assert await backend.query("analyze") == "[[entry]]\nwhat = 'x'\n"
            finally:
                await backend.close()

        payload = seen[0]["json"]
        assert payload["model"] == "m1"
        assert payload["messages"][-1] == {"role": "user", "content": "analyze"}
        assert seen[0]["auth"] == "Bearer secret"

    @pytest.mark.asyncio
    async def test_rate_limit_status(self) -> None:
        app, _ = _make_app(status=429, headers={"Retry-After": "9"})
        async with TestServer(app) as server:
            backend = HttpChatBackend("local", base_url=str(server.make_url("/v1")), model="m1")
            try:
                with pytest.raises(RateLimitExceeded) as exc_info:
                    await backend.query("p")
            finally:
                await backend.close()
        assert exc_info.value.retry_after == 9.0

    @pytest.mark.asyncio
    async def test_auth_status(self) -> None:
        app, seen = _make_app(status=401)
        async with TestServer(app) as server:
            backend = HttpChatBackend("local", base_url=str(server.make_url("/v1")), model="m1")
            try:
                with pytest.raises(AuthenticationFailed):
                    await backend.query("p")
            finally:
                await backend.close()
        assert seen[0]["auth"] is None

    @pytest.mark.asyncio
    async def test_connection_error(self) -> None:
        backend = HttpChatBackend("local", base_url="http://127.0.0.1:9", model="m1")
        try:
            with pytest.raises(RequestFailed):
                await backend.query("p")
        finally:
            await backend.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self) -> None:
        backend = HttpChatBackend("local", base_url="http://127.0.0.1:9", model="m1")
        await backend.close()
        await backend.close()

    @pytest.mark.parametrize(
        "status, expected",
        [
            (401, AuthenticationFailed),
            (403, AuthenticationFailed),
            (429, RateLimitExceeded),
            (502, ModelUnavailable),
            (503, ModelUnavailable),
            (504, ModelUnavailable),
            (400, RequestFailed),
            (500, RequestFailed),
        ],
    )
    def test_error_for_status(self, status: int, expected: type) -> None:
        assert isinstance(error_for_status("local", status, "body"), expected)

    def test_bad_retry_after_header_ignored(self) -> None:
        error = error_for_status("local", 429, "", "Wed, 21 Oct 2026 07:28:00 GMT")
        assert isinstance(error, RateLimitExceeded)
        assert error.retry_after is None

    def test_extract_content_variants(self) -> None:
        assert extract_content("local", _completion("text")) == "text"
        parts = [{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]
        assert extract_content("local", _completion(parts)) == "ab"
        with pytest.raises(InvalidResponse):
            extract_content("local", {"choices": []})
        with pytest.raises(InvalidResponse):
            extract_content("local", _completion("   "))
