from __future__ import annotations

import asyncio
import json
import logging
from typing import Sequence

from lorekeeper.llm.base import (
    InvalidResponse,
    LLMBackend,
    ModelUnavailable,
    classify_error_text,
)

logger = logging.getLogger(__name__)

PROMPT_PLACEHOLDER = "{prompt}"

# output mode -> (stream carrying the answer, JSON key or None for plain text)
OUTPUT_MODES: dict[str, tuple[str, str | None]] = {
    "text": ("stdout", None),
    "json-stdout": ("stdout", "result"),
    "json-stderr": ("stderr", "agent_message"),
}


class CliBackend(LLMBackend):
    """Query a model through a local command-line tool.

    ``command`` is an argv template; every ``{prompt}`` element is replaced by
    the prompt text, and the prompt is appended when no element holds the
    placeholder.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        output_mode: str = "text",
        timeout_seconds: float = 120.0,
    ) -> None:
        if not command:
            raise ValueError(f"Backend {name} has an empty command")
        if output_mode not in OUTPUT_MODES:
            raise ValueError(f"Unknown output mode {output_mode!r} for backend {name}")
        self._name = name
        self._command = list(command)
        self._output_mode = output_mode
        self.timeout_seconds = timeout_seconds

    @property
    def name(self) -> str:
        return self._name

    def build_argv(self, prompt: str) -> list[str]:
        if PROMPT_PLACEHOLDER not in self._command:
            return [*self._command, prompt]
        return [prompt if part == PROMPT_PLACEHOLDER else part for part in self._command]

    async def query(self, prompt: str) -> str:
        argv = self.build_argv(prompt)
        logger.debug("Running %s [prompt: %d chars]", argv[0], len(prompt))
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ModelUnavailable(self._name, f"command not found: {argv[0]}") from exc
        except OSError as exc:
            raise ModelUnavailable(self._name, f"could not start {argv[0]}: {exc}") from exc

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            # Timed out or cancelled by the caller; don't leave the process behind.
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        out_text = stdout.decode("utf-8", errors="replace")
        err_text = stderr.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            raise classify_error_text(
                self._name, err_text or out_text or f"exit status {proc.returncode}"
            )

        return self.extract_response(out_text, err_text)

    def extract_response(self, stdout: str, stderr: str) -> str:
        stream, key = OUTPUT_MODES[self._output_mode]
        raw = stdout if stream == "stdout" else stderr
        if key is None:
            if not raw.strip():
                raise InvalidResponse(self._name, "empty output")
            return raw

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidResponse(
                self._name, f"failed to parse JSON: {exc}. Output: {raw[:200]}"
            ) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get(key), str):
            raise InvalidResponse(self._name, f"JSON output has no '{key}' string")
        return payload[key]
