from __future__ import annotations

import asyncio
import logging
import random
import re
import zlib

import tomli_w

from lorekeeper.llm.base import LLMBackend, ProviderError

logger = logging.getLogger(__name__)

_FILE_HEADER_RE = re.compile(r"^=== (?P<path>.+?) \(\d+ bytes\) ===$", re.MULTILINE)
_COMMIT_RE = re.compile(
    r"^commit (?P<short>[0-9a-f]{7,40}) \((?P<author>[^)]*)\)\n\s+(?P<summary>.+)$",
    re.MULTILINE,
)
_PATTERN_RE = re.compile(r"^pattern (?P<id>\S+): (?P<name>.+)$", re.MULTILINE)

_WHY_VARIANTS = [
    "Keeps the codebase consistent. Makes onboarding easier",
    "Keeps the codebase consistent. Reduces review churn",
    "Makes onboarding easier. Reduces review churn",
]
_HOW_VARIANTS = [
    "Read the module entry points\nFollow the existing naming scheme",
    "Follow the existing naming scheme\nAdd tests beside the change",
    "Read the module entry points\nAdd tests beside the change",
]
_CONFIDENCE = ["high", "medium"]


class MockBackend(LLMBackend):
    """Offline backend that answers with plausible TOML entries.

    Output is derived from the files, commits and patterns named in the
    prompt and is stable for a given (name, seed) pair. Different names
    phrase why/how slightly differently so synthesis has work to do.
    """

    def __init__(
        self,
        name: str = "mock",
        seed: int = 42,
        latency_seconds: float = 0.0,
        failure: ProviderError | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._name = name
        self._seed = seed
        self._latency = latency_seconds
        self._failure = failure
        self.timeout_seconds = timeout_seconds
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    async def query(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._failure is not None:
            raise self._failure
        return self.render(prompt)

    def render(self, prompt: str) -> str:
        rng = random.Random(self._seed + zlib.crc32(self._name.encode()))
        entries: list[dict] = []

        for match in _FILE_HEADER_RE.finditer(prompt):
            path = match.group("path")
            module = path.rsplit("/", 1)[-1].split(".", 1)[0] or path
            entries.append(
                {
                    "what": f"Module {module} follows the project layout convention",
                    "why": rng.choice(_WHY_VARIANTS),
                    "how": rng.choice(_HOW_VARIANTS),
                    "context": {
                        "files": [path],
                        "outcome": {"confidence": rng.choice(_CONFIDENCE)},
                    },
                }
            )

        for match in _COMMIT_RE.finditer(prompt):
            summary = match.group("summary").strip()
            entries.append(
                {
                    "what": f"Decided to {summary[0].lower()}{summary[1:]}" if summary else "Decided to change",
                    "why": f"Commit {match.group('short')} records the motivation",
                    "how": rng.choice(_HOW_VARIANTS),
                    "context": {"commits": [match.group("short")]},
                }
            )

        for match in _PATTERN_RE.finditer(prompt):
            entries.append(
                {
                    "what": f"Pattern {match.group('name').strip()} still applies",
                    "why": rng.choice(_WHY_VARIANTS),
                    "how": rng.choice(_HOW_VARIANTS),
                }
            )

        if not entries:
            entries.append(
                {
                    "what": "Repository has no notable findings",
                    "why": "Nothing in the prompt matched a known section",
                    "how": "No action needed",
                }
            )

        logger.debug("%s produced %d mock entries", self._name, len(entries))
        return tomli_w.dumps({"entry": entries})
