"""Turn a backend's free-form answer into candidate knowledge entries."""

from __future__ import annotations

import logging
import re
import tomllib
from typing import Any

from pydantic import ValidationError

from lorekeeper.models import KnowledgeEntry

logger = logging.getLogger(__name__)

ENTRY_SEPARATOR = "\n---\n"
_FENCE_RE = re.compile(r"^```[\w-]*\s*\n(.*?)\n```\s*$", re.DOTALL | re.MULTILINE)


class ParseFailedError(Exception):
    def __init__(self, backend: str, details: str) -> None:
        self.backend = backend
        self.details = details
        super().__init__(f"Failed to parse {backend} output: {details}")


def parse_model_response(backend: str, raw: str) -> list[KnowledgeEntry]:
    """Parse ``raw`` using the first strategy that yields entries.

    1. One TOML document holding an ``[[entry]]`` array.
    2. Blocks separated by a ``---`` line, each a standalone entry.
    3. Without separators, the whole text as a single entry.
    """
    text = _strip_code_fences(raw).strip()
    if not text:
        raise ParseFailedError(backend, "empty response")

    entries = _parse_entry_array(text)
    if entries:
        return entries

    normalized = text.replace("\r\n", "\n")
    blocks = [b.strip() for b in normalized.split(ENTRY_SEPARATOR) if b.strip()]

    if len(blocks) <= 1:
        single = _parse_single_entry(text)
        if single is not None:
            return [single]
    else:
        entries = [e for e in (_parse_single_entry(b) for b in blocks) if e is not None]
        if entries:
            return entries

    raise ParseFailedError(
        backend, f"no valid TOML entries found in {len(text)} chars of output"
    )


def _strip_code_fences(raw: str) -> str:
    """Keep only the fenced blocks when the answer wraps TOML in markdown."""
    blocks = _FENCE_RE.findall(raw)
    if not blocks:
        return raw
    return "\n\n".join(blocks)


def _load_toml(text: str) -> dict[str, Any] | None:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError:
        return None


def _to_entry(data: Any) -> KnowledgeEntry | None:
    if not isinstance(data, dict):
        return None
    try:
        entry = KnowledgeEntry.model_validate(data)
    except ValidationError as exc:
        logger.debug("Discarding malformed entry: %s", exc.errors()[0]["msg"])
        return None
    missing = entry.validate_required()
    if missing:
        logger.debug("Discarding entry with blank %s", ", ".join(missing))
        return None
    return entry


def _parse_entry_array(text: str) -> list[KnowledgeEntry]:
    doc = _load_toml(text)
    if doc is None:
        return []
    raw_entries = doc.get("entry", [])
    if not isinstance(raw_entries, list):
        return []
    return [e for e in (_to_entry(item) for item in raw_entries) if e is not None]


def _parse_single_entry(text: str) -> KnowledgeEntry | None:
    doc = _load_toml(text)
    if doc is None:
        return None
    return _to_entry(doc)
