from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path
from typing import Sequence

import tomli_w
from pydantic import BaseModel, Field, ValidationError

from lorekeeper.models import EntryCategory, KnowledgeEntry
from lorekeeper.synthesis.merger import infer_category
from lorekeeper.utils import atomic_write_text

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".toml"
MAX_SLUG_LENGTH = 50
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class WrittenRecord(BaseModel):
    path: str
    category: EntryCategory
    entry: KnowledgeEntry
    status: str  # written | updated | skipped


class WriteResult(BaseModel):
    written: int = 0
    updated: int = 0
    skipped: int = 0
    records: list[WrittenRecord] = Field(default_factory=list)


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated, at most 50 chars, cut at a word break."""
    slug = _NON_ALNUM_RE.sub("-", text.lower()).strip("-")
    if len(slug) > MAX_SLUG_LENGTH:
        truncated = slug[:MAX_SLUG_LENGTH]
        cut = truncated.rfind("-")
        slug = truncated[:cut] if cut > 0 else truncated
    return slug or "entry"


def record_path_for(knowledge_dir: str | Path, entry: KnowledgeEntry) -> Path:
    category = infer_category(entry)
    return Path(knowledge_dir) / category.dirname / f"{slugify(entry.what)}{RECORD_SUFFIX}"


def load_record(path: str | Path) -> KnowledgeEntry | None:
    try:
        data = tomllib.loads(Path(path).read_text(encoding="utf-8"))
        return KnowledgeEntry.model_validate(data)
    except (OSError, tomllib.TOMLDecodeError, ValidationError) as exc:
        logger.warning("Could not read existing record %s: %s", path, exc)
        return None


def write_entries(knowledge_dir: str | Path, entries: Sequence[KnowledgeEntry]) -> WriteResult:
    """Write each entry under its category directory, skipping identical ones."""
    root = Path(knowledge_dir)
    result = WriteResult()

    for entry in entries:
        path = record_path_for(root, entry)
        rel_path = path.relative_to(root).as_posix()
        category = infer_category(entry)

        if path.exists():
            existing = load_record(path)
            if existing == entry:
                result.skipped += 1
                result.records.append(
                    WrittenRecord(path=rel_path, category=category, entry=entry, status="skipped")
                )
                continue
            status = "updated"
            result.updated += 1
        else:
            status = "written"
            result.written += 1

        atomic_write_text(path, tomli_w.dumps(entry.to_document()))
        logger.debug("%s %s", status.capitalize(), rel_path)
        result.records.append(
            WrittenRecord(path=rel_path, category=category, entry=entry, status=status)
        )

    logger.info(
        "Records: %d written, %d updated, %d skipped",
        result.written, result.updated, result.skipped,
    )
    return result
