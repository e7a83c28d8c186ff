from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Iterable

import tomli_w
from pydantic import BaseModel, ValidationError

from lorekeeper.manifest.models import (
    CommitCategory,
    ManifestCommitEntry,
    ManifestFileEntry,
    ManifestPatternEntry,
    ManifestStats,
    ScanResult,
)
from lorekeeper.utils import atomic_write_text, utc_now, with_file_lock

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.toml"
_HEADER = "# lorekeeper manifest: tracks analyzed files, commits and patterns\n\n"


class ManifestError(Exception):
    """Base class for manifest failures."""


class ManifestCorruptedError(ManifestError):
    """The persisted manifest is not valid TOML or has the wrong shape."""


class ManifestMissingFieldError(ManifestError):
    """A persisted entry lacks a required field."""


class KnowledgeManifest:
    """Incremental-state store for analyzed files, commits and patterns.

    Files and patterns reference each other: a file lists the pattern ids it
    contributes to and a pattern lists its contributing files. Both lists are
    changed together, only through ``link_pattern`` and ``unlink_pattern``.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else None
        self.files: dict[str, ManifestFileEntry] = {}
        self.commits: dict[str, ManifestCommitEntry] = {}
        self.patterns: dict[str, ManifestPatternEntry] = {}

    # -- files -------------------------------------------------------------

    def file_hash(self, path: str) -> str | None:
        entry = self.files.get(path)
        return entry.hash if entry else None

    def is_changed(self, path: str, new_hash: str) -> bool:
        """True if the path is untracked or its recorded hash differs."""
        return self.file_hash(path) != new_hash

    def record_file(
        self, path: str, file_hash: str, pattern_ids: Iterable[str] = ()
    ) -> ManifestFileEntry:
        entry = self.files.get(path)
        if entry is None:
            # Patterns that still list this path (it was removed and came back)
            # get their link restored on the file side.
            restored = sorted(
                pattern.id
                for pattern in self.patterns.values()
                if path in pattern.contributing_files
            )
            entry = ManifestFileEntry(
                path=path, hash=file_hash, last_scanned=utc_now(), pattern_ids=restored
            )
            self.files[path] = entry
        else:
            entry.hash = file_hash
            entry.last_scanned = utc_now()

        for pattern_id in pattern_ids:
            self.link_pattern(pattern_id, path)
        return entry

    def remove_file(self, path: str) -> bool:
        """Stop tracking ``path``.

        Patterns keep listing it until they are re-recorded or explicitly
        unlinked; callers invalidate those patterns first.
        """
        removed = self.files.pop(path, None)
        if removed is not None:
            logger.debug("Removed %s from manifest", path)
        return removed is not None

    # -- commits -----------------------------------------------------------

    def is_commit_processed(self, sha: str) -> bool:
        return sha in self.commits

    def record_commit(
        self, sha: str, category: CommitCategory, record_path: str = ""
    ) -> ManifestCommitEntry:
        """Append ``sha`` to the processed ledger. Re-recording is a no-op."""
        existing = self.commits.get(sha)
        if existing is not None:
            return existing
        entry = ManifestCommitEntry(
            sha=sha, processed_at=utc_now(), category=category, record_path=record_path
        )
        self.commits[sha] = entry
        return entry

    def commits_since(self, sha: str) -> list[ManifestCommitEntry]:
        """Commits processed after ``sha`` was, oldest first."""
        anchor = self.commits.get(sha)
        if anchor is None:
            return []
        later = [c for c in self.commits.values() if c.processed_at > anchor.processed_at]
        return sorted(later, key=lambda c: c.processed_at)

    # -- patterns ----------------------------------------------------------

    def record_pattern(
        self, pattern_id: str, name: str, files: Iterable[str] = ()
    ) -> ManifestPatternEntry:
        """Create or refresh a pattern and set its contributing files.

        Files the manifest does not track are skipped. Re-recording clears
        the invalidated flag.
        """
        files = list(dict.fromkeys(files))
        wanted = [f for f in files if f in self.files]
        skipped = [f for f in files if f not in self.files]
        if skipped:
            logger.debug("Pattern %s: ignoring untracked files %s", pattern_id, skipped)

        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            pattern = ManifestPatternEntry(id=pattern_id, name=name, last_updated=utc_now())
            self.patterns[pattern_id] = pattern
        else:
            pattern.name = name
            pattern.last_updated = utc_now()
            for stale in [f for f in pattern.contributing_files if f not in wanted]:
                self.unlink_pattern(pattern_id, stale)
        pattern.invalidated = False

        for path in wanted:
            self.link_pattern(pattern_id, path)
        return pattern

    def link_pattern(self, pattern_id: str, path: str) -> None:
        """Link a pattern and a file on both sides. Idempotent."""
        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            raise ManifestError(f"Cannot link unknown pattern '{pattern_id}'")
        file_entry = self.files.get(path)
        if file_entry is None:
            raise ManifestError(f"Cannot link pattern '{pattern_id}' to untracked file '{path}'")

        if path not in pattern.contributing_files:
            pattern.contributing_files.append(path)
        if pattern_id not in file_entry.pattern_ids:
            file_entry.pattern_ids.append(pattern_id)

    def unlink_pattern(self, pattern_id: str, path: str) -> None:
        """Remove a link from whichever sides still hold it."""
        pattern = self.patterns.get(pattern_id)
        if pattern is not None and path in pattern.contributing_files:
            pattern.contributing_files.remove(path)
        file_entry = self.files.get(path)
        if file_entry is not None and pattern_id in file_entry.pattern_ids:
            file_entry.pattern_ids.remove(pattern_id)

    def patterns_for_file(self, path: str) -> list[str]:
        entry = self.files.get(path)
        return list(entry.pattern_ids) if entry else []

    def invalidate_pattern(self, pattern_id: str) -> bool:
        """Mark a pattern stale by bumping its timestamp. Links are kept."""
        pattern = self.patterns.get(pattern_id)
        if pattern is None:
            return False
        pattern.last_updated = utc_now()
        pattern.invalidated = True
        return True

    def find_invalidated_patterns(
        self, changed_paths: Iterable[str], deleted_paths: Iterable[str]
    ) -> list[str]:
        """Sorted, duplicate-free pattern ids referenced by any given path."""
        ids: set[str] = set()
        for path in [*changed_paths, *deleted_paths]:
            ids.update(self.patterns_for_file(path))
        return sorted(ids)

    def invalidated_patterns(self) -> list[ManifestPatternEntry]:
        return sorted(
            (p for p in self.patterns.values() if p.invalidated), key=lambda p: p.id
        )

    def apply_scan(self, scan: ScanResult) -> list[str]:
        """Invalidate patterns touched by a scan and drop deleted files.

        Changed files are not recorded here; callers record them once their
        analysis has succeeded.
        """
        invalidated = self.find_invalidated_patterns(
            (f.path for f in scan.changed), scan.deleted
        )
        for pattern_id in invalidated:
            self.invalidate_pattern(pattern_id)
        for path in scan.deleted:
            self.remove_file(path)
        if invalidated:
            logger.info("Invalidated %d patterns: %s", len(invalidated), ", ".join(invalidated))
        return invalidated

    def stats(self) -> ManifestStats:
        last_scan = max((f.last_scanned for f in self.files.values()), default=None)
        return ManifestStats(
            files_scanned=len(self.files),
            commits_processed=len(self.commits),
            patterns_extracted=len(self.patterns),
            patterns_invalidated=sum(1 for p in self.patterns.values() if p.invalidated),
            last_scan=last_scan,
        )

    # -- persistence -------------------------------------------------------

    def to_document(self) -> dict[str, Any]:
        return {
            "files": {k: _dump(v, "path") for k, v in sorted(self.files.items())},
            "commits": {k: _dump(v, "sha") for k, v in sorted(self.commits.items())},
            "patterns": {k: _dump(v, "id") for k, v in sorted(self.patterns.items())},
        }

    def save(self, path: str | Path | None = None) -> Path:
        """Persist atomically: write a temp file, then replace the old one."""
        target = Path(path) if path is not None else self.path
        if target is None:
            raise ManifestError("No manifest path to save to")
        text = _HEADER + tomli_w.dumps(self.to_document())
        with with_file_lock(target):
            atomic_write_text(target, text)
        self.path = target
        logger.debug("Saved manifest to %s", target)
        return target

    @classmethod
    def load(cls, path: str | Path) -> KnowledgeManifest:
        """Load a manifest. A missing file is an empty store; a bad one is fatal."""
        path = Path(path)
        manifest = cls(path)
        if not path.exists():
            logger.info("No manifest at %s; starting fresh", path)
            return manifest

        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as exc:
            raise ManifestCorruptedError(f"Failed to parse manifest {path}: {exc}") from exc

        manifest.files = _load_table(data, "files", "path", ManifestFileEntry)
        manifest.commits = _load_table(data, "commits", "sha", ManifestCommitEntry)
        manifest.patterns = _load_table(data, "patterns", "id", ManifestPatternEntry)
        return manifest


def _dump(entry: BaseModel, key_field: str) -> dict[str, Any]:
    return entry.model_dump(mode="json", exclude={key_field})


def _load_table(
    data: dict[str, Any], table: str, key_field: str, model: type[BaseModel]
) -> dict[str, Any]:
    raw = data.get(table, {})
    if not isinstance(raw, dict):
        raise ManifestCorruptedError(f"Manifest table [{table}] must be a table")

    entries: dict[str, Any] = {}
    for key, body in raw.items():
        if not isinstance(body, dict):
            raise ManifestCorruptedError(f"Manifest entry {table}.{key} must be a table")
        try:
            entries[key] = model.model_validate({**body, key_field: key})
        except ValidationError as exc:
            missing = [
                ".".join(str(p) for p in err["loc"])
                for err in exc.errors()
                if err["type"] == "missing"
            ]
            if missing:
                raise ManifestMissingFieldError(
                    f"Manifest entry {table}.{key} is missing: {', '.join(missing)}"
                ) from exc
            raise ManifestCorruptedError(f"Invalid manifest entry {table}.{key}: {exc}") from exc
    return entries
