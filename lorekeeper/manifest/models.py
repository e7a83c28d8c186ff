from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class CommitCategory(str, Enum):
    DECISION = "decision"
    MIGRATION = "migration"
    BUG = "bug"


class ManifestFileEntry(BaseModel):
    path: str
    hash: str
    last_scanned: datetime
    pattern_ids: list[str] = Field(default_factory=list)


class ManifestCommitEntry(BaseModel):
    sha: str
    processed_at: datetime
    category: CommitCategory
    record_path: str = ""


class ManifestPatternEntry(BaseModel):
    id: str
    name: str
    contributing_files: list[str] = Field(default_factory=list)
    last_updated: datetime
    invalidated: bool = False


class ManifestStats(BaseModel):
    files_scanned: int
    commits_processed: int
    patterns_extracted: int
    patterns_invalidated: int
    last_scan: datetime | None = None


class FileToAnalyze(BaseModel):
    path: str
    hash: str
    size: int
    is_new: bool
    is_changed: bool


class ScanResult(BaseModel):
    """Scanner output consumed by the manifest's invalidation logic."""

    changed: list[FileToAnalyze] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    unchanged: int = 0
    total: int = 0
