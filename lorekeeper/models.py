from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ScoreCategory(str, Enum):
    """Commit significance buckets, most significant first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    TRIVIAL = "trivial"

    @property
    def rank(self) -> int:
        return _SCORE_RANKS[self]

    def at_least(self, other: ScoreCategory) -> bool:
        return self.rank >= other.rank


_SCORE_RANKS: dict[ScoreCategory, int] = {
    ScoreCategory.TRIVIAL: 0,
    ScoreCategory.LOW: 1,
    ScoreCategory.MEDIUM: 2,
    ScoreCategory.HIGH: 3,
    ScoreCategory.CRITICAL: 4,
}


class EntryCategory(str, Enum):
    """Knowledge record categories, in categorization priority order."""

    MIGRATION = "migration"
    BUG = "bug"
    PATTERN = "pattern"
    DECISION = "decision"
    FACT = "fact"

    @property
    def dirname(self) -> str:
        return _CATEGORY_DIRS[self]


_CATEGORY_DIRS: dict[EntryCategory, str] = {
    EntryCategory.MIGRATION: "migrations",
    EntryCategory.BUG: "bugs",
    EntryCategory.PATTERN: "patterns",
    EntryCategory.DECISION: "decisions",
    EntryCategory.FACT: "facts",
}


class CommitMetadata(BaseModel):
    """Immutable snapshot of one commit as seen by the history walker."""

    model_config = ConfigDict(frozen=True)

    hash: str
    short_hash: str
    author: str
    timestamp: int
    message: str
    summary: str
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0
    parent_hashes: tuple[str, ...] = ()
    changed_paths: tuple[str, ...] = ()

    @property
    def is_merge(self) -> bool:
        return len(self.parent_hashes) > 1

    @property
    def total_lines(self) -> int:
        return self.insertions + self.deletions


class EntryContext(BaseModel):
    files: list[str] = Field(default_factory=list)
    commits: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    outcome: dict[str, str] = Field(default_factory=dict)

    @field_validator("outcome", mode="before")
    @classmethod
    def stringify_outcome(cls, v: object) -> object:
        # Models emit numbers and booleans here as often as strings.
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class KnowledgeEntry(BaseModel):
    """One What/Why/How/Context record."""

    what: str
    why: str = ""
    how: str = ""
    context: EntryContext = Field(default_factory=EntryContext)

    def validate_required(self) -> list[str]:
        """Return the names of required fields that are blank."""
        return [
            name
            for name in ("what", "why", "how")
            if not getattr(self, name).strip()
        ]

    def to_document(self) -> dict:
        """Serializable form with empty context sections dropped."""
        doc: dict = {"what": self.what, "why": self.why, "how": self.how}
        context = {
            key: value
            for key, value in self.context.model_dump().items()
            if value
        }
        if context:
            doc["context"] = context
        return doc
