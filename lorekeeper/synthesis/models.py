from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from lorekeeper.models import KnowledgeEntry


class ModelOutput(BaseModel):
    backend: str
    entries: list[KnowledgeEntry] = Field(default_factory=list)


class ConflictKind(str, Enum):
    DIFFERENT_VALUES = "different_values"
    DIFFERENT_STRUCTURE = "different_structure"
    MISSING_IN_SOME = "missing_in_some"


class MajorityVote(BaseModel):
    kind: Literal["majority_vote"] = "majority_vote"
    winner: str
    score: float


class HighestWeight(BaseModel):
    kind: Literal["highest_weight"] = "highest_weight"
    source: str
    weight: float
    value: str


class Merged(BaseModel):
    kind: Literal["merged"] = "merged"


class KeepAll(BaseModel):
    kind: Literal["keep_all"] = "keep_all"


Resolution = Annotated[
    Union[MajorityVote, HighestWeight, Merged, KeepAll],
    Field(discriminator="kind"),
]


class FieldConflict(BaseModel):
    """Disagreement on one field of one merged entry.

    ``entry_index`` points at the merged entry in the engine's working list.
    """

    entry_index: int
    field: str
    kind: ConflictKind = ConflictKind.DIFFERENT_VALUES
    values: list[tuple[str, str]] = Field(default_factory=list)
    resolution: Resolution | None = None


class ParseFailure(BaseModel):
    backend: str
    details: str


class SynthesisReport(BaseModel):
    total_input_entries: int
    total_output_entries: int
    conflicts_detected: int = 0
    conflicts_resolved: int = 0
    conflicts_unresolved: int = 0
    agreement_ratio: float = 0.0
    backends_used: list[str] = Field(default_factory=list)
    parse_failures: list[ParseFailure] = Field(default_factory=list)


class SynthesisResult(BaseModel):
    entries: list[KnowledgeEntry]
    report: SynthesisReport
    conflicts: list[FieldConflict] = Field(default_factory=list)
