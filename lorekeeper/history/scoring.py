"""Heuristic significance scoring for commits.

significance = diff_weight * diff + pattern_weight * pattern + message_weight * message

Every sub-score lies in [0, 1]. The scorer only looks at the
``CommitMetadata`` it is given, so the same commit and configuration always
produce the same score.
"""

from __future__ import annotations

import logging
from typing import Annotated, Iterable, Literal, Union

from pydantic import BaseModel, Field

from lorekeeper.config import ScoringConfig
from lorekeeper.models import CommitMetadata, ScoreCategory

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5
TRIVIAL_DOC_RATIO = 0.8

# (max total changed lines, score), checked in order
_DIFF_TIERS: tuple[tuple[int, float], ...] = (
    (10, 0.1),
    (50, 0.3),
    (200, 0.5),
    (500, 0.7),
)
_LARGE_DIFF_SCORE = 1.0

# (lower bound, category), checked in order
_CATEGORY_THRESHOLDS: tuple[tuple[float, ScoreCategory], ...] = (
    (0.8, ScoreCategory.CRITICAL),
    (0.6, ScoreCategory.HIGH),
    (0.4, ScoreCategory.MEDIUM),
    (0.2, ScoreCategory.LOW),
)


class DiffSizeFactor(BaseModel):
    kind: Literal["diff_size"] = "diff_size"
    lines: int
    trivial: bool = False
    score: float


class FilePatternFactor(BaseModel):
    kind: Literal["file_pattern"] = "file_pattern"
    pattern: str
    score: float


class MessageKeywordFactor(BaseModel):
    kind: Literal["message_keyword"] = "message_keyword"
    keyword: str
    score: float


ScoreFactor = Annotated[
    Union[DiffSizeFactor, FilePatternFactor, MessageKeywordFactor],
    Field(discriminator="kind"),
]


class CommitScore(BaseModel):
    significance: float
    category: ScoreCategory
    factors: list[ScoreFactor] = Field(default_factory=list)

    def describe(self) -> str:
        """Short human-readable summary of the strongest factor."""
        if not self.factors:
            return "no signals"
        top = max(self.factors, key=lambda f: f.score)
        if isinstance(top, FilePatternFactor):
            return f"path '{top.pattern}'"
        if isinstance(top, MessageKeywordFactor):
            return f"keyword '{top.keyword}'"
        return f"{top.lines} lines changed"


def category_for(significance: float) -> ScoreCategory:
    for threshold, category in _CATEGORY_THRESHOLDS:
        if significance >= threshold:
            return category
    return ScoreCategory.TRIVIAL


def score_commit(commit: CommitMetadata, config: ScoringConfig | None = None) -> CommitScore:
    config = config or ScoringConfig()
    factors: list[ScoreFactor] = []

    diff_score = _score_diff_size(commit, config, factors)
    pattern_score = _score_file_patterns(commit, config, factors)
    message_score = _score_message(commit, config, factors)

    significance = (
        config.diff_weight * diff_score
        + config.pattern_weight * pattern_score
        + config.message_weight * message_score
    )
    significance = min(max(significance, 0.0), 1.0)
    return CommitScore(
        significance=significance,
        category=category_for(significance),
        factors=factors,
    )


def filter_significant(
    commits: Iterable[CommitMetadata],
    config: ScoringConfig | None = None,
    minimum: ScoreCategory = ScoreCategory.MEDIUM,
) -> list[tuple[CommitMetadata, CommitScore]]:
    """Score commits and keep those at or above ``minimum``, preserving order."""
    kept: list[tuple[CommitMetadata, CommitScore]] = []
    for commit in commits:
        score = score_commit(commit, config)
        if score.category.at_least(minimum):
            kept.append((commit, score))
        else:
            logger.debug(
                "Skipping %s (%s, %.2f)", commit.short_hash, score.category.value, score.significance
            )
    return kept


def _has_single_parent(commit: CommitMetadata) -> bool:
    return len(commit.parent_hashes) == 1


def _score_diff_size(
    commit: CommitMetadata, config: ScoringConfig, factors: list[ScoreFactor]
) -> float:
    # Root and merge commits are not diffed against a single parent.
    if not _has_single_parent(commit):
        factors.append(DiffSizeFactor(lines=commit.total_lines, score=NEUTRAL_SCORE))
        return NEUTRAL_SCORE

    lines = commit.total_lines
    score = _LARGE_DIFF_SCORE
    for max_lines, tier_score in _DIFF_TIERS:
        if lines <= max_lines:
            score = tier_score
            break

    trivial = _is_trivial_diff(commit, config)
    if trivial:
        score *= 0.5
    factors.append(DiffSizeFactor(lines=lines, trivial=trivial, score=score))
    return score


def _is_trivial_diff(commit: CommitMetadata, config: ScoringConfig) -> bool:
    if commit.total_lines <= 1:
        return True
    paths = commit.changed_paths
    if not paths:
        return False
    extensions = tuple(ext.lower() for ext in config.doc_extensions)
    doc_files = sum(1 for path in paths if path.lower().endswith(extensions))
    return doc_files / len(paths) > TRIVIAL_DOC_RATIO


def _score_file_patterns(
    commit: CommitMetadata, config: ScoringConfig, factors: list[ScoreFactor]
) -> float:
    if not _has_single_parent(commit):
        return NEUTRAL_SCORE

    best_score = 0.0
    best_pattern = ""
    for path in commit.changed_paths:
        for pattern, weight in config.file_patterns.items():
            if pattern in path and weight > best_score:
                best_score = weight
                best_pattern = pattern

    if best_score > 0.0:
        factors.append(FilePatternFactor(pattern=best_pattern, score=best_score))
    return best_score


def _score_message(
    commit: CommitMetadata, config: ScoringConfig, factors: list[ScoreFactor]
) -> float:
    message = commit.message.lower()
    best_score = 0.0
    best_keyword = ""
    for keyword, weight in config.message_keywords.items():
        if keyword.lower() in message and weight > best_score:
            best_score = weight
            best_keyword = keyword

    if best_score > 0.0:
        factors.append(MessageKeywordFactor(keyword=best_keyword, score=best_score))
    return best_score
