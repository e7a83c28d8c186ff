"""Weighted voting over field conflicts."""

from __future__ import annotations

import logging
from typing import Callable

from lorekeeper.models import KnowledgeEntry
from lorekeeper.synthesis.models import (
    FieldConflict,
    HighestWeight,
    KeepAll,
    MajorityVote,
    Merged,
    Resolution,
)

logger = logging.getLogger(__name__)

MAJORITY_THRESHOLD = 2.0
DEFAULT_WEIGHTS: dict[str, float] = {"claude": 1.2, "gemini": 1.1, "codex": 1.0}
DEFAULT_WEIGHT = 1.0

WeightFn = Callable[[str], float]


def default_weight(backend: str) -> float:
    return DEFAULT_WEIGHTS.get(backend.lower(), DEFAULT_WEIGHT)


def resolve_conflict(
    conflict: FieldConflict,
    weight: WeightFn = default_weight,
    threshold: float = MAJORITY_THRESHOLD,
) -> Resolution:
    if not conflict.values:
        return KeepAll()

    # normalized value -> [aggregate weight, first original spelling]
    tallies: dict[str, list] = {}
    for source, value in conflict.values:
        tally = tallies.setdefault(value.strip().lower(), [0.0, value])
        tally[0] += weight(source)

    if len(tallies) == 1:
        return Merged()

    # max() keeps the first of equal scores, so ties go to the first seen value
    top_score, top_value = max(tallies.values(), key=lambda t: t[0])
    if top_score >= threshold:
        return MajorityVote(winner=top_value, score=top_score)

    best_source, best_value = conflict.values[0]
    best_weight = weight(best_source)
    for source, value in conflict.values[1:]:
        if weight(source) > best_weight:
            best_source, best_value, best_weight = source, value, weight(source)
    return HighestWeight(source=best_source, weight=best_weight, value=best_value)


def apply_resolution(entries: list[KnowledgeEntry], conflict: FieldConflict) -> None:
    """Write the winning value into the conflict's own entry."""
    resolution = conflict.resolution
    if isinstance(resolution, MajorityVote):
        value = resolution.winner
    elif isinstance(resolution, HighestWeight):
        value = resolution.value
    else:
        return

    if not 0 <= conflict.entry_index < len(entries):
        logger.warning(
            "Conflict on %s points at missing entry %d", conflict.field, conflict.entry_index
        )
        return

    entry = entries[conflict.entry_index]
    if conflict.field in ("what", "why", "how"):
        setattr(entry, conflict.field, value)
    elif conflict.field.startswith("context.outcome."):
        entry.context.outcome[conflict.field.removeprefix("context.outcome.")] = value
    else:
        logger.warning("Don't know how to apply a resolution to field %s", conflict.field)


def resolve_all(
    entries: list[KnowledgeEntry],
    conflicts: list[FieldConflict],
    weight: WeightFn = default_weight,
    threshold: float = MAJORITY_THRESHOLD,
) -> tuple[int, int]:
    """Resolve and apply every conflict in place. Returns (resolved, unresolved)."""
    resolved = 0
    unresolved = 0
    for conflict in conflicts:
        conflict.resolution = resolve_conflict(conflict, weight, threshold)
        if isinstance(conflict.resolution, KeepAll):
            unresolved += 1
            continue
        apply_resolution(entries, conflict)
        resolved += 1
        logger.debug(
            "Resolved %s on entry %d via %s",
            conflict.field, conflict.entry_index, conflict.resolution.kind,
        )
    return resolved, unresolved
