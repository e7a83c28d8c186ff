from __future__ import annotations

import logging

from lorekeeper.models import EntryCategory, EntryContext, KnowledgeEntry
from lorekeeper.synthesis.models import ConflictKind, FieldConflict

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 3

# Checked in order; first family with a match wins.
CATEGORY_KEYWORDS: tuple[tuple[EntryCategory, tuple[str, ...]], ...] = (
    (EntryCategory.MIGRATION, ("migrat", "upgrade", "schema")),
    (EntryCategory.BUG, ("bug", "fix", "patch")),
    (EntryCategory.PATTERN, ("pattern", "convention", "standard")),
    (EntryCategory.DECISION, ("decid", "chose", "adopt", "decision")),
)

Tagged = tuple[str, KnowledgeEntry]


def infer_category(entry: KnowledgeEntry) -> EntryCategory:
    combined = f"{entry.what} {entry.why} {entry.how}".lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in combined for keyword in keywords):
            return category
    return EntryCategory.FACT


def group_by_category(tagged: list[Tagged]) -> dict[EntryCategory, list[Tagged]]:
    """Bucket candidates by category; keys follow ``EntryCategory`` order."""
    groups: dict[EntryCategory, list[Tagged]] = {category: [] for category in EntryCategory}
    for item in tagged:
        groups[infer_category(item[1])].append(item)
    return {category: items for category, items in groups.items() if items}


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance between two strings."""
    if a == b:
        return 0
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(
                min(
                    previous[j] + 1,
                    current[j - 1] + 1,
                    previous[j - 1] + (ca != cb),
                )
            )
        previous = current
    return previous[-1]


def group_by_similarity(tagged: list[Tagged]) -> list[list[Tagged]]:
    """Greedy clustering on lowercased ``what``.

    Each candidate is compared with the first member of each existing
    cluster, in creation order, and joins the first one within the
    threshold. The result depends on input order.
    """
    clusters: list[list[Tagged]] = []
    for item in tagged:
        what = item[1].what.lower()
        for cluster in clusters:
            if edit_distance(what, cluster[0][1].what.lower()) < SIMILARITY_THRESHOLD:
                cluster.append(item)
                break
        else:
            clusters.append([item])
    return clusters


def merge_cluster(
    cluster: list[Tagged], entry_index: int
) -> tuple[KnowledgeEntry, list[FieldConflict]]:
    """Merge a cluster into one entry, reporting conflicts against ``entry_index``."""
    if len(cluster) == 1:
        return cluster[0][1].model_copy(deep=True), []

    conflicts: list[FieldConflict] = []
    merged = KnowledgeEntry(
        what=_merge_what(cluster, entry_index, conflicts),
        why=_merge_why(cluster),
        how=_merge_how(cluster),
        context=_merge_context(cluster, entry_index, conflicts),
    )
    return merged, conflicts


def _merge_what(
    cluster: list[Tagged], entry_index: int, conflicts: list[FieldConflict]
) -> str:
    sources_by_value: dict[str, list[str]] = {}
    for backend, entry in cluster:
        sources_by_value.setdefault(entry.what.strip(), []).append(backend)

    if len(sources_by_value) > 1:
        conflicts.append(
            FieldConflict(
                entry_index=entry_index,
                field="what",
                kind=ConflictKind.DIFFERENT_VALUES,
                values=[(backend, entry.what.strip()) for backend, entry in cluster],
            )
        )

    # sorted() is stable, so equal lengths keep first-seen order
    shared = [value for value, sources in sources_by_value.items() if len(sources) >= 2]
    if shared:
        return sorted(shared, key=len)[0]
    return sorted(sources_by_value, key=len)[0]


def _split_sentences(text: str) -> list[str]:
    return [part.strip() for part in text.split(".") if part.strip()]


def _merge_why(cluster: list[Tagged]) -> str:
    sentences: dict[str, None] = {}
    for _, entry in cluster:
        for sentence in _split_sentences(entry.why):
            sentences.setdefault(sentence, None)
    return ". ".join(sentences)


def _merge_how(cluster: list[Tagged]) -> str:
    steps: dict[str, None] = {}
    for _, entry in cluster:
        for line in entry.how.splitlines():
            step = line.strip()
            if step:
                steps.setdefault(step, None)
    return "\n".join(steps)


def _merge_context(
    cluster: list[Tagged], entry_index: int, conflicts: list[FieldConflict]
) -> EntryContext:
    files: set[str] = set()
    commits: set[str] = set()
    dependencies: set[str] = set()
    outcomes: dict[str, list[tuple[str, str]]] = {}

    for backend, entry in cluster:
        files.update(entry.context.files)
        commits.update(entry.context.commits)
        dependencies.update(entry.context.dependencies)
        for key, value in entry.context.outcome.items():
            outcomes.setdefault(key, []).append((backend, value))

    merged_outcome: dict[str, str] = {}
    for key, pairs in outcomes.items():
        distinct = {value for _, value in pairs}
        if len(distinct) > 1:
            conflicts.append(
                FieldConflict(
                    entry_index=entry_index,
                    field=f"context.outcome.{key}",
                    kind=ConflictKind.DIFFERENT_VALUES,
                    values=list(pairs),
                )
            )
        # First-seen value stands in until the vote resolves the conflict.
        merged_outcome[key] = pairs[0][1]

    return EntryContext(
        files=sorted(files),
        commits=sorted(commits),
        dependencies=sorted(dependencies),
        outcome=merged_outcome,
    )
