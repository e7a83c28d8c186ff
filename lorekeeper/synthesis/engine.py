from __future__ import annotations

import logging
from typing import Mapping, Sequence

from lorekeeper.models import KnowledgeEntry
from lorekeeper.synthesis.merger import group_by_category, group_by_similarity, merge_cluster
from lorekeeper.synthesis.models import (
    FieldConflict,
    ModelOutput,
    ParseFailure,
    SynthesisReport,
    SynthesisResult,
)
from lorekeeper.synthesis.parser import ParseFailedError, parse_model_response
from lorekeeper.synthesis.vote import (
    MAJORITY_THRESHOLD,
    WeightFn,
    default_weight,
    resolve_all,
)

logger = logging.getLogger(__name__)


class NoValidEntriesError(Exception):
    """No backend produced a single parseable entry."""

    def __init__(self, parse_failures: list[ParseFailure] | None = None) -> None:
        self.parse_failures = parse_failures or []
        detail = "; ".join(f"{f.backend}: {f.details}" for f in self.parse_failures)
        message = "No valid entries found across backend outputs"
        super().__init__(f"{message} ({detail})" if detail else message)


class SynthesisEngine:
    """Reconcile several backends' answers into one list of entries.

    parse -> categorize -> cluster -> merge -> vote -> normalize
    """

    def __init__(
        self,
        weight: WeightFn = default_weight,
        majority_threshold: float = MAJORITY_THRESHOLD,
    ) -> None:
        self._weight = weight
        self._threshold = majority_threshold

    def parse_responses(
        self, responses: Mapping[str, str] | Sequence[tuple[str, str]]
    ) -> tuple[list[ModelOutput], list[ParseFailure]]:
        """Parse each backend's raw text; a bad answer is recorded, not fatal."""
        pairs = responses.items() if isinstance(responses, Mapping) else responses
        outputs: list[ModelOutput] = []
        failures: list[ParseFailure] = []
        for backend, raw in pairs:
            try:
                entries = parse_model_response(backend, raw)
            except ParseFailedError as exc:
                logger.warning("Discarding %s output: %s", backend, exc.details)
                failures.append(ParseFailure(backend=backend, details=exc.details))
                continue
            logger.info("Parsed %d entries from %s", len(entries), backend)
            outputs.append(ModelOutput(backend=backend, entries=entries))
        return outputs, failures

    def synthesize_responses(
        self, responses: Mapping[str, str] | Sequence[tuple[str, str]]
    ) -> SynthesisResult:
        outputs, failures = self.parse_responses(responses)
        return self.synthesize(outputs, parse_failures=failures)

    def synthesize(
        self,
        outputs: Sequence[ModelOutput],
        parse_failures: list[ParseFailure] | None = None,
    ) -> SynthesisResult:
        parse_failures = list(parse_failures or [])
        backends_used = [o.backend for o in outputs]
        total_input = sum(len(o.entries) for o in outputs)
        if total_input == 0:
            raise NoValidEntriesError(parse_failures)

        contributing = [o for o in outputs if o.entries]
        if len(contributing) == 1:
            # One voice: nothing to reconcile, hand its entries back as given.
            only = contributing[0]
            logger.info("Single backend output from %s; skipping synthesis", only.backend)
            return SynthesisResult(
                entries=[e.model_copy(deep=True) for e in only.entries],
                report=SynthesisReport(
                    total_input_entries=total_input,
                    total_output_entries=total_input,
                    agreement_ratio=1.0,
                    backends_used=backends_used,
                    parse_failures=parse_failures,
                ),
            )

        tagged = [(o.backend, entry) for o in contributing for entry in o.entries]
        merged: list[KnowledgeEntry] = []
        conflicts: list[FieldConflict] = []
        for category, group in group_by_category(tagged).items():
            clusters = group_by_similarity(group)
            logger.debug("%s: %d candidates in %d clusters", category.value, len(group), len(clusters))
            for cluster in clusters:
                entry, entry_conflicts = merge_cluster(cluster, entry_index=len(merged))
                merged.append(entry)
                conflicts.extend(entry_conflicts)

        pending = [c for c in conflicts if c.resolution is None]
        resolved, unresolved = resolve_all(merged, pending, self._weight, self._threshold)

        final = sorted((_normalize(e) for e in merged), key=lambda e: e.what)
        report = SynthesisReport(
            total_input_entries=total_input,
            total_output_entries=len(final),
            conflicts_detected=len(pending),
            conflicts_resolved=resolved,
            conflicts_unresolved=unresolved,
            agreement_ratio=min(len(final) / total_input, 1.0),
            backends_used=backends_used,
            parse_failures=parse_failures,
        )
        logger.info(
            "Synthesized %d entries from %d candidates (%d conflicts, %d resolved)",
            report.total_output_entries, total_input, report.conflicts_detected, resolved,
        )
        return SynthesisResult(entries=final, report=report, conflicts=conflicts)


def _normalize(entry: KnowledgeEntry) -> KnowledgeEntry:
    entry.what = entry.what.strip()
    entry.why = entry.why.strip()
    entry.how = entry.how.strip()
    entry.context.files = sorted(set(entry.context.files))
    entry.context.commits = sorted(set(entry.context.commits))
    entry.context.dependencies = sorted(set(entry.context.dependencies))
    return entry
