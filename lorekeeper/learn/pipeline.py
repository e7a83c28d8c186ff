from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from pydantic import BaseModel, Field

from lorekeeper.config import LorekeeperConfig
from lorekeeper.history.scoring import filter_significant
from lorekeeper.history.walker import WalkOptions, walk_commits
from lorekeeper.learn.prompts import (
    MAX_FILES_PER_PROMPT,
    build_commit_analysis_prompt,
    build_file_analysis_prompt,
    build_pattern_refresh_prompt,
)
from lorekeeper.learn.scanner import scan_files
from lorekeeper.learn.writer import WriteResult, slugify, write_entries
from lorekeeper.llm.base import LLMBackend
from lorekeeper.llm.parallel import AllBackendsFailedError, query_all
from lorekeeper.manifest.models import CommitCategory
from lorekeeper.manifest.store import MANIFEST_FILENAME, KnowledgeManifest
from lorekeeper.models import CommitMetadata, EntryCategory, KnowledgeEntry
from lorekeeper.synthesis.engine import SynthesisEngine
from lorekeeper.synthesis.models import ModelOutput, ParseFailure, SynthesisReport

logger = logging.getLogger(__name__)


class NotInitializedError(Exception):
    """The repository has no knowledge directory yet."""


class LearnError(Exception):
    """A learn run produced no usable data."""


class LearnSummary(BaseModel):
    mode: str
    verify: bool = False
    nothing_to_do: bool = False
    files_analyzed: int = 0
    files_deleted: int = 0
    commits_processed: int = 0
    patterns_invalidated: list[str] = Field(default_factory=list)
    entries: list[str] = Field(default_factory=list)
    written: int = 0
    updated: int = 0
    skipped: int = 0
    report: SynthesisReport | None = None
    warnings: list[str] = Field(default_factory=list)


def infer_commit_category(message: str) -> CommitCategory:
    lower = message.lower()
    if "migrat" in lower or "schema" in lower or "upgrade" in lower:
        return CommitCategory.MIGRATION
    if "fix" in lower or "bug" in lower or "patch" in lower:
        return CommitCategory.BUG
    return CommitCategory.DECISION


class LearnPipeline:
    """Scan, walk, query, synthesize, write and record one learn run.

    Everything after the backend fan-out runs sequentially; the manifest is
    saved once at the end and never in verify mode.
    """

    def __init__(
        self,
        config: LorekeeperConfig,
        backends: Sequence[LLMBackend],
        engine: SynthesisEngine | None = None,
    ) -> None:
        self._config = config
        self._backends = list(backends)
        self._engine = engine or SynthesisEngine(
            weight=config.weight_for, majority_threshold=config.majority_threshold
        )

    async def run(
        self, repo_path: str | Path, full: bool = False, verify: bool = False
    ) -> LearnSummary:
        repo_path = Path(repo_path)
        kb_path = repo_path / self._config.knowledge_dir
        if not kb_path.is_dir():
            raise NotInitializedError(
                f"{self._config.knowledge_dir}/ not found. Run 'lorekeeper init' first."
            )

        summary = LearnSummary(mode="full" if full else "incremental", verify=verify)
        manifest = KnowledgeManifest.load(kb_path / MANIFEST_FILENAME)

        scan = scan_files(repo_path, manifest, full=full, knowledge_dir=self._config.knowledge_dir)
        summary.patterns_invalidated = manifest.apply_scan(scan)
        summary.files_deleted = len(scan.deleted)
        stale_patterns = manifest.invalidated_patterns()

        commits = self._select_commits(repo_path, manifest, full)
        # Files past the prompt limit stay unrecorded and are picked up next run.
        analyzed = scan.changed[:MAX_FILES_PER_PROMPT]

        prompts: list[tuple[str, str]] = []
        if analyzed:
            prompts.append(("files", build_file_analysis_prompt(repo_path, analyzed)))
        if commits:
            prompts.append(("commits", build_commit_analysis_prompt(commits)))
        if stale_patterns:
            prompts.append(("patterns", build_pattern_refresh_prompt(repo_path, stale_patterns)))

        if not prompts:
            logger.info("Nothing to learn; knowledge base is up to date")
            summary.nothing_to_do = True
            if scan.deleted and not verify:
                manifest.save()
            return summary

        outputs, parse_failures, answered = await self._query(prompts, summary)
        if not answered:
            raise LearnError(
                "No prompt produced a usable answer: " + "; ".join(summary.warnings)
            )

        result = self._engine.synthesize(outputs, parse_failures=parse_failures)
        for failure in result.report.parse_failures:
            summary.warnings.append(f"Failed to parse {failure.backend} output: {failure.details}")
        entries = result.entries
        summary.report = result.report
        summary.entries = [e.what for e in entries]
        summary.files_analyzed = len(analyzed) if "files" in answered else 0
        summary.commits_processed = len(commits) if "commits" in answered else 0

        if verify:
            return summary

        write_result = write_entries(kb_path, entries)
        summary.written = write_result.written
        summary.updated = write_result.updated
        summary.skipped = write_result.skipped

        if "files" in answered:
            for file in analyzed:
                manifest.record_file(file.path, file.hash)
        if "commits" in answered:
            for commit in commits:
                manifest.record_commit(
                    commit.hash,
                    infer_commit_category(commit.summary),
                    _record_for_commit(commit, write_result),
                )
        self._record_patterns(manifest, write_result)
        if "patterns" in answered:
            refreshed = {slugify(e.what) for e in entries}
            for pattern in stale_patterns:
                if pattern.id not in refreshed:
                    manifest.record_pattern(pattern.id, pattern.name, pattern.contributing_files)

        manifest.save()
        return summary

    def _select_commits(
        self, repo_path: Path, manifest: KnowledgeManifest, full: bool
    ) -> list[CommitMetadata]:
        walk = walk_commits(repo_path, WalkOptions(skip_merges=self._config.skip_merges))
        pending = [c for c in walk.commits if full or not manifest.is_commit_processed(c.hash)]
        significant = filter_significant(
            pending, self._config.scoring, self._config.min_significance
        )
        logger.info(
            "%d unprocessed commits, %d significant", len(pending), len(significant)
        )
        selected = [commit for commit, _ in significant]
        if self._config.commit_limit is not None:
            selected = selected[: self._config.commit_limit]
        return selected

    async def _query(
        self, prompts: list[tuple[str, str]], summary: LearnSummary
    ) -> tuple[list[ModelOutput], list[ParseFailure], set[str]]:
        """Fan out every prompt; merge each backend's entries into one output."""
        by_backend: dict[str, list[KnowledgeEntry]] = {}
        failures: list[ParseFailure] = []
        answered: set[str] = set()

        for kind, prompt in prompts:
            try:
                fan_out = await query_all(self._backends, prompt)
            except AllBackendsFailedError as exc:
                summary.warnings.append(f"All backends failed for {kind} analysis: {exc}")
                continue

            for failure in fan_out.failures:
                summary.warnings.append(f"{failure.backend} failed for {kind} analysis: {failure.error}")

            parsed, parse_failures = self._engine.parse_responses(
                [(s.backend, s.response) for s in fan_out.successes]
            )
            failures.extend(parse_failures)
            # A prompt whose answers all failed to parse is retried next run.
            if not parsed:
                summary.warnings.append(f"No parseable answer for {kind} analysis")
                continue
            answered.add(kind)
            for output in parsed:
                by_backend.setdefault(output.backend, []).extend(output.entries)
            for success in fan_out.successes:
                by_backend.setdefault(success.backend, [])

        outputs = [ModelOutput(backend=b, entries=e) for b, e in by_backend.items()]
        return outputs, failures, answered

    def _record_patterns(self, manifest: KnowledgeManifest, write_result: WriteResult) -> None:
        for record in write_result.records:
            if record.category != EntryCategory.PATTERN:
                continue
            pattern_id = Path(record.path).stem
            manifest.record_pattern(pattern_id, record.entry.what, record.entry.context.files)


def _record_for_commit(commit: CommitMetadata, write_result: WriteResult) -> str:
    for record in write_result.records:
        refs = record.entry.context.commits
        if any(commit.hash.startswith(ref) for ref in refs if len(ref) >= 7):
            return record.path
    return ""
