from __future__ import annotations

import itertools
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from lorekeeper.manifest.models import CommitCategory, FileToAnalyze, ScanResult
from lorekeeper.manifest.store import (
    KnowledgeManifest,
    ManifestCorruptedError,
    ManifestError,
    ManifestMissingFieldError,
)


def _make_manifest(tmp_path: Path) -> KnowledgeManifest:
    manifest = KnowledgeManifest(tmp_path / "manifest.toml")
    manifest.record_file("src/a.py", "hash-a")
    manifest.record_file("src/b.py", "hash-b")
    manifest.record_file("src/c.py", "hash-c")
    manifest.record_pattern("error-handling", "Error handling", ["src/a.py", "src/b.py"])
    manifest.record_pattern("logging", "Logging", ["src/b.py"])
    return manifest


def _make_file(path: str, file_hash: str = "new-hash") -> FileToAnalyze:
    return FileToAnalyze(path=path, hash=file_hash, size=10, is_new=False, is_changed=True)


class TestFiles:
    def test_is_changed(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        assert manifest.is_changed("src/a.py", "hash-a") is False
        assert manifest.is_changed("src/a.py", "other") is True
        assert manifest.is_changed("src/unknown.py", "hash-a") is True

    def test_record_updates_hash_and_keeps_links(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.record_file("src/a.py", "hash-a2")
        assert manifest.file_hash("src/a.py") == "hash-a2"
        assert manifest.patterns_for_file("src/a.py") == ["error-handling"]

    def test_record_with_pattern_ids_links(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.record_file("src/c.py", "hash-c", pattern_ids=["logging"])
        assert "src/c.py" in manifest.patterns["logging"].contributing_files
        assert manifest.patterns_for_file("src/c.py") == ["logging"]

    def test_remove_file(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        assert manifest.remove_file("src/a.py") is True
        assert manifest.file_hash("src/a.py") is None
        assert manifest.remove_file("src/a.py") is False

    def test_returning_file_restores_links(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.remove_file("src/a.py")
        manifest.record_file("src/a.py", "hash-a")
        assert manifest.patterns_for_file("src/a.py") == ["error-handling"]


class TestPatternLinks:
    def test_links_are_bidirectional(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        assert manifest.patterns["error-handling"].contributing_files == ["src/a.py", "src/b.py"]
        assert manifest.patterns_for_file("src/b.py") == ["error-handling", "logging"]

    def test_link_is_idempotent(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.link_pattern("logging", "src/b.py")
        manifest.link_pattern("logging", "src/b.py")
        assert manifest.patterns["logging"].contributing_files == ["src/b.py"]
        assert manifest.patterns_for_file("src/b.py").count("logging") == 1

    def test_link_unknown_side_raises(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        with pytest.raises(ManifestError):
            manifest.link_pattern("missing", "src/a.py")
        with pytest.raises(ManifestError):
            manifest.link_pattern("logging", "src/missing.py")

    def test_unlink_removes_both_sides(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.unlink_pattern("error-handling", "src/a.py")
        assert manifest.patterns["error-handling"].contributing_files == ["src/b.py"]
        assert manifest.patterns_for_file("src/a.py") == []

    def test_record_pattern_replaces_files(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.record_pattern("error-handling", "Error handling v2", ["src/c.py"])
        assert manifest.patterns["error-handling"].contributing_files == ["src/c.py"]
        assert manifest.patterns_for_file("src/a.py") == []
        assert manifest.patterns_for_file("src/c.py") == ["error-handling"]

    def test_record_pattern_skips_untracked(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        pattern = manifest.record_pattern("testing", "Testing", ["src/a.py", "tests/gone.py"])
        assert pattern.contributing_files == ["src/a.py"]


class TestInvalidation:
    @pytest.mark.parametrize("changed", list(itertools.permutations(["src/a.py", "src/b.py", "src/c.py"])))
    @pytest.mark.parametrize("deleted", [[], ["src/b.py"], ["src/b.py", "src/a.py"], ["src/a.py", "src/b.py"]])
    def test_find_is_sorted_and_unique(
        self, tmp_path: Path, changed: tuple[str, ...], deleted: list[str]
    ) -> None:
        manifest = _make_manifest(tmp_path)
        ids = manifest.find_invalidated_patterns(list(changed), deleted)
        assert ids == ["error-handling", "logging"]

    def test_unlinked_file_invalidates_nothing(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        assert manifest.find_invalidated_patterns(["src/c.py"], []) == []

    def test_invalidate_bumps_timestamp_and_keeps_links(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        before = manifest.patterns["logging"].last_updated
        time.sleep(0.01)
        assert manifest.invalidate_pattern("logging") is True
        pattern = manifest.patterns["logging"]
        assert pattern.invalidated is True
        assert pattern.last_updated > before
        assert pattern.contributing_files == ["src/b.py"]
        assert manifest.invalidate_pattern("missing") is False

    def test_record_pattern_clears_invalidated(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.invalidate_pattern("logging")
        manifest.record_pattern("logging", "Logging", ["src/b.py"])
        assert manifest.invalidated_patterns() == []

    def test_apply_scan(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        scan = ScanResult(changed=[_make_file("src/a.py")], deleted=["src/b.py"], total=2)
        invalidated = manifest.apply_scan(scan)

        assert invalidated == ["error-handling", "logging"]
        assert [p.id for p in manifest.invalidated_patterns()] == invalidated
        assert manifest.file_hash("src/b.py") is None
        # changed files are recorded by the caller once analyzed
        assert manifest.file_hash("src/a.py") == "hash-a"
        # deleted files stay listed until the pattern is re-derived
        assert "src/b.py" in manifest.patterns["logging"].contributing_files


class TestCommits:
    def test_record_is_idempotent(self, tmp_path: Path) -> None:
        manifest = KnowledgeManifest(tmp_path / "manifest.toml")
        first = manifest.record_commit("a" * 40, CommitCategory.DECISION, "decisions/x.toml")
        again = manifest.record_commit("a" * 40, CommitCategory.BUG)
        assert again is first
        assert manifest.is_commit_processed("a" * 40)
        assert not manifest.is_commit_processed("b" * 40)

    def test_commits_since(self, tmp_path: Path) -> None:
        manifest = KnowledgeManifest(tmp_path / "manifest.toml")
        for sha in ("1", "2", "3"):
            manifest.record_commit(sha * 40, CommitCategory.DECISION)
            time.sleep(0.01)
        later = manifest.commits_since("1" * 40)
        assert [c.sha for c in later] == ["2" * 40, "3" * 40]
        assert manifest.commits_since("9" * 40) == []


class TestStats:
    def test_stats(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.record_commit("a" * 40, CommitCategory.MIGRATION)
        manifest.invalidate_pattern("logging")
        stats = manifest.stats()
        assert stats.files_scanned == 3
        assert stats.commits_processed == 1
        assert stats.patterns_extracted == 2
        assert stats.patterns_invalidated == 1
        assert stats.last_scan is not None

    def test_empty_stats(self, tmp_path: Path) -> None:
        stats = KnowledgeManifest(tmp_path / "manifest.toml").stats()
        assert stats.files_scanned == 0
        assert stats.last_scan is None


class TestPersistence:
    def test_round_trip(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        manifest.record_commit("a" * 40, CommitCategory.BUG, "bugs/fix.toml")
        manifest.invalidate_pattern("logging")
        path = manifest.save()

        loaded = KnowledgeManifest.load(path)
        assert loaded.files == manifest.files
        assert loaded.commits == manifest.commits
        assert loaded.patterns == manifest.patterns
        assert loaded.patterns_for_file("src/b.py") == ["error-handling", "logging"]

    def test_save_is_readable_toml(self, tmp_path: Path) -> None:
        import tomllib

        path = _make_manifest(tmp_path).save()
        data = tomllib.loads(path.read_text(encoding="utf-8"))
        assert data["files"]["src/a.py"]["hash"] == "hash-a"
        assert "path" not in data["files"]["src/a.py"]
        assert data["patterns"]["logging"]["contributing_files"] == ["src/b.py"]
        assert not path.with_name(path.name + ".tmp").exists()
        assert not path.with_name(path.name + ".lock").exists()

    def test_failed_replace_keeps_previous_manifest(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        path = manifest.save()
        manifest.record_file("src/d.py", "hash-d")
        manifest.remove_file("src/a.py")

        with patch("lorekeeper.utils.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                manifest.save()

        loaded = KnowledgeManifest.load(path)
        assert sorted(loaded.files) == ["src/a.py", "src/b.py", "src/c.py"]
        assert loaded.patterns_for_file("src/a.py") == ["error-handling"]
        assert not path.with_name(path.name + ".tmp").exists()
        assert not path.with_name(path.name + ".lock").exists()

    def test_failed_serialization_leaves_file_untouched(self, tmp_path: Path) -> None:
        manifest = _make_manifest(tmp_path)
        path = manifest.save()
        before = path.read_bytes()
        manifest.record_commit("b" * 40, CommitCategory.DECISION)

        with patch("lorekeeper.manifest.store.tomli_w.dumps", side_effect=TypeError("bad value")):
            with pytest.raises(TypeError):
                manifest.save()

        assert path.read_bytes() == before
        assert KnowledgeManifest.load(path).commits == {}

    def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        manifest = KnowledgeManifest.load(tmp_path / "missing.toml")
        assert manifest.files == {}
        assert manifest.path == tmp_path / "missing.toml"

    def test_corrupted(self, tmp_path: Path) -> None:
        path = tmp_path / "manifest.toml"
        path.write_text("[files\nbroken = ", encoding="utf-8")
        with pytest.raises(ManifestCorruptedError):
            KnowledgeManifest.load(path)

    def test_wrong_shape(self, tmp_path: Path) -> None:
        path = tmp_path / "manifest.toml"
        path.write_text('files = "nope"\n', encoding="utf-8")
        with pytest.raises(ManifestCorruptedError):
            KnowledgeManifest.load(path)

    def test_missing_field(self, tmp_path: Path) -> None:
        path = tmp_path / "manifest.toml"
        path.write_text(
            '[files."src/a.py"]\nlast_scanned = "2026-01-01T00:00:00Z"\n', encoding="utf-8"
        )
        with pytest.raises(ManifestMissingFieldError, match="hash"):
            KnowledgeManifest.load(path)

    def test_save_without_path_raises(self) -> None:
        with pytest.raises(ManifestError):
            KnowledgeManifest().save()
