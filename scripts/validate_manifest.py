#!/usr/bin/env python3
"""Validate a knowledge manifest for file <-> pattern index consistency."""

import sys
from pathlib import Path

from lorekeeper.manifest.store import KnowledgeManifest, ManifestError


def validate(manifest_path: str) -> tuple[list[str], list[str]]:
    """Return (errors, warnings) for the manifest (no errors = passed)."""
    errors: list[str] = []
    warnings: list[str] = []
    path = Path(manifest_path)

    if not path.exists():
        return [f"File not found: {manifest_path}"], warnings

    try:
        manifest = KnowledgeManifest.load(path)
    except ManifestError as e:
        return [str(e)], warnings

    # File side: every link must point at a known pattern that links back
    for file_path, entry in manifest.files.items():
        if len(set(entry.pattern_ids)) != len(entry.pattern_ids):
            errors.append(f"File {file_path}: duplicate pattern ids")
        for pattern_id in entry.pattern_ids:
            pattern = manifest.patterns.get(pattern_id)
            if pattern is None:
                errors.append(f"File {file_path}: links unknown pattern {pattern_id}")
            elif file_path not in pattern.contributing_files:
                errors.append(
                    f"File {file_path}: links pattern {pattern_id} but pattern does not list it"
                )

    # Pattern side
    for pattern_id, pattern in manifest.patterns.items():
        if len(set(pattern.contributing_files)) != len(pattern.contributing_files):
            errors.append(f"Pattern {pattern_id}: duplicate contributing files")
        for file_path in pattern.contributing_files:
            entry = manifest.files.get(file_path)
            if entry is None:
                # Deleted files stay listed until the pattern is re-derived
                warnings.append(f"Pattern {pattern_id}: lists untracked file {file_path}")
            elif pattern_id not in entry.pattern_ids:
                errors.append(
                    f"Pattern {pattern_id}: lists {file_path} but file does not link it"
                )

    for sha, commit in manifest.commits.items():
        if len(sha) != 40:
            errors.append(f"Commit {sha}: not a full 40-character hash")
        if commit.record_path and not (path.parent / commit.record_path).exists():
            warnings.append(f"Commit {sha[:7]}: record {commit.record_path} not found")

    return errors, warnings


def main() -> None:
    path = sys.argv[1] if len(sys.argv) > 1 else ".lorekeeper/manifest.toml"
    errors, warnings = validate(path)

    for w in warnings:
        print(f"  warning: {w}")
    if errors:
        print(f"VALIDATION FAILED ({len(errors)} errors):")
        for e in errors:
            print(f"  - {e}")
        sys.exit(1)
    else:
        print("VALIDATION PASSED")


if __name__ == "__main__":
    main()
