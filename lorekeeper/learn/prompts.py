"""Prompt text sent to the backends.

Every prompt asks for TOML ``[[entry]]`` blocks so the synthesis parser can
read the answers.
"""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from lorekeeper.manifest.models import FileToAnalyze, ManifestPatternEntry
from lorekeeper.models import CommitMetadata

MAX_LINES_PER_FILE = 200
MAX_FILES_PER_PROMPT = 50

_FORMAT_INSTRUCTIONS = """Output your findings as TOML entries using this exact format:

```
[[entry]]
what = "one-sentence description of the finding"
why = "reasoning and motivation"
how = "how it is implemented, key files, and relevant details"

[entry.context]
{context_example}
```

Include multiple [[entry]] blocks.
"""

_FILE_INTRO = (
    "Analyze the following source files from a codebase. Identify architectural "
    "patterns, coding conventions, error handling approaches, testing strategies, "
    "and notable design decisions.\n\n"
)

_COMMIT_INTRO = (
    "Analyze the following git commits from a codebase. Identify architectural "
    "decisions, migrations, notable bug fixes, and significant refactoring efforts. "
    "Skip trivial commits.\n\n"
)

_PATTERN_INTRO = (
    "The following previously extracted patterns may be stale because files they "
    "were derived from changed or were deleted. Re-assess each pattern against the "
    "current contents of its files and restate the ones that still hold.\n\n"
)


def _format_instructions(context_example: str) -> str:
    return _FORMAT_INSTRUCTIONS.format(context_example=context_example)


def _render_file(repo_path: Path, rel_path: str, size: int) -> str:
    header = f"=== {rel_path} ({size} bytes) ===\n"
    try:
        contents = (repo_path / rel_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return header + "(unable to read file)\n\n"

    lines = contents.splitlines()
    body = "\n".join(lines[:MAX_LINES_PER_FILE])
    if len(lines) > MAX_LINES_PER_FILE:
        body += f"\n... ({len(lines) - MAX_LINES_PER_FILE} more lines truncated)\n"
    return header + body + "\n\n"


def build_file_analysis_prompt(repo_path: str | Path, files: Sequence[FileToAnalyze]) -> str:
    root = Path(repo_path)
    parts = [
        _FILE_INTRO,
        _format_instructions('files = ["path/to/file.py"]\ndependencies = ["package-name"]'),
        "\n--- FILES ---\n\n",
    ]
    for file in files[:MAX_FILES_PER_PROMPT]:
        parts.append(_render_file(root, file.path, file.size))
    if len(files) > MAX_FILES_PER_PROMPT:
        parts.append(f"({len(files) - MAX_FILES_PER_PROMPT} more files not shown)\n")
    return "".join(parts)


def build_commit_analysis_prompt(commits: Sequence[CommitMetadata]) -> str:
    parts = [
        _COMMIT_INTRO,
        _format_instructions('commits = ["abc1234"]\nfiles = ["affected/file.py"]'),
        "\n--- COMMITS ---\n\n",
    ]
    for commit in commits:
        parts.append(
            f"commit {commit.short_hash} ({commit.author})\n"
            f"  {commit.summary}\n"
            f"  {commit.files_changed} files changed, +{commit.insertions} -{commit.deletions}\n\n"
        )
    return "".join(parts)


def build_pattern_refresh_prompt(
    repo_path: str | Path, patterns: Sequence[ManifestPatternEntry]
) -> str:
    root = Path(repo_path)
    parts = [
        _PATTERN_INTRO,
        _format_instructions('files = ["path/to/file.py"]'),
        "\n--- PATTERNS ---\n\n",
    ]
    shown = 0
    for pattern in patterns:
        parts.append(f"pattern {pattern.id}: {pattern.name}\n")
        for rel_path in pattern.contributing_files:
            if shown >= MAX_FILES_PER_PROMPT:
                parts.append("(file limit reached)\n")
                break
            full_path = root / rel_path
            if full_path.is_file():
                parts.append(_render_file(root, rel_path, full_path.stat().st_size))
                shown += 1
            else:
                parts.append(f"=== {rel_path} (deleted) ===\n\n")
        parts.append("\n")
    return "".join(parts)
