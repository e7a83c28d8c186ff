"""Chronological, resumable traversal of a repository's commit history."""

from __future__ import annotations

import logging
from pathlib import Path

from git import Commit, Repo
from git.exc import (
    BadName,
    BadObject,
    GitCommandError,
    InvalidGitRepositoryError,
    NoSuchPathError,
)
from pydantic import BaseModel, Field

from lorekeeper.models import CommitMetadata

logger = logging.getLogger(__name__)

SHORT_HASH_LENGTH = 7
_FALLBACK_BRANCHES = ("main", "master")


class RepositoryAccessError(Exception):
    """Raised when the path is missing or is not a git repository."""


class CommitLookupError(Exception):
    """Raised when a commit cannot be resolved or read during a walk."""


class WalkOptions(BaseModel):
    """Filters for one walk; ``since`` is an inclusive continuation hash."""

    skip_merges: bool = False
    since: str | None = None
    limit: int | None = None
    paths: list[str] | None = None


class WalkResult(BaseModel):
    commits: list[CommitMetadata] = Field(default_factory=list)
    next_hash: str | None = None


def open_repository(repo_path: str | Path) -> Repo:
    try:
        return Repo(str(repo_path))
    except (InvalidGitRepositoryError, NoSuchPathError) as exc:
        raise RepositoryAccessError(f"Not a git repository: {repo_path}") from exc


def walk_commits(repo_path: str | Path, options: WalkOptions | None = None) -> WalkResult:
    """Walk commits oldest first.

    When ``options.limit`` cuts the walk short, ``next_hash`` names the first
    commit that was not returned; passing it back as ``options.since``
    resumes exactly there.
    """
    options = options or WalkOptions()
    repo = open_repository(repo_path)
    try:
        return _walk(repo, options)
    finally:
        repo.close()


def _walk(repo: Repo, options: WalkOptions) -> WalkResult:
    tip = _resolve_tip(repo)
    if tip is None:
        logger.info("Repository has no branches yet; nothing to walk")
        return WalkResult()

    hashes = _rev_list(repo, tip, options.paths)

    if options.since:
        since = _resolve_commit_hash(repo, options.since)
        try:
            start = hashes.index(since)
        except ValueError:
            raise CommitLookupError(
                f"Commit {options.since} is not part of the history reachable from {tip}"
            ) from None
        hashes = hashes[start:]

    result = WalkResult()
    for hexsha in hashes:
        if options.limit is not None and len(result.commits) >= options.limit:
            result.next_hash = hexsha
            break

        commit = _load_commit(repo, hexsha)
        if options.skip_merges and len(commit.parents) > 1:
            logger.debug("Skipping merge commit %s", hexsha[:SHORT_HASH_LENGTH])
            continue
        result.commits.append(_extract_metadata(commit))

    logger.debug(
        "Walked %d commits from %s (next=%s)",
        len(result.commits), tip, result.next_hash,
    )
    return result


def _resolve_tip(repo: Repo) -> str | None:
    """Current HEAD commit, else a conventional primary branch, else None."""
    if repo.head.is_valid():
        return repo.head.commit.hexsha
    branch_names = {head.name for head in repo.heads}
    for name in _FALLBACK_BRANCHES:
        if name in branch_names:
            return repo.heads[name].commit.hexsha
    return None


def _rev_list(repo: Repo, tip: str, paths: list[str] | None) -> list[str]:
    args = [tip]
    if paths:
        args.append("--")
        args.extend(paths)
    try:
        output = repo.git.rev_list(*args, topo_order=True, reverse=True)
    except GitCommandError as exc:
        raise CommitLookupError(f"Could not list history from {tip}: {exc}") from exc
    return [line.strip() for line in output.splitlines() if line.strip()]


def _resolve_commit_hash(repo: Repo, rev: str) -> str:
    try:
        return repo.commit(rev).hexsha
    except (BadName, BadObject, ValueError, GitCommandError) as exc:
        raise CommitLookupError(f"Unknown commit: {rev}") from exc


def _load_commit(repo: Repo, hexsha: str) -> Commit:
    try:
        commit = repo.commit(hexsha)
    except (BadName, BadObject, ValueError, GitCommandError) as exc:
        raise CommitLookupError(f"Commit {hexsha} disappeared during the walk") from exc
    return commit


def _extract_metadata(commit: Commit) -> CommitMetadata:
    message = commit.message
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    lines = message.splitlines()
    files_changed, insertions, deletions, paths = _diff_stats(commit)
    author_name = commit.author.name or "Unknown"
    author_email = commit.author.email or "unknown@example.com"
    return CommitMetadata(
        hash=commit.hexsha,
        short_hash=commit.hexsha[:SHORT_HASH_LENGTH],
        author=f"{author_name} <{author_email}>",
        timestamp=int(commit.authored_date),
        message=message,
        summary=lines[0] if lines else "",
        files_changed=files_changed,
        insertions=insertions,
        deletions=deletions,
        parent_hashes=tuple(parent.hexsha for parent in commit.parents),
        changed_paths=paths,
    )


def _diff_stats(commit: Commit) -> tuple[int, int, int, tuple[str, ...]]:
    """Stats against the first parent, or against the empty tree for roots.

    Any git failure degrades to zeros instead of aborting the walk.
    """
    try:
        stats = commit.stats
    except (GitCommandError, ValueError) as exc:
        logger.debug("Diff stats unavailable for %s: %s", commit.hexsha[:SHORT_HASH_LENGTH], exc)
        return 0, 0, 0, ()
    total = stats.total
    return (
        int(total.get("files", 0)),
        int(total.get("insertions", 0)),
        int(total.get("deletions", 0)),
        tuple(str(path) for path in stats.files),
    )
