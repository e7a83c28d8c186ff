from __future__ import annotations

import logging
from pathlib import Path

from git.exc import GitCommandError

from lorekeeper.history.walker import RepositoryAccessError, open_repository
from lorekeeper.manifest.models import FileToAnalyze, ScanResult
from lorekeeper.manifest.store import KnowledgeManifest
from lorekeeper.utils import is_binary_file, sha256_file

logger = logging.getLogger(__name__)


def list_repository_files(repo_path: str | Path, exclude_dirs: tuple[str, ...] = ()) -> list[str]:
    """Tracked and untracked files that git does not ignore, sorted."""
    repo = open_repository(repo_path)
    try:
        output = repo.git.ls_files("--cached", "--others", "--exclude-standard", z=True)
    except GitCommandError as exc:
        raise RepositoryAccessError(f"Could not list files in {repo_path}: {exc}") from exc
    finally:
        repo.close()

    prefixes = tuple(d.rstrip("/") + "/" for d in exclude_dirs)
    paths = {p for p in output.split("\0") if p and not p.startswith(prefixes)}
    return sorted(paths)


def scan_files(
    repo_path: str | Path,
    manifest: KnowledgeManifest,
    full: bool = False,
    knowledge_dir: str = ".lorekeeper",
) -> ScanResult:
    """Find files needing analysis and tracked files that are gone.

    Binary files (a NUL in the first 512 bytes) are skipped. In ``full`` mode
    every file is returned, changed or not.
    """
    root = Path(repo_path)
    result = ScanResult()
    present: set[str] = set()

    for rel_path in list_repository_files(root, exclude_dirs=(knowledge_dir,)):
        full_path = root / rel_path
        if not full_path.is_file():
            continue  # staged but deleted from the working tree
        if is_binary_file(full_path):
            logger.debug("Skipping binary file %s", rel_path)
            continue

        present.add(rel_path)
        result.total += 1
        try:
            digest = sha256_file(full_path)
            size = full_path.stat().st_size
        except OSError as exc:
            logger.warning("Could not hash %s: %s", rel_path, exc)
            continue

        is_new = manifest.file_hash(rel_path) is None
        is_changed = not is_new and manifest.is_changed(rel_path, digest)
        if full or is_new or is_changed:
            result.changed.append(
                FileToAnalyze(
                    path=rel_path, hash=digest, size=size, is_new=is_new, is_changed=is_changed
                )
            )
        else:
            result.unchanged += 1

    result.deleted = sorted(path for path in manifest.files if path not in present)
    logger.info(
        "Scanned %d files (%d to analyze, %d unchanged, %d deleted)",
        result.total, len(result.changed), result.unchanged, len(result.deleted),
    )
    return result
