from __future__ import annotations

import logging
from pathlib import Path

from lorekeeper.manifest.store import MANIFEST_FILENAME, KnowledgeManifest
from lorekeeper.models import EntryCategory

logger = logging.getLogger(__name__)


class AlreadyInitializedError(Exception):
    """The knowledge directory exists already."""


def initialize_knowledge_dir(root: str | Path, knowledge_dir: str = ".lorekeeper") -> list[str]:
    """Create the knowledge directory layout and ignore it in git.

    Returns a list of human-readable actions taken.
    """
    root = Path(root)
    kb_path = root / knowledge_dir
    if kb_path.exists():
        raise AlreadyInitializedError(
            f"{knowledge_dir}/ already exists. Remove it first to reinitialize."
        )

    actions: list[str] = []
    kb_path.mkdir(parents=True)
    actions.append(f"Created {knowledge_dir}/")
    for category in EntryCategory:
        (kb_path / category.dirname).mkdir()
        actions.append(f"Created {knowledge_dir}/{category.dirname}/")

    KnowledgeManifest(kb_path / MANIFEST_FILENAME).save()
    actions.append(f"Created {knowledge_dir}/{MANIFEST_FILENAME}")

    ignore_line = f"{knowledge_dir}/"
    gitignore = root / ".gitignore"
    if gitignore.exists():
        content = gitignore.read_text(encoding="utf-8")
        if not any(line.strip() == ignore_line for line in content.splitlines()):
            if content and not content.endswith("\n"):
                content += "\n"
            gitignore.write_text(content + ignore_line + "\n", encoding="utf-8")
            actions.append(f"Added {ignore_line} to .gitignore")
    else:
        gitignore.write_text(ignore_line + "\n", encoding="utf-8")
        actions.append(f"Created .gitignore with {ignore_line}")

    for action in actions:
        logger.debug(action)
    return actions
