from __future__ import annotations

import asyncio
import logging
import tomllib
from pathlib import Path

import click
from pydantic import ValidationError

from lorekeeper.config import LorekeeperConfig
from lorekeeper.llm.base import LLMBackend
from lorekeeper.utils import FileLockTimeout

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging. INFO by default, DEBUG if verbose."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config() -> LorekeeperConfig:
    """Load settings, reporting a bad env var or config.toml as a CLI error."""
    try:
        return LorekeeperConfig()
    except (ValidationError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc


def _get_backends(config: LorekeeperConfig, mock: bool = False) -> list[LLMBackend]:
    """Return MockBackends if mock, else the configured CLI/HTTP backends."""
    if mock or config.mock_mode:
        from mock.mock_backend import MockBackend

        return [MockBackend(name=name, timeout_seconds=config.timeout_for(name)) for name in config.backends]

    from lorekeeper.llm.cli import CliBackend
    from lorekeeper.llm.http import HttpChatBackend
    from lorekeeper.llm.resilience import CircuitBreaker, RetryingBackend

    backends: list[LLMBackend] = []
    for name in config.backends:
        inner: LLMBackend
        if name in config.http_backends:
            http = config.http_backends[name]
            inner = HttpChatBackend(
                name=name,
                base_url=http.base_url,
                model=http.model,
                api_key=http.api_key,
                temperature=http.temperature,
                path=http.path,
                timeout_seconds=config.timeout_for(name),
            )
        elif name in config.backend_commands:
            inner = CliBackend(
                name=name,
                command=config.backend_commands[name],
                output_mode=config.backend_output_modes.get(name, "text"),
                timeout_seconds=config.timeout_for(name),
            )
        else:
            logger.warning("Backend %s has no command or HTTP endpoint configured; skipping", name)
            continue

        backends.append(
            RetryingBackend(
                inner,
                max_retries=config.max_retries,
                base_delay=config.retry_base_delay_seconds,
                jitter_max=config.retry_jitter_max_seconds,
                retry_after_cap=config.retry_after_cap_seconds,
                breaker=CircuitBreaker(
                    threshold=config.circuit_breaker_threshold,
                    cooldown_seconds=config.circuit_breaker_cooldown_seconds,
                    backend=name,
                ),
            )
        )
    return backends


async def _run_learn(
    config: LorekeeperConfig, backends: list[LLMBackend], repo_path: Path, full: bool, verify: bool
):
    from lorekeeper.learn.pipeline import LearnPipeline

    try:
        return await LearnPipeline(config, backends).run(repo_path, full=full, verify=verify)
    finally:
        for backend in backends:
            await backend.close()


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Build a What/Why/How knowledge base from a repository's history."""
    _setup_logging(verbose)


@cli.command()
def init() -> None:
    """Create the knowledge directory in the current repository."""
    from lorekeeper.learn.bootstrap import AlreadyInitializedError, initialize_knowledge_dir

    config = _load_config()
    try:
        actions = initialize_knowledge_dir(Path.cwd(), config.knowledge_dir)
    except (AlreadyInitializedError, FileLockTimeout) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"\n{'='*60}")
    click.echo(f"  Knowledge Base Initialized")
    click.echo(f"{'='*60}")
    for action in actions:
        click.echo(f"  {action}")
    click.echo(f"\n  Next: run 'lorekeeper learn' to analyze the repository.")
    click.echo(f"{'='*60}\n")


@cli.command()
@click.option("--full", is_flag=True, help="Re-analyze every file and commit")
@click.option("--verify", is_flag=True, help="Query and synthesize without writing anything")
@click.option("--mock", is_flag=True, help="Use offline mock backends")
@click.option("--limit", default=None, type=int, help="Max significant commits to analyze")
def learn(full: bool, verify: bool, mock: bool, limit: int | None) -> None:
    """Analyze changed files and new commits, then update the knowledge base."""
    from lorekeeper.history.walker import CommitLookupError, RepositoryAccessError
    from lorekeeper.learn.pipeline import LearnError, NotInitializedError
    from lorekeeper.llm.parallel import NoBackendsConfiguredError
    from lorekeeper.manifest.store import ManifestError
    from lorekeeper.synthesis.engine import NoValidEntriesError

    config = _load_config()
    if limit is not None:
        config.commit_limit = limit
    backends = _get_backends(config, mock=mock)
    backend_names = ", ".join(b.name for b in backends) or "none"

    click.echo(f"\n{'='*60}")
    click.echo(f"  Learning ({'full' if full else 'incremental'}{', verify only' if verify else ''})")
    click.echo(f"  Backends: {backend_names}{' (mock)' if mock or config.mock_mode else ''}")
    click.echo(f"{'='*60}")

    try:
        summary = asyncio.run(_run_learn(config, backends, Path.cwd(), full, verify))
    except (
        NotInitializedError,
        LearnError,
        NoBackendsConfiguredError,
        NoValidEntriesError,
        ManifestError,
        RepositoryAccessError,
        CommitLookupError,
        FileLockTimeout,
    ) as exc:
        raise click.ClickException(str(exc)) from exc

    if summary.nothing_to_do:
        click.echo("  Nothing to learn; knowledge base is up to date.")
        if summary.files_deleted:
            click.echo(f"  Removed {summary.files_deleted} deleted files from the manifest.")
        click.echo(f"{'='*60}\n")
        return

    click.echo(f"  Files analyzed:    {summary.files_analyzed}")
    click.echo(f"  Files deleted:     {summary.files_deleted}")
    click.echo(f"  Commits processed: {summary.commits_processed}")
    if summary.patterns_invalidated:
        click.echo(f"  Patterns invalidated: {', '.join(summary.patterns_invalidated)}")

    report = summary.report
    if report is not None:
        click.echo(f"\n  Synthesis:")
        click.echo(f"    Input entries:  {report.total_input_entries}")
        click.echo(f"    Output entries: {report.total_output_entries}")
        click.echo(f"    Agreement:      {report.agreement_ratio:.0%}")
        click.echo(
            f"    Conflicts:      {report.conflicts_detected} detected, "
            f"{report.conflicts_resolved} resolved, {report.conflicts_unresolved} unresolved"
        )

    if verify:
        click.echo(f"\n  Entries (not written):")
        for what in summary.entries:
            click.echo(f"    - {what}")
    else:
        click.echo(
            f"\n  Records: {summary.written} written, {summary.updated} updated, "
            f"{summary.skipped} unchanged"
        )

    if summary.warnings:
        click.echo(f"\n  Warnings:")
        for warning in summary.warnings:
            click.echo(f"    ! {warning}")
    click.echo(f"{'='*60}\n")


@cli.command()
def status() -> None:
    """Show knowledge base statistics from the manifest."""
    from lorekeeper.manifest.store import MANIFEST_FILENAME, KnowledgeManifest, ManifestError

    config = _load_config()
    kb_path = Path.cwd() / config.knowledge_dir
    if not kb_path.is_dir():
        click.echo(f"No knowledge base found. Run 'lorekeeper init' first.")
        return

    try:
        manifest = KnowledgeManifest.load(kb_path / MANIFEST_FILENAME)
    except ManifestError as exc:
        raise click.ClickException(str(exc)) from exc
    stats = manifest.stats()
    last_scan = stats.last_scan.strftime("%Y-%m-%d %H:%M:%S UTC") if stats.last_scan else "never"

    click.echo(f"\n{'='*60}")
    click.echo(f"  Knowledge Base Status")
    click.echo(f"{'='*60}")
    click.echo(f"  Files scanned:      {stats.files_scanned}")
    click.echo(f"  Commits processed:  {stats.commits_processed}")
    click.echo(f"  Patterns extracted: {stats.patterns_extracted}")
    click.echo(f"  Last scan:          {last_scan}")

    invalidated = manifest.invalidated_patterns()
    if invalidated:
        click.echo(f"\n  Awaiting re-analysis ({len(invalidated)}):")
        for pattern in invalidated:
            click.echo(f"    {pattern.id:40s} {pattern.name}")
    click.echo(f"{'='*60}\n")


@cli.command()
@click.option("--limit", default=20, type=int, help="Max commits to walk")
@click.option("--since", default=None, help="Resume from this commit (inclusive)")
@click.option("--all", "show_all", is_flag=True, help="Include commits below the significance floor")
def history(limit: int, since: str | None, show_all: bool) -> None:
    """Walk the commit history and show significance scores."""
    from lorekeeper.history.scoring import score_commit
    from lorekeeper.history.walker import (
        CommitLookupError,
        RepositoryAccessError,
        WalkOptions,
        walk_commits,
    )

    config = _load_config()
    options = WalkOptions(skip_merges=config.skip_merges, since=since, limit=limit)
    try:
        walk = walk_commits(Path.cwd(), options)
    except (RepositoryAccessError, CommitLookupError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"\n{'='*60}")
    click.echo(f"  Commit History")
    click.echo(f"{'='*60}")
    if not walk.commits:
        click.echo("  No commits found.")
        click.echo(f"{'='*60}\n")
        return

    shown = 0
    for commit in walk.commits:
        score = score_commit(commit, config.scoring)
        if not show_all and not score.category.at_least(config.min_significance):
            continue
        shown += 1
        click.echo(
            f"  {commit.short_hash} {score.category.value.upper():9s} [{score.significance:.2f}] "
            f"{commit.summary[:50]:50s} ({score.describe()})"
        )

    click.echo(f"\n  Shown {shown} of {len(walk.commits)} commits")
    if walk.next_hash:
        click.echo(f"  More history: lorekeeper history --since {walk.next_hash[:7]}")
    click.echo(f"{'='*60}\n")


if __name__ == "__main__":
    cli()
