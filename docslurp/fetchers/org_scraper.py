"""Incremental Markdown scraper for a GitHub organisation.

Files whose blob SHA has not changed since the previous run are skipped, so
only new or modified Markdown is downloaded. Repositories and files are
processed strictly one at a time; the client owns rate limiting and retries.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from docslurp.core.state import (
    FingerprintStore,
    RepoBucket,
    now_iso,
    now_ms,
    parse_store,
    plan_entry,
)
from docslurp.fetchers.github_client import (
    FatalScrapeError,
    RepositoryDescriptor,
    TreeListing,
    create_client,
)

LOGGER = logging.getLogger(__name__)


class ProgressPhase(str, enum.Enum):
    LISTING_REPOS = "listing-repos"
    WALKING_TREE = "walking-tree"
    FETCHING_FILES = "fetching-files"
    DONE = "done"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ScrapeProgress:
    phase: ProgressPhase
    repo: str | None = None
    fetched: int = 0
    skipped: int = 0
    total: int = 0
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "repo": self.repo,
            "fetched": self.fetched,
            "skipped": self.skipped,
            "total": self.total,
            "message": self.message,
        }


ProgressSink = Callable[[ScrapeProgress], Any]


@dataclass(slots=True, frozen=True)
class ScrapedFile:
    repo: str
    path: str
    content: str
    fingerprint: str


@dataclass(slots=True)
class ScrapeConfig:
    org: str
    token: str | None = None
    repo_filter: str | re.Pattern[str] | None = None
    on_progress: ProgressSink | None = None
    cancel_event: asyncio.Event | None = None

    def compiled_filter(self) -> re.Pattern[str] | None:
        if self.repo_filter is None or self.repo_filter == "":
            return None
        if isinstance(self.repo_filter, re.Pattern):
            return self.repo_filter
        return re.compile(self.repo_filter)


@dataclass(slots=True)
class ScrapeResult:
    files: list[ScrapedFile] = field(default_factory=list)
    state: FingerprintStore = field(default_factory=FingerprintStore)
    diagnostics: list[str] = field(default_factory=list)
    cancelled: bool = False


class RemoteDirectory(Protocol):
    async def list_repositories(self, org: str) -> list[RepositoryDescriptor]: ...

    async def list_markdown_entries(self, owner: str, repo: str, branch: str) -> TreeListing: ...

    async def fetch_file_content(self, owner: str, repo: str, path: str) -> str: ...


class _ScrapeCancelled(Exception):
    pass


def filter_repositories(
    repos: list[RepositoryDescriptor],
    pattern: re.Pattern[str] | None,
) -> list[RepositoryDescriptor]:
    if pattern is None:
        return list(repos)
    return [repo for repo in repos if pattern.search(repo.name)]


class _Run:
    """Counters, diagnostics and progress emission for one scrape invocation."""

    def __init__(self, config: ScrapeConfig) -> None:
        self.config = config
        self.fetched = 0
        self.skipped = 0
        self.total = 0
        self.diagnostics: list[str] = []

    def warn(self, message: str, *args: Any) -> None:
        LOGGER.warning(message, *args)
        self.diagnostics.append(message % args if args else message)

    def cancelled(self) -> bool:
        event = self.config.cancel_event
        return event is not None and event.is_set()

    async def emit(
        self,
        phase: ProgressPhase,
        repo: str | None = None,
        message: str | None = None,
    ) -> None:
        sink = self.config.on_progress
        if sink is None:
            return
        progress = ScrapeProgress(
            phase=phase,
            repo=repo,
            fetched=self.fetched,
            skipped=self.skipped,
            total=self.total,
            message=message,
        )
        try:
            outcome = sink(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Progress sink raised %s; continuing", exc)


async def _scrape_repository(
    client: RemoteDirectory,
    run: _Run,
    repo: RepositoryDescriptor,
    previous: RepoBucket | None,
    results: list[ScrapedFile],
) -> RepoBucket | None:
    """Walk one repository. Returns None if its tree listing failed."""
    await run.emit(ProgressPhase.WALKING_TREE, repo=repo.full_name)
    owner, _, repo_name = repo.full_name.partition("/")

    try:
        listing = await client.list_markdown_entries(owner, repo_name, repo.default_branch)
    except Exception as exc:  # noqa: BLE001
        run.warn("Skipping %s: %s", repo.full_name, exc)
        return None
    if listing.truncated:
        run.warn("Tree for %s was truncated by the GitHub API", repo.full_name)

    run.total += len(listing.entries)
    bucket = RepoBucket()
    prev_files = previous.files if previous is not None else {}

    for entry in listing.entries:
        if run.cancelled():
            raise _ScrapeCancelled

        cache_entry, needs_fetch = plan_entry(
            prev_files.get(entry.path), entry.fingerprint, now_ms()
        )
        bucket.files[entry.path] = cache_entry

        if not needs_fetch:
            run.skipped += 1
            await run.emit(ProgressPhase.FETCHING_FILES, repo=repo.full_name)
            continue

        await run.emit(
            ProgressPhase.FETCHING_FILES,
            repo=repo.full_name,
            message=f"Fetching {repo.full_name}/{entry.path}",
        )
        try:
            content = await client.fetch_file_content(owner, repo_name, entry.path)
        except Exception as exc:  # noqa: BLE001
            run.warn("Failed to fetch %s/%s: %s", repo.full_name, entry.path, exc)
            prev_entry = prev_files.get(entry.path)
            cache_entry.last_fetched = prev_entry.last_fetched if prev_entry else None
            cache_entry.retry = True
            continue

        results.append(
            ScrapedFile(
                repo=repo.full_name,
                path=entry.path,
                content=content,
                fingerprint=entry.fingerprint,
            )
        )
        run.fetched += 1

    return bucket


async def scrape_org(
    config: ScrapeConfig,
    previous_state: FingerprintStore | dict[str, Any] | None = None,
    client: RemoteDirectory | None = None,
) -> ScrapeResult:
    """Incrementally scrape all Markdown files of ``config.org``.

    ``previous_state`` may be a store, a raw persisted payload, or None; a
    malformed payload is treated like a first run. The previous store is
    never mutated. Only repository listing failures are raised
    (as ``FatalScrapeError``); per-repository and per-file failures are
    logged and reported in ``ScrapeResult.diagnostics``.

    When ``client`` is omitted a GitHub client is created from
    ``config.token`` and closed before returning.
    """
    if client is None:
        async with create_client(config.token) as owned_client:
            return await scrape_org(config, previous_state, owned_client)

    previous = parse_store(previous_state)
    pattern = config.compiled_filter()
    run = _Run(config)

    await run.emit(
        ProgressPhase.LISTING_REPOS, message=f"Listing repositories for {config.org}..."
    )
    try:
        all_repos = await client.list_repositories(config.org)
    except FatalScrapeError as exc:
        await run.emit(ProgressPhase.ERROR, message=str(exc))
        raise
    except Exception as exc:  # noqa: BLE001
        await run.emit(ProgressPhase.ERROR, message=str(exc))
        raise FatalScrapeError(f"Could not list repositories for {config.org}: {exc}") from exc
    repos = filter_repositories(all_repos, pattern)
    LOGGER.info("Scraping %d of %d repositories in %s", len(repos), len(all_repos), config.org)

    result = ScrapeResult(state=FingerprintStore(last_scrape_timestamp=now_iso()))

    try:
        for repo in repos:
            if run.cancelled():
                raise _ScrapeCancelled
            bucket = await _scrape_repository(
                client, run, repo, previous.bucket(repo.full_name), result.files
            )
            if bucket is not None:
                result.state.repositories[repo.full_name] = bucket
    except _ScrapeCancelled:
        result.cancelled = True

    if result.cancelled:
        LOGGER.info("Scrape of %s cancelled after %d fetched files", config.org, run.fetched)
        await run.emit(ProgressPhase.DONE, message="Scrape cancelled")
    else:
        await run.emit(ProgressPhase.DONE)
    result.diagnostics = run.diagnostics
    return result
