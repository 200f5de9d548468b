"""
Mirror Markdown files from every repository of a GitHub organisation.

Usage:
  doc-slurp scrape --org my-org --token ghp_xxx
  doc-slurp scrape --org my-org --repo-filter '^docs-' --merge-state
  doc-slurp list --docs-dir ./docs
  doc-slurp clear-state
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from pathlib import Path
from typing import TextIO

from docslurp.core.config import Settings
from docslurp.core.state import clear_store
from docslurp.core.storage import summarize_docs
from docslurp.fetchers.github_client import FatalScrapeError
from docslurp.fetchers.org_scraper import ProgressPhase, ScrapeConfig, ScrapeProgress
from docslurp.workers.job_runner import ClientFactory, run_scrape_pipeline

LOGGER = logging.getLogger(__name__)


class TerminalProgress:
    """Single-line progress renderer for interactive terminals."""

    def __init__(self, stream: TextIO | None = None, width: int = 80) -> None:
        self.stream = stream or sys.stdout
        self.width = width

    def __call__(self, progress: ScrapeProgress) -> None:
        if progress.message:
            self.stream.write(f"\r{progress.message.ljust(self.width)}")
        if progress.phase is ProgressPhase.DONE:
            self.stream.write("\n")
            self.stream.write(
                f"Done: {progress.fetched} fetched, {progress.skipped} skipped, "
                f"{progress.total} total.\n"
            )
        self.stream.flush()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="doc-slurp",
        description="Incrementally scrape Markdown files from a GitHub organisation.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="scrape",
        choices=["scrape", "list", "clear-state"],
        help="scrape (default), list scraped repositories, or clear the incremental state.",
    )
    parser.add_argument("--org", help="GitHub organisation to scrape (env: GITHUB_ORG).")
    parser.add_argument("--token", help="GitHub personal access token (env: GITHUB_TOKEN).")
    parser.add_argument(
        "--repo-filter",
        help="Regex; only repositories whose name matches are scraped (env: REPO_FILTER).",
    )
    parser.add_argument("--docs-dir", help="Directory for scraped docs (env: DOCS_OUT_DIR).")
    parser.add_argument("--state-file", help="Incremental state JSON path (env: STATE_FILE).")
    parser.add_argument(
        "--merge-state",
        action="store_true",
        default=None,
        help="Keep cached entries of repositories not scraped this run (env: MERGE_STATE).",
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        default=None,
        help="Delete local files that were removed upstream (env: PRUNE_REMOVED).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level.",
    )
    return parser.parse_args(argv)


def resolve_settings(args: argparse.Namespace) -> Settings:
    settings = Settings.from_env()
    if args.org:
        settings.org = args.org
    if args.token:
        settings.token = args.token
    if args.repo_filter:
        settings.repo_filter = args.repo_filter
    if args.docs_dir:
        settings.docs_dir = Path(args.docs_dir)
    if args.state_file:
        settings.state_file = Path(args.state_file)
    if args.merge_state is not None:
        settings.merge_state = args.merge_state
    if args.prune is not None:
        settings.prune_removed = args.prune
    return settings


async def scrape(
    settings: Settings,
    client_factory: ClientFactory | None = None,
    stream: TextIO | None = None,
) -> int:
    if not settings.org:
        print(
            "Error: --org or GITHUB_ORG environment variable is required for scraping.",
            file=sys.stderr,
        )
        return 1
    try:
        repo_filter = re.compile(settings.repo_filter) if settings.repo_filter else None
    except re.error as exc:
        print(f"Error: invalid --repo-filter pattern: {exc}", file=sys.stderr)
        return 1

    config = ScrapeConfig(
        org=settings.org,
        token=settings.token,
        repo_filter=repo_filter,
        on_progress=TerminalProgress(stream),
    )
    try:
        outcome = await run_scrape_pipeline(settings, config, client_factory)
    except FatalScrapeError as exc:
        LOGGER.error("Scrape failed: %s", exc)
        return 1

    out = stream or sys.stdout
    out.write(f"Wrote {len(outcome.written)} files to {settings.docs_dir}/\n")
    if outcome.pruned:
        out.write(f"Pruned {len(outcome.pruned)} files removed upstream.\n")
    for message in outcome.result.diagnostics:
        out.write(f"warning: {message}\n")
    return 0


def list_repos(settings: Settings, stream: TextIO | None = None) -> int:
    out = stream or sys.stdout
    summary = summarize_docs(settings.docs_dir)
    if not summary:
        out.write(f"No scraped repositories under {settings.docs_dir}/\n")
        return 0
    for repo, paths in summary.items():
        out.write(f"{repo}\t{len(paths)} files\n")
    return 0


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    settings = resolve_settings(args)

    if args.command == "list":
        return list_repos(settings)
    if args.command == "clear-state":
        if clear_store(settings.state_file):
            print(f"Removed {settings.state_file}. Next scrape will fetch all files.")
        else:
            print(f"No state file at {settings.state_file}.")
        return 0
    return asyncio.run(scrape(settings))


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
