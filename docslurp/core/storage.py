"""Local docs tree helpers: write scraped Markdown grouped by repository."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from docslurp.core.state import FingerprintStore
from docslurp.fetchers.github_client import MARKDOWN_EXTENSIONS
from docslurp.fetchers.org_scraper import ScrapedFile

LOGGER = logging.getLogger(__name__)

UNSAFE_SEGMENTS = {"", ".", ".."}


class UnsafePathError(ValueError):
    """Raised when a repository path would not land inside the docs directory."""


def safe_output_path(base_dir: Path, repo_full_name: str, relative_repo_path: str) -> Path:
    """Map ``owner/repo`` plus a repo-relative path to ``base_dir/owner/repo/path``.

    Segments are kept verbatim so distinct upstream paths never share a local file.
    """
    parts = [*repo_full_name.split("/"), *relative_repo_path.split("/")]
    if any(part in UNSAFE_SEGMENTS or "\x00" in part for part in parts):
        raise UnsafePathError(f"Refusing unsafe path {repo_full_name}/{relative_repo_path}")
    target = base_dir.joinpath(*parts)
    if base_dir.resolve() not in target.resolve().parents:
        raise UnsafePathError(f"{repo_full_name}/{relative_repo_path} escapes {base_dir}")
    return target


def write_scraped_files(docs_dir: Path, files: Iterable[ScrapedFile]) -> list[Path]:
    """Write fetched file contents into ``docs_dir/<owner>/<repo>/<path>``."""
    written: list[Path] = []
    for item in files:
        try:
            out_path = safe_output_path(docs_dir, item.repo, item.path)
        except UnsafePathError as exc:
            LOGGER.warning("Skipping %s: %s", item.path, exc)
            continue
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(item.content, encoding="utf-8")
        written.append(out_path)
    LOGGER.info("Wrote %d files to %s", len(written), docs_dir)
    return written


def prune_removed_files(
    docs_dir: Path,
    previous: FingerprintStore,
    current: FingerprintStore,
) -> list[Path]:
    """Delete local copies of paths that disappeared from rebuilt repository buckets.

    Repositories without a bucket in ``current`` are left alone.
    """
    removed: list[Path] = []
    for repo_full_name, bucket in current.repositories.items():
        prev_bucket = previous.bucket(repo_full_name)
        if prev_bucket is None:
            continue
        for path in sorted(set(prev_bucket.files) - set(bucket.files)):
            try:
                target = safe_output_path(docs_dir, repo_full_name, path)
                target.unlink()
            except (UnsafePathError, FileNotFoundError):
                continue
            removed.append(target)
            _remove_empty_parents(target.parent, docs_dir)
    if removed:
        LOGGER.info("Pruned %d files removed upstream", len(removed))
    return removed


def _remove_empty_parents(directory: Path, stop_at: Path) -> None:
    stop = stop_at.resolve()
    current = directory.resolve()
    while current != stop and stop in current.parents:
        try:
            current.rmdir()
        except OSError:
            return
        current = current.parent


def summarize_docs(docs_dir: Path) -> dict[str, list[str]]:
    """Return ``owner/repo -> sorted Markdown paths`` found on disk."""
    summary: dict[str, list[str]] = {}
    if not docs_dir.is_dir():
        return summary
    for owner_dir in sorted(p for p in docs_dir.iterdir() if p.is_dir()):
        for repo_dir in sorted(p for p in owner_dir.iterdir() if p.is_dir()):
            paths = sorted(
                path.relative_to(repo_dir).as_posix()
                for path in repo_dir.rglob("*")
                if path.is_file() and path.name.endswith(MARKDOWN_EXTENSIONS)
            )
            if paths:
                summary[f"{owner_dir.name}/{repo_dir.name}"] = paths
    return summary
