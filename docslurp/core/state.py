"""Fingerprint store: per-repository blob SHAs carried between scrape runs."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

LOGGER = logging.getLogger(__name__)

DEFAULT_STATE_FILENAME = "scrape-state.json"


def now_ms() -> int:
    """Current Unix time in milliseconds."""
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


@dataclass(slots=True)
class FileEntry:
    fingerprint: str
    last_fetched: int | None = None
    retry: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "fingerprint": self.fingerprint,
            "last_fetched": self.last_fetched,
        }
        if self.retry:
            payload["retry"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> FileEntry:
        if not isinstance(payload, dict):
            raise ValueError(f"File entry must be an object, got {type(payload).__name__}")
        fingerprint = payload.get("fingerprint", payload.get("sha"))
        if not isinstance(fingerprint, str):
            raise ValueError("File entry is missing its fingerprint")
        last_fetched = payload.get("last_fetched", payload.get("lastFetched"))
        if last_fetched is not None and not isinstance(last_fetched, int):
            raise ValueError(f"Invalid last_fetched value: {last_fetched!r}")
        return cls(
            fingerprint=fingerprint,
            last_fetched=last_fetched,
            retry=bool(payload.get("retry", False)),
        )


@dataclass(slots=True)
class RepoBucket:
    files: dict[str, FileEntry] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"files": {path: entry.to_dict() for path, entry in self.files.items()}}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> RepoBucket:
        files = payload.get("files") if isinstance(payload, dict) else None
        if not isinstance(files, dict):
            raise ValueError("Repository bucket is missing its files mapping")
        return cls(files={str(path): FileEntry.from_dict(meta) for path, meta in files.items()})


@dataclass(slots=True)
class FingerprintStore:
    """Mapping of ``owner/repo`` to a bucket of ``path -> FileEntry``."""

    repositories: dict[str, RepoBucket] = field(default_factory=dict)
    last_scrape_timestamp: str | None = None

    def bucket(self, repo_full_name: str) -> RepoBucket | None:
        return self.repositories.get(repo_full_name)

    def lookup(self, repo_full_name: str, path: str) -> FileEntry | None:
        bucket = self.repositories.get(repo_full_name)
        if bucket is None:
            return None
        return bucket.files.get(path)

    def file_count(self) -> int:
        return sum(len(bucket.files) for bucket in self.repositories.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "repositories": {
                name: bucket.to_dict() for name, bucket in self.repositories.items()
            },
            "last_scrape_timestamp": self.last_scrape_timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> FingerprintStore:
        """Parse a persisted store; accepts the legacy camel-case layout too.

        Raises ValueError for anything that is not a valid store.
        """
        if not isinstance(payload, dict):
            raise ValueError("State payload must be a JSON object")
        repositories = payload.get("repositories", payload.get("repos"))
        if not isinstance(repositories, dict):
            raise ValueError("State payload is missing its repositories mapping")
        last_scrape = payload.get("last_scrape_timestamp", payload.get("lastScrape"))
        if last_scrape is not None and not isinstance(last_scrape, str):
            raise ValueError(f"Invalid last_scrape_timestamp: {last_scrape!r}")
        return cls(
            repositories={
                str(name): RepoBucket.from_dict(bucket) for name, bucket in repositories.items()
            },
            last_scrape_timestamp=last_scrape,
        )


def plan_entry(
    previous: FileEntry | None,
    fingerprint: str,
    now: int,
) -> tuple[FileEntry, bool]:
    """Return the new cache entry for one path and whether it must be fetched.

    An unchanged fingerprint carries the previous ``last_fetched`` forward,
    unless the previous round failed to fetch the file.
    """
    if previous is not None and previous.fingerprint == fingerprint and not previous.retry:
        last_fetched = previous.last_fetched if previous.last_fetched is not None else now
        return FileEntry(fingerprint=fingerprint, last_fetched=last_fetched), False
    return FileEntry(fingerprint=fingerprint, last_fetched=now), True


def diff_bucket(
    previous: RepoBucket | None,
    entries: Iterable[tuple[str, str]],
    now: int,
) -> tuple[RepoBucket, list[str]]:
    """Build a fresh bucket from ``(path, fingerprint)`` pairs.

    Returns the bucket and the paths that need fetching, in input order.
    Paths missing from ``entries`` are dropped.
    """
    bucket = RepoBucket()
    to_fetch: list[str] = []
    prev_files = previous.files if previous is not None else {}
    for path, fingerprint in entries:
        entry, needs_fetch = plan_entry(prev_files.get(path), fingerprint, now)
        bucket.files[path] = entry
        if needs_fetch:
            to_fetch.append(path)
    return bucket, to_fetch


def merge_stores(previous: FingerprintStore, current: FingerprintStore) -> FingerprintStore:
    """Keep previous buckets for repositories the current run did not rebuild."""
    repositories = {
        name: RepoBucket(files=dict(bucket.files))
        for name, bucket in previous.repositories.items()
    }
    for name, bucket in current.repositories.items():
        repositories[name] = RepoBucket(files=dict(bucket.files))
    return FingerprintStore(
        repositories=repositories,
        last_scrape_timestamp=current.last_scrape_timestamp or previous.last_scrape_timestamp,
    )


def parse_store(payload: Any) -> FingerprintStore:
    """Parse a state payload, falling back to an empty store when malformed."""
    if payload is None:
        return FingerprintStore()
    if isinstance(payload, FingerprintStore):
        return payload
    try:
        return FingerprintStore.from_dict(payload)
    except (ValueError, AttributeError, TypeError) as exc:
        LOGGER.warning("Ignoring malformed scrape state: %s", exc)
        return FingerprintStore()


def load_store(state_path: Path) -> FingerprintStore:
    """Load incremental scrape state; missing or unreadable files yield an empty store."""
    if not state_path.exists():
        return FingerprintStore()
    try:
        payload = json.loads(state_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        LOGGER.warning("Could not read %s, starting fresh: %s", state_path, exc)
        return FingerprintStore()
    store = parse_store(payload)
    LOGGER.info(
        "Loaded incremental state from %s (%d repos cached)",
        state_path,
        len(store.repositories),
    )
    return store


def save_store(state_path: Path, store: FingerprintStore) -> None:
    """Persist incremental scrape state."""
    state_path.parent.mkdir(parents=True, exist_ok=True)
    state_path.write_text(
        json.dumps(store.to_dict(), indent=2, ensure_ascii=False),
        encoding="utf-8",
    )


def clear_store(state_path: Path) -> bool:
    """Delete the state file. Returns whether anything was removed."""
    try:
        state_path.unlink()
    except FileNotFoundError:
        return False
    return True
