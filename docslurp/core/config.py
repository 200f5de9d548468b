"""Environment-backed settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from docslurp.core.state import DEFAULT_STATE_FILENAME
from docslurp.fetchers.github_client import (
    DEFAULT_RATE_LIMIT,
    DEFAULT_TIMEOUT_SECONDS,
    GITHUB_API_BASE,
)

load_dotenv()

TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUTHY


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be a number, got {value!r}") from exc


def _env_str(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(slots=True)
class Settings:
    org: str | None = None
    token: str | None = None
    repo_filter: str | None = None
    docs_dir: Path = Path("docs")
    state_file: Path = Path(DEFAULT_STATE_FILENAME)
    merge_state: bool = False
    prune_removed: bool = False
    api_base_url: str = GITHUB_API_BASE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    rate_limit: float = DEFAULT_RATE_LIMIT

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            org=_env_str("GITHUB_ORG"),
            token=_env_str("GITHUB_TOKEN"),
            repo_filter=_env_str("REPO_FILTER"),
            docs_dir=Path(os.getenv("DOCS_OUT_DIR") or "docs"),
            state_file=Path(os.getenv("STATE_FILE") or DEFAULT_STATE_FILENAME),
            merge_state=_env_flag("MERGE_STATE"),
            prune_removed=_env_flag("PRUNE_REMOVED"),
            api_base_url=os.getenv("GITHUB_API_URL") or GITHUB_API_BASE,
            timeout_seconds=_env_float("GITHUB_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
            rate_limit=_env_float("GITHUB_RATE_LIMIT", DEFAULT_RATE_LIMIT),
        )

    def client_options(self) -> dict[str, object]:
        """Keyword arguments for ``create_client``."""
        return {
            "base_url": self.api_base_url,
            "timeout_seconds": self.timeout_seconds,
            "rate_limit": self.rate_limit,
        }
