"""GitHub REST client: organisation repositories, Markdown tree entries, file content."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

import httpx

LOGGER = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"
MARKDOWN_EXTENSIONS = (".md",)
DEFAULT_MAX_RETRIES = 3
DEFAULT_TIMEOUT_SECONDS = 20.0
DEFAULT_RATE_LIMIT = 10.0
MAX_RETRY_DELAY_SECONDS = 60.0
REPOS_PER_PAGE = 100


class ScraperError(Exception):
    """Raised for recoverable scraper errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotAFileError(ScraperError):
    """Raised when a contents path resolves to a directory or non-file object."""


class FatalScrapeError(ScraperError):
    """Raised when the whole scrape cannot proceed."""


class OrganisationNotFoundError(FatalScrapeError):
    pass


class AuthenticationError(FatalScrapeError):
    pass


class AsyncRateLimiter:
    """Token-interval rate limiter for async request pacing."""

    def __init__(self, rate_per_second: float) -> None:
        self.rate = max(rate_per_second, 0.001)
        self.interval = 1.0 / self.rate
        self._next_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._lock:
            now = loop.time()
            wait_for = self._next_time - now
            if wait_for > 0:
                await asyncio.sleep(wait_for)
                now = loop.time()
            self._next_time = now + self.interval


@dataclass(slots=True, frozen=True)
class RepositoryDescriptor:
    name: str
    full_name: str
    default_branch: str

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]


@dataclass(slots=True, frozen=True)
class TreeEntry:
    path: str
    fingerprint: str
    kind: str = "blob"


@dataclass(slots=True)
class TreeListing:
    entries: list[TreeEntry] = field(default_factory=list)
    truncated: bool = False


def is_markdown_path(path: str, extensions: tuple[str, ...] = MARKDOWN_EXTENSIONS) -> bool:
    return bool(path) and path.endswith(extensions)


def github_headers(token: str | None = None) -> dict[str, str]:
    headers = {
        "Accept": "application/vnd.github+json",
        "User-Agent": "doc-slurp markdown scraper",
        "X-GitHub-Api-Version": "2022-11-28",
    }
    if token and token.strip():
        headers["Authorization"] = f"Bearer {token.strip()}"
    return headers


def backoff_delay(attempt: int, base_seconds: float) -> float:
    return min(10.0, base_seconds * (2 ** (attempt - 1)))


def is_rate_limited(response: httpx.Response) -> bool:
    if response.status_code == 429:
        return True
    if response.status_code != 403:
        return False
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    return "rate limit" in response.text.lower()


def retry_delay(response: httpx.Response, attempt: int, base_seconds: float) -> float:
    """Seconds to wait before retrying, from rate-limit headers or backoff."""
    retry_after = response.headers.get("retry-after")
    reset_at = response.headers.get("x-ratelimit-reset")
    delay: float | None = None
    if retry_after:
        try:
            delay = float(retry_after)
        except ValueError:
            delay = None
    if delay is None and reset_at and response.headers.get("x-ratelimit-remaining") == "0":
        try:
            delay = float(reset_at) - time.time()
        except ValueError:
            delay = None
    if delay is None:
        delay = backoff_delay(attempt, base_seconds)
    return max(0.0, min(delay, MAX_RETRY_DELAY_SECONDS))


def decode_file_payload(payload: Any, owner: str, repo: str, path: str) -> str:
    """Decode a contents-API payload into text."""
    if isinstance(payload, list) or not isinstance(payload, dict):
        raise NotAFileError(f"Expected a file at {path} in {owner}/{repo}")
    if payload.get("type") != "file":
        raise NotAFileError(f"Expected a file at {path} in {owner}/{repo}")

    encoded = payload.get("content", "")
    encoding = payload.get("encoding")
    if encoding != "base64" or not isinstance(encoded, str):
        raise ScraperError(f"Unsupported encoding for {owner}/{repo}:{path}: {encoding}")

    try:
        decoded_bytes = base64.b64decode(encoded, validate=False)
    except ValueError as exc:
        raise ScraperError(f"Failed decoding base64 file {path}: {exc}") from exc

    try:
        return decoded_bytes.decode("utf-8")
    except UnicodeDecodeError:
        return decoded_bytes.decode("utf-8", errors="replace")


class GitHubClient:
    """Async GitHub client used for the duration of one scrape."""

    def __init__(
        self,
        token: str | None = None,
        base_url: str = GITHUB_API_BASE,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        rate_limit: float = DEFAULT_RATE_LIMIT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = 0.8,
        markdown_extensions: tuple[str, ...] = MARKDOWN_EXTENSIONS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.markdown_extensions = markdown_extensions
        self._limiter = AsyncRateLimiter(rate_limit)
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=github_headers(token),
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        attempts = self.max_retries + 1
        last_error: ScraperError | None = None
        for attempt in range(1, attempts + 1):
            await self._limiter.acquire()
            try:
                response = await self._client.get(url, params=params)
            except httpx.TransportError as exc:
                last_error = ScraperError(f"Request to {url} failed: {exc}")
                delay = backoff_delay(attempt, self.backoff_seconds)
            else:
                if response.is_success:
                    return response
                status = response.status_code
                if status == 401:
                    raise AuthenticationError(
                        f"GitHub rejected the credential for {url}", status_code=status
                    )
                if not (status >= 500 or is_rate_limited(response)):
                    body = response.text[:200]
                    raise ScraperError(
                        f"GitHub API HTTP {status} for {url}: {body}", status_code=status
                    )
                last_error = ScraperError(
                    f"GitHub API HTTP {status} for {url}", status_code=status
                )
                delay = retry_delay(response, attempt, self.backoff_seconds)

            if attempt == attempts:
                break
            LOGGER.warning(
                "Retrying %s after %.1fs (retry #%d): %s", url, delay, attempt, last_error
            )
            await asyncio.sleep(delay)

        assert last_error is not None
        raise ScraperError(
            f"Failed API request {url} after {attempts} attempts: {last_error}",
            status_code=last_error.status_code,
        ) from last_error

    async def list_repositories(self, org: str) -> list[RepositoryDescriptor]:
        """List every repository of an organisation, following pagination."""
        url: str | None = f"/orgs/{quote(org, safe='')}/repos"
        params: dict[str, Any] | None = {"per_page": REPOS_PER_PAGE, "type": "all"}
        repos: list[RepositoryDescriptor] = []
        seen: set[str] = set()
        try:
            while url:
                response = await self._request(url, params)
                payload = response.json()
                if not isinstance(payload, list):
                    raise FatalScrapeError(f"Invalid repository listing payload for {org}")
                for item in payload:
                    full_name = str(item.get("full_name") or "")
                    if not full_name or full_name in seen:
                        continue
                    seen.add(full_name)
                    repos.append(
                        RepositoryDescriptor(
                            name=str(item.get("name") or full_name.split("/", 1)[-1]),
                            full_name=full_name,
                            default_branch=str(item.get("default_branch") or "HEAD"),
                        )
                    )
                url = response.links.get("next", {}).get("url")
                params = None
        except FatalScrapeError:
            raise
        except ScraperError as exc:
            if exc.status_code == 404:
                raise OrganisationNotFoundError(
                    f"Organisation {org!r} was not found", status_code=404
                ) from exc
            raise FatalScrapeError(
                f"Could not list repositories for {org}: {exc}", status_code=exc.status_code
            ) from exc
        return repos

    async def list_markdown_entries(self, owner: str, repo: str, branch: str) -> TreeListing:
        """List Markdown blobs in the recursive tree of ``branch``."""
        response = await self._request(
            f"/repos/{owner}/{repo}/git/trees/{quote(branch, safe='/')}",
            {"recursive": "1"},
        )
        payload = response.json()
        tree = payload.get("tree") if isinstance(payload, dict) else None
        if not isinstance(tree, list):
            raise ScraperError(f"Invalid tree payload for {owner}/{repo}@{branch}")

        entries = [
            TreeEntry(path=str(item["path"]), fingerprint=str(item["sha"]))
            for item in tree
            if item.get("type") == "blob"
            and item.get("sha")
            and is_markdown_path(str(item.get("path") or ""), self.markdown_extensions)
        ]

        return TreeListing(entries=entries, truncated=bool(payload.get("truncated")))

    async def fetch_file_content(
        self,
        owner: str,
        repo: str,
        path: str,
        ref: str | None = None,
    ) -> str:
        """Fetch and decode one file through the contents API."""
        params = {"ref": ref} if ref else None
        response = await self._request(
            f"/repos/{owner}/{repo}/contents/{quote(path, safe='/')}", params
        )
        return decode_file_payload(response.json(), owner, repo, path)


def create_client(token: str | None = None, **kwargs: Any) -> GitHubClient:
    """Create a client for one scrape; close it with ``aclose`` or ``async with``."""
    return GitHubClient(token=token, **kwargs)
