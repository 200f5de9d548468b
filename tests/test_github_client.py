from __future__ import annotations

import asyncio
import base64
from typing import Callable

import httpx
import pytest

from docslurp.fetchers.github_client import (
    MAX_RETRY_DELAY_SECONDS,
    AuthenticationError,
    FatalScrapeError,
    GitHubClient,
    NotAFileError,
    OrganisationNotFoundError,
    RepositoryDescriptor,
    ScraperError,
    github_headers,
    is_markdown_path,
    retry_delay,
)

API = "https://api.github.com"


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> GitHubClient:
    kwargs.setdefault("backoff_seconds", 0.0)
    kwargs.setdefault("rate_limit", 1000.0)
    return GitHubClient(token="ghp_test", transport=httpx.MockTransport(handler), **kwargs)


def _call(client: GitHubClient, method: str, *args):
    async def runner():
        async with client:
            return await getattr(client, method)(*args)

    return asyncio.run(runner())


def _repo(name: str, branch: str | None = "main") -> dict:
    return {"name": name, "full_name": f"acme/{name}", "default_branch": branch}


def test_list_repositories_follows_pagination_and_dedupes() -> None:
    seen_params: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen_params.append(dict(request.url.params))
        assert request.headers["Authorization"] == "Bearer ghp_test"
        if request.url.params.get("page") == "2":
            return httpx.Response(200, json=[_repo("b"), _repo("c", None)])
        return httpx.Response(
            200,
            json=[_repo("a"), _repo("b")],
            headers={"Link": f'<{API}/organizations/1/repos?page=2>; rel="next"'},
        )

    repos = _call(_client(handler), "list_repositories", "acme")

    assert repos == [
        RepositoryDescriptor("a", "acme/a", "main"),
        RepositoryDescriptor("b", "acme/b", "main"),
        RepositoryDescriptor("c", "acme/c", "HEAD"),
    ]
    assert seen_params[0] == {"per_page": "100", "type": "all"}
    assert repos[0].owner == "acme"


def test_unknown_organisation_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"})

    with pytest.raises(OrganisationNotFoundError):
        _call(_client(handler), "list_repositories", "nope")


def test_bad_credentials_are_fatal_without_retry() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(401, json={"message": "Bad credentials"})

    with pytest.raises(AuthenticationError):
        _call(_client(handler), "list_repositories", "acme")
    assert len(calls) == 1


def test_listing_failure_after_retries_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    with pytest.raises(FatalScrapeError):
        _call(_client(handler), "list_repositories", "acme")


def test_markdown_entries_keep_only_markdown_blobs_with_a_sha() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/docs/git/trees/main"
        assert request.url.params["recursive"] == "1"
        return httpx.Response(
            200,
            json={
                "truncated": True,
                "tree": [
                    {"path": "README.md", "sha": "s1", "type": "blob"},
                    {"path": "docs", "sha": "s2", "type": "tree"},
                    {"path": "docs/guide.md", "sha": "s3", "type": "blob"},
                    {"path": "setup.py", "sha": "s4", "type": "blob"},
                    {"path": "weird.md", "sha": "s5", "type": "commit"},
                    {"path": "nosha.md", "type": "blob"},
                ],
            },
        )

    listing = _call(_client(handler), "list_markdown_entries", "acme", "docs", "main")

    assert [(e.path, e.fingerprint) for e in listing.entries] == [
        ("README.md", "s1"),
        ("docs/guide.md", "s3"),
    ]
    assert all(e.kind == "blob" for e in listing.entries)
    assert listing.truncated is True


def test_invalid_tree_payload_raises() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"message": "nope"})

    with pytest.raises(ScraperError):
        _call(_client(handler), "list_markdown_entries", "acme", "docs", "main")


def test_fetch_file_content_decodes_base64() -> None:
    text = "# Héllo\n\nworld\n"
    encoded = base64.encodebytes(text.encode("utf-8")).decode("ascii")

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/acme/docs/contents/docs/guide.md"
        return httpx.Response(
            200, json={"type": "file", "encoding": "base64", "content": encoded}
        )

    assert _call(_client(handler), "fetch_file_content", "acme", "docs", "docs/guide.md") == text


def test_fetch_file_content_rejects_directories() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("listing.md"):
            return httpx.Response(200, json=[{"type": "file", "path": "listing.md/a"}])
        return httpx.Response(200, json={"type": "dir", "path": "folder.md"})

    with pytest.raises(NotAFileError):
        _call(_client(handler), "fetch_file_content", "acme", "docs", "listing.md")
    with pytest.raises(NotAFileError):
        _call(_client(handler), "fetch_file_content", "acme", "docs", "folder.md")


def test_rate_limited_requests_are_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "0"})
        if len(calls) == 2:
            return httpx.Response(
                403,
                json={"message": "You have exceeded a secondary rate limit."},
            )
        return httpx.Response(200, json=[_repo("a")])

    repos = _call(_client(handler), "list_repositories", "acme")
    assert [r.name for r in repos] == ["a"]
    assert len(calls) == 3


def test_retries_are_bounded() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(503)

    with pytest.raises(ScraperError) as excinfo:
        _call(_client(handler, max_retries=3), "list_markdown_entries", "acme", "docs", "main")
    assert len(calls) == 4
    assert excinfo.value.status_code == 503


def test_transport_errors_are_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json={"tree": []})

    listing = _call(_client(handler), "list_markdown_entries", "acme", "docs", "main")
    assert listing.entries == []
    assert len(calls) == 2


def test_plain_forbidden_is_not_retried() -> None:
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        return httpx.Response(403, json={"message": "Resource not accessible"})

    with pytest.raises(ScraperError) as excinfo:
        _call(_client(handler), "fetch_file_content", "acme", "docs", "README.md")
    assert excinfo.value.status_code == 403
    assert len(calls) == 1


def test_retry_delay_prefers_headers_and_is_capped() -> None:
    request = httpx.Request("GET", f"{API}/x")
    limited = httpx.Response(429, headers={"Retry-After": "7"}, request=request)
    assert retry_delay(limited, 1, 0.8) == 7.0
    assert (
        retry_delay(httpx.Response(429, headers={"Retry-After": "3600"}, request=request), 1, 0.8)
        == MAX_RETRY_DELAY_SECONDS
    )
    assert retry_delay(httpx.Response(500, request=request), 3, 0.8) == pytest.approx(3.2)
    assert retry_delay(httpx.Response(500, request=request), 10, 0.8) == 10.0


def test_headers_and_markdown_helpers() -> None:
    assert "Authorization" not in github_headers(None)
    assert "Authorization" not in github_headers("  ")
    assert github_headers("tok")["Authorization"] == "Bearer tok"
    assert is_markdown_path("docs/a.md")
    assert not is_markdown_path("docs/a.mdx")
    assert not is_markdown_path("")
