from __future__ import annotations

from typing import Any

import pytest

from docslurp.fetchers.github_client import (
    OrganisationNotFoundError,
    RepositoryDescriptor,
    ScraperError,
    TreeEntry,
    TreeListing,
)


class FakeDirectory:
    """In-memory organisation: ``{repo_name: [(path, sha), ...]}``."""

    def __init__(
        self,
        trees: dict[str, list[tuple[str, str]]],
        org: str = "test-org",
        failing_trees: set[str] | None = None,
        failing_files: set[str] | None = None,
        truncated: set[str] | None = None,
        missing_org: bool = False,
    ) -> None:
        self.org = org
        self.trees = trees
        self.failing_trees = failing_trees or set()
        self.failing_files = failing_files or set()
        self.truncated = truncated or set()
        self.missing_org = missing_org
        self.tree_calls: list[str] = []
        self.fetch_calls: list[str] = []
        self.closed = False

    async def __aenter__(self) -> FakeDirectory:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.closed = True

    async def list_repositories(self, org: str) -> list[RepositoryDescriptor]:
        if self.missing_org or org != self.org:
            raise OrganisationNotFoundError(f"Organisation {org!r} was not found", status_code=404)
        return [
            RepositoryDescriptor(name=name, full_name=f"{org}/{name}", default_branch="main")
            for name in self.trees
        ]

    async def list_markdown_entries(self, owner: str, repo: str, branch: str) -> TreeListing:
        self.tree_calls.append(repo)
        if repo in self.failing_trees:
            raise ScraperError(f"GitHub API HTTP 500 for {owner}/{repo}", status_code=500)
        return TreeListing(
            entries=[TreeEntry(path=path, fingerprint=sha) for path, sha in self.trees[repo]],
            truncated=repo in self.truncated,
        )

    async def fetch_file_content(self, owner: str, repo: str, path: str) -> str:
        self.fetch_calls.append(f"{repo}/{path}")
        if f"{repo}/{path}" in self.failing_files:
            raise ScraperError(f"Failed fetching {repo}/{path}")
        return f"# Content of {repo}/{path}"


@pytest.fixture
def org_trees() -> dict[str, list[tuple[str, str]]]:
    return {
        "repo-a": [("README.md", "sha-readme-a"), ("docs/guide.md", "sha-guide-a")],
        "repo-b": [("README.md", "sha-readme-b")],
    }


@pytest.fixture
def directory(org_trees: dict[str, list[tuple[str, str]]]) -> FakeDirectory:
    return FakeDirectory(org_trees)


@pytest.fixture
def make_directory():
    return FakeDirectory
