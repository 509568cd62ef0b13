"""Sample payloads and GitHub fakes shared by the test modules.

- repository_payload / timeline_node / commit_item: source shapes
- page / rate_limited_page: PageResult builders
- FakeGitHubClient: client and client factory in one object
- ScriptedFetcher: fetcher factory serving scripted pages per repository
- failing_insert: store insert side effect that fails one chosen insert
"""

from typing import Any
from unittest.mock import AsyncMock

from gitpulse.connectors.github.client import GitHubClientError
from gitpulse.connectors.github.timeline import (
    PageResult,
    RateLimitInfo,
    TimelineActor,
    TimelineNode,
)

# 2025-10-09T08:53:20Z
START_MS = 1_760_000_000_000

INSTALLATION_ID = 42


# =============================================================================
# Sample data
# =============================================================================


def repository_payload(full_name: str = "acme/api", repo_id: int = 101) -> dict[str, Any]:
    owner, name = full_name.split("/")
    return {
        "id": repo_id,
        "node_id": f"R_{repo_id}",
        "full_name": full_name,
        "name": name,
        "owner": {"login": owner},
        "private": False,
        "html_url": f"https://github.com/{full_name}",
    }


def timeline_node(
    number: int,
    repo: str = "acme/api",
    typename: str = "PullRequest",
    state: str = "open",
    login: str = "octo",
    updated_at: str = "2025-10-08T12:00:00Z",
    title: str | None = None,
) -> TimelineNode:
    kind = "pull" if typename == "PullRequest" else "issues"
    return TimelineNode(
        id=f"N_{repo}_{number}",
        typename=typename,
        number=number,
        title=title or f"Change {number}",
        state=state,
        url=f"https://github.com/{repo}/{kind}/{number}",
        updated_at=updated_at,
        actor=TimelineActor(id=7, login=login, node_id="U_7"),
    )


def commit_item(
    sha: str,
    repo: str = "acme/api",
    login: str = "octo",
    message: str = "Fix flaky test",
    date: str = "2025-10-08T13:00:00Z",
) -> dict[str, Any]:
    """A REST commit listing item."""
    return {
        "sha": sha,
        "node_id": f"C_{sha}",
        "html_url": f"https://github.com/{repo}/commit/{sha}",
        "commit": {
            "message": message,
            "author": {"name": "Octo Cat", "email": "octo@example.com", "date": date},
            "committer": {"name": "Octo Cat", "email": "octo@example.com", "date": date},
        },
        "author": {"login": login, "id": 7},
        "committer": {"login": login, "id": 7},
    }


def page(
    nodes: list[Any] | None = None,
    has_next: bool = False,
    cursor: str | None = None,
    remaining: int | None = 4000,
    reset: int | None = None,
    etag: str | None = None,
    total_count: int | None = None,
) -> PageResult:
    return PageResult(
        nodes=list(nodes or []),
        has_next_page=has_next,
        end_cursor=cursor,
        etag=etag,
        rate_limit=RateLimitInfo(remaining=remaining, reset=reset),
        total_count=total_count,
    )


def rate_limited_page(reset: int | None, cursor: str | None = None) -> PageResult:
    return PageResult(
        has_next_page=True,
        end_cursor=cursor,
        rate_limit=RateLimitInfo(remaining=0, reset=reset),
        rate_limited=True,
    )


# =============================================================================
# GitHub fakes
# =============================================================================


class FakeGitHubClient:
    """Stands in for GitHubClient and for the factory that builds it.

    Calling the instance records the constructor arguments and returns the
    instance itself, which is an async context manager.
    """

    def __init__(self, repositories: dict[str, dict[str, Any]] | None = None) -> None:
        self.repositories = repositories or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.get_repository = AsyncMock(side_effect=self._repository)
        self.create_installation_token = AsyncMock()

    def __call__(self, token: str, **kwargs: Any) -> "FakeGitHubClient":
        self.calls.append((token, kwargs))
        return self

    async def __aenter__(self) -> "FakeGitHubClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    def _repository(self, full_name: str) -> dict[str, Any]:
        if full_name not in self.repositories:
            raise GitHubClientError("GitHub API error 404: Not Found", 404)
        return self.repositories[full_name]


class ScriptedFetcher:
    """Fetcher factory serving scripted pages per repository.

    Script entries are PageResult objects or exceptions to raise. An
    exhausted script serves an empty final page.
    """

    def __init__(
        self,
        timeline: dict[str, list[Any]] | None = None,
        commits: dict[str, list[Any]] | None = None,
    ) -> None:
        self.timeline = {k: list(v) for k, v in (timeline or {}).items()}
        self.commits = {k: list(v) for k, v in (commits or {}).items()}
        self.client = None
        self.fetch_page = AsyncMock(side_effect=self._next_timeline)
        self.fetch_commit_page = AsyncMock(side_effect=self._next_commits)

    def __call__(self, client: Any) -> "ScriptedFetcher":
        self.client = client
        return self

    def _next_timeline(self, repo: str, *args: Any, **kwargs: Any) -> PageResult:
        return self._pop(self.timeline, repo)

    def _next_commits(self, repo: str, *args: Any, **kwargs: Any) -> PageResult:
        return self._pop(self.commits, repo)

    @staticmethod
    def _pop(script: dict[str, list[Any]], repo: str) -> PageResult:
        pages = script.get(repo)
        if not pages:
            return PageResult()
        entry = pages.pop(0)
        if isinstance(entry, Exception):
            raise entry
        return entry




def failing_insert(store: Any, table: str, nth: int, error: Exception) -> Any:
    """Side effect for patching ``store.insert``: the nth insert into ``table`` raises."""
    original = store.insert
    seen = {table: 0}

    def insert(target: str, record: dict[str, Any]) -> str:
        if target == table:
            seen[table] += 1
            if seen[table] == nth:
                raise error
        return original(target, record)

    return insert
