"""Rate-limited, resumable page fetches for repository activity.

Two listings are paged one request at a time:

- the issue/PR timeline, via the search API (``repo:X updated:>=since``,
  ascending by update time, 50 per page, at most 1000 results)
- the commit listing (``/repos/X/commits?since=``, 100 per page)

A fetch never raises on rate-limit exhaustion. A 429 or rate-limit 403
becomes a synthetic page with ``has_next_page=True`` and
``rate_limit.remaining == 0`` that keeps the caller's cursor and ETag, so
``should_pause()`` handles header-detected and rejection-detected
exhaustion the same way.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from .client import GitHubClient, GitHubClientError, RateLimitExceeded

__all__ = [
    "MIN_BACKFILL_BUDGET",
    "PageResult",
    "RateLimitInfo",
    "TimelineActor",
    "TimelineFetcher",
    "TimelineNode",
    "parse_rate_limit",
    "should_pause",
]

logger = logging.getLogger("gitpulse.github.timeline")

MIN_BACKFILL_BUDGET = 100


@dataclass
class TimelineActor:
    id: int | None = None
    login: str | None = None
    node_id: str | None = None


@dataclass
class TimelineNode:
    """A PR or issue entry from the search listing.

    Attributes:
        id: GraphQL node id (falls back to the numeric id or API url)
        typename: "PullRequest" or "Issue"
        updated_at: ISO 8601 last-update time
    """

    id: str
    typename: str
    number: int | None = None
    title: str | None = None
    body: str | None = None
    state: str | None = None
    url: str | None = None
    updated_at: str | None = None
    actor: TimelineActor | None = None

    @classmethod
    def from_search_item(cls, item: dict[str, Any]) -> "TimelineNode":
        user = item.get("user")
        return cls(
            id=item.get("node_id") or str(item.get("id") or item.get("url")),
            typename="PullRequest" if item.get("pull_request") else "Issue",
            number=item.get("number"),
            title=item.get("title"),
            body=item.get("body"),
            state=item.get("state"),
            url=item.get("html_url"),
            updated_at=item.get("updated_at"),
            actor=(
                TimelineActor(
                    id=user.get("id"), login=user.get("login"), node_id=user.get("node_id")
                )
                if user
                else None
            ),
        )


@dataclass
class RateLimitInfo:
    """Rate-limit snapshot; ``reset`` is epoch milliseconds."""

    remaining: int | None = None
    reset: int | None = None


@dataclass
class PageResult:
    """One fetched page.

    Attributes:
        nodes: TimelineNode items (timeline) or raw commit dicts (commits)
        has_next_page: Another request is needed (also True when rate limited)
        end_cursor: Cursor for the next request; unchanged when rate limited
        etag: ETag to send with the next request for this cursor
        rate_limit: Snapshot from the response headers
        not_modified: The server answered 304
        rate_limited: The request was rejected for rate limiting
        total_count: Total matches reported by the search API
    """

    nodes: list[Any] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None
    etag: str | None = None
    rate_limit: RateLimitInfo = field(default_factory=RateLimitInfo)
    not_modified: bool = False
    rate_limited: bool = False
    total_count: int | None = None


def parse_rate_limit(headers: Mapping[str, str]) -> RateLimitInfo:
    """Read X-RateLimit-Remaining / X-RateLimit-Reset (epoch seconds -> ms)."""
    info = RateLimitInfo()
    remaining = headers.get("X-RateLimit-Remaining")
    if remaining is not None:
        try:
            info.remaining = int(float(remaining))
        except ValueError:
            logger.warning("Non-numeric X-RateLimit-Remaining header: %r", remaining)
    reset = headers.get("X-RateLimit-Reset")
    if reset is not None:
        try:
            info.reset = int(float(reset) * 1000)
        except ValueError:
            logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)
    return info


def should_pause(remaining: int | None, floor: int = MIN_BACKFILL_BUDGET) -> bool:
    """True once the remaining budget is at or below ``floor``.

    An unknown budget never pauses.
    """
    if not isinstance(remaining, (int, float)) or isinstance(remaining, bool):
        return False
    return remaining <= floor


def to_iso(epoch_ms: int) -> str:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )


def _page_number(cursor: str | None) -> int:
    if not cursor:
        return 1
    try:
        return max(int(cursor), 1)
    except ValueError:
        return 1


class TimelineFetcher:
    """Single-page fetches against one installation's GitHub client.

    Args:
        client: GitHubClient authenticated for the installation. It should be
            created with ``wait_on_rate_limit=False``.
    """

    SEARCH_PATH = "/search/issues"
    SEARCH_PER_PAGE = 50
    SEARCH_MAX_RESULTS = 1000
    COMMITS_PER_PAGE = 100

    def __init__(self, client: GitHubClient) -> None:
        self.client = client

    async def fetch_page(
        self,
        repo_full_name: str,
        since_ms: int,
        cursor: str | None = None,
        etag: str | None = None,
        until_ms: int | None = None,
    ) -> PageResult:
        """Fetch one page of PR/issue activity updated since ``since_ms``.

        Args:
            repo_full_name: owner/name
            since_ms: Lower bound on update time (epoch ms)
            cursor: Page cursor from a previous result (default: first page)
            etag: ETag from the previous response, sent as If-None-Match
            until_ms: Optional exclusive upper bound on update time

        Returns:
            PageResult with TimelineNode items

        Raises:
            GitHubClientError: On non-rate-limit API failures
        """
        if "/" not in repo_full_name:
            raise GitHubClientError(f"Invalid repo format: {repo_full_name}")

        page = _page_number(cursor)
        query = [f"repo:{repo_full_name}", f"updated:>={to_iso(since_ms)}"]
        if until_ms is not None:
            query.append(f"updated:<{to_iso(until_ms)}")
        params = {
            "q": " ".join(query),
            "sort": "updated",
            "order": "asc",
            "per_page": str(self.SEARCH_PER_PAGE),
            "page": str(page),
        }

        try:
            response = await self.client.get_page(self.SEARCH_PATH, params=params, etag=etag)
        except RateLimitExceeded as e:
            return self._rate_limited(repo_full_name, cursor, etag, e)

        rate_limit = parse_rate_limit(response.headers)
        response_etag = response.headers.get("ETag") or etag
        if response.status_code == 304:
            return PageResult(
                has_next_page=False,
                end_cursor=cursor,
                etag=response_etag,
                rate_limit=rate_limit,
                not_modified=True,
                total_count=0,
            )

        data = response.json()
        nodes = [TimelineNode.from_search_item(item) for item in data.get("items") or []]
        total = int(data.get("total_count") or 0)
        capped_total = min(total, self.SEARCH_MAX_RESULTS)
        has_more = len(nodes) == self.SEARCH_PER_PAGE and page * self.SEARCH_PER_PAGE < capped_total
        logger.debug(
            "timeline_page_fetched",
            extra={
                "repo": repo_full_name,
                "page": page,
                "items": len(nodes),
                "total_count": total,
                "remaining": rate_limit.remaining,
            },
        )
        return PageResult(
            nodes=nodes,
            has_next_page=has_more,
            end_cursor=str(page + 1) if has_more else None,
            etag=response_etag,
            rate_limit=rate_limit,
            total_count=total,
        )

    async def fetch_commit_page(
        self,
        repo_full_name: str,
        since_ms: int,
        cursor: str | None = None,
        etag: str | None = None,
        until_ms: int | None = None,
    ) -> PageResult:
        """Fetch one page of the repository commit listing.

        Returns:
            PageResult whose nodes are raw commit listing items
        """
        if "/" not in repo_full_name:
            raise GitHubClientError(f"Invalid repo format: {repo_full_name}")

        page = _page_number(cursor)
        params = {
            "since": to_iso(since_ms),
            "per_page": str(self.COMMITS_PER_PAGE),
            "page": str(page),
        }
        if until_ms is not None:
            params["until"] = to_iso(until_ms)

        try:
            response = await self.client.get_page(
                f"/repos/{repo_full_name}/commits", params=params, etag=etag
            )
        except RateLimitExceeded as e:
            return self._rate_limited(repo_full_name, cursor, etag, e)

        rate_limit = parse_rate_limit(response.headers)
        response_etag = response.headers.get("ETag") or etag
        if response.status_code == 304:
            return PageResult(
                has_next_page=False,
                end_cursor=cursor,
                etag=response_etag,
                rate_limit=rate_limit,
                not_modified=True,
            )

        items = response.json() or []
        has_more = len(items) == self.COMMITS_PER_PAGE
        return PageResult(
            nodes=list(items),
            has_next_page=has_more,
            end_cursor=str(page + 1) if has_more else None,
            etag=response_etag,
            rate_limit=rate_limit,
        )

    @staticmethod
    def _rate_limited(
        repo_full_name: str, cursor: str | None, etag: str | None, error: RateLimitExceeded
    ) -> PageResult:
        logger.warning(
            "page_rate_limited",
            extra={
                "repo": repo_full_name,
                "cursor": cursor,
                "reset_at": error.reset_at.isoformat(),
            },
        )
        return PageResult(
            has_next_page=True,
            end_cursor=cursor,
            etag=etag,
            rate_limit=RateLimitInfo(remaining=0, reset=error.reset_ms),
            rate_limited=True,
        )
