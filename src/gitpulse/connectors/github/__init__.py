"""GitHub integration package.

Provides the async REST client (rate-limit tracking, ETag caching, backoff),
GitHub App authentication, single-page timeline/commit fetches, and the
canonicalizer that turns GitHub payloads into CanonicalEvent.
"""

from .auth import GitHubAppAuth, InstallationToken, TokenCache, TokenMintError
from .canonicalize import (
    CanonicalizeInput,
    InputKind,
    canonicalize,
    commit_from_api,
    expand_push,
    inputs_for_webhook,
)
from .client import GitHubClient, GitHubClientError, RateLimitExceeded
from .timeline import (
    MIN_BACKFILL_BUDGET,
    PageResult,
    RateLimitInfo,
    TimelineFetcher,
    TimelineNode,
    parse_rate_limit,
    should_pause,
)

__all__ = [
    "MIN_BACKFILL_BUDGET",
    "CanonicalizeInput",
    "GitHubAppAuth",
    "GitHubClient",
    "GitHubClientError",
    "InputKind",
    "InstallationToken",
    "PageResult",
    "RateLimitExceeded",
    "RateLimitInfo",
    "TimelineFetcher",
    "TimelineNode",
    "TokenCache",
    "TokenMintError",
    "canonicalize",
    "commit_from_api",
    "expand_push",
    "inputs_for_webhook",
    "parse_rate_limit",
    "should_pause",
]
