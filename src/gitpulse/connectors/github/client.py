"""GitHub REST API client.

Provides async httpx-based client for GitHub REST API v3 with token auth.
Implements rate-limit header tracking (primary + secondary), ETag caching
for conditional requests, and exponential backoff.

Ingestion jobs run with ``wait_on_rate_limit=False``: instead of sleeping
through an exhausted budget, the client raises RateLimitExceeded at once so
the job can block and be resumed by the scheduler.

Reference: https://docs.github.com/en/rest
Rate limits: https://docs.github.com/en/rest/using-the-rest-api/rate-limits-for-the-rest-api
"""

import asyncio
import hashlib
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any

import httpx

logger = logging.getLogger("gitpulse.github.client")

__all__ = ["GitHubClient", "GitHubClientError", "RateLimitExceeded"]


class GitHubClientError(Exception):
    """Raised when GitHub API request fails.

    Wraps httpx errors and HTTP errors for consistent error handling.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RateLimitExceeded(GitHubClientError):
    """Raised when GitHub rate limit is exhausted."""

    def __init__(self, reset_at: datetime, message: str = "Rate limit exceeded"):
        self.reset_at = reset_at
        super().__init__(f"{message}. Resets at {reset_at.isoformat()}", status_code=403)

    @property
    def reset_ms(self) -> int:
        """Reset time as epoch milliseconds."""
        return int(self.reset_at.timestamp() * 1000)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json() if response.content else {}
    except (ValueError, UnicodeDecodeError):
        body = {}
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text


class GitHubClient:
    """GitHub REST API client using httpx with Bearer token auth.

    Uses long-lived httpx.AsyncClient with connection pooling.

    Attributes:
        base_url: GitHub API base URL (default: https://api.github.com)
        wait_on_rate_limit: Sleep and retry on rate limiting instead of raising
        _rate_limit_remaining: Tracked from X-RateLimit-Remaining header
        _rate_limit_reset: Tracked from X-RateLimit-Reset header (epoch seconds)
        _etag_cache: Request-keyed cache of ETag/Last-Modified values

    Example:
        >>> async with GitHubClient("ghs_token") as client:
        ...     repo = await client.get_repository("owner/repo")
    """

    # GitHub API base URL
    BASE_URL = "https://api.github.com"

    # Rate limit constants
    SECONDARY_LIMIT_POINTS = 900  # points/minute
    SAFETY_MARGIN = 0.20  # Reserve 20% of secondary quota
    MIN_REQUEST_DELAY_MS = 100  # Minimum delay between requests (ms)

    # Timeout configuration
    CONNECT_TIMEOUT = 5.0  # seconds
    READ_TIMEOUT = 30.0  # seconds
    WRITE_TIMEOUT = 5.0  # seconds
    POOL_TIMEOUT = 5.0  # seconds

    # Retry configuration
    MAX_RETRIES = 3
    BASE_BACKOFF = 2  # seconds, exponential: min(60, 2^attempt)
    MAX_BACKOFF = 60  # seconds
    DEFAULT_RETRY_AFTER = 60  # seconds, when a 429/secondary 403 names none

    MAX_ETAG_CACHE_SIZE = 1000

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        wait_on_rate_limit: bool = True,
        min_delay_ms: int = MIN_REQUEST_DELAY_MS,
        user_agent: str = "gitpulse-ingest/1.0",
    ) -> None:
        """Initialize GitHub client with token authentication.

        Args:
            token: Installation access token, PAT, or App JWT
            base_url: GitHub API base URL (default: https://api.github.com)
            wait_on_rate_limit: Sleep through rate limiting (True) or raise
                RateLimitExceeded immediately (False)
            min_delay_ms: Minimum delay between requests in milliseconds
            user_agent: User-Agent header value
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.wait_on_rate_limit = wait_on_rate_limit
        self._min_delay_s = min_delay_ms / 1000.0

        self._rate_limit_remaining: int | None = None
        self._rate_limit_reset: float | None = None
        self._secondary_points_used: int = 0
        self._secondary_window_start: float = time.monotonic()
        self._last_request_time: float = 0.0

        # {key: {"etag": str, "last_modified": str, "data": Any}}
        self._etag_cache: dict[str, dict[str, Any]] = {}

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
                "User-Agent": user_agent,
            },
            timeout=httpx.Timeout(
                connect=self.CONNECT_TIMEOUT,
                read=self.READ_TIMEOUT,
                write=self.WRITE_TIMEOUT,
                pool=self.POOL_TIMEOUT,
            ),
        )

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit -- close httpx client."""
        await self.close()

    async def close(self) -> None:
        """Close the httpx client and release connections."""
        await self._client.aclose()

    # --- Repository Data Endpoints ---

    async def get_repository(self, full_name: str) -> dict[str, Any]:
        """Get repository metadata.

        Args:
            full_name: Repository in owner/repo format

        Returns:
            Repository dict (id, node_id, full_name, private, fork, archived, ...)
        """
        return await self._request("GET", f"/repos/{full_name}")

    async def create_installation_token(self, installation_id: int) -> dict[str, Any]:
        """Exchange an App JWT for an installation access token.

        The client must have been constructed with the App JWT as its token.

        Returns:
            Dict with ``token`` and ``expires_at`` (ISO 8601)
        """
        return await self._request(
            "POST",
            f"/app/installations/{installation_id}/access_tokens",
            use_cache=False,
        )

    async def get_page(
        self,
        path: str,
        params: dict[str, str] | None = None,
        etag: str | None = None,
        point_cost: int = 1,
    ) -> httpx.Response:
        """Fetch one page of a listing endpoint, optionally conditional.

        Unlike _request(), the response is returned as-is (2xx or 304) so
        callers can read pagination and rate-limit headers themselves.

        Args:
            path: API path
            params: Query parameters
            etag: Prior ETag to send as If-None-Match
            point_cost: Request point cost for secondary rate limit

        Returns:
            Raw httpx.Response

        Raises:
            GitHubClientError: On non-retryable errors
            RateLimitExceeded: When rate limited
        """
        headers = {"If-None-Match": etag} if etag else None
        return await self._raw_request(
            "GET", path, params=params, point_cost=point_cost, extra_headers=headers
        )

    # --- Rate Limiting ---

    async def _enforce_rate_limit(self, point_cost: int) -> None:
        """Pace requests against the secondary limit and a minimum delay.

        Args:
            point_cost: Point cost of the upcoming request (1-5)
        """
        now = time.monotonic()

        if now - self._secondary_window_start >= 60.0:
            self._secondary_points_used = 0
            self._secondary_window_start = now

        effective_secondary = int(
            self.SECONDARY_LIMIT_POINTS * (1 - self.SAFETY_MARGIN)
        )
        if self._secondary_points_used + point_cost > effective_secondary:
            wait_time = 60.0 - (now - self._secondary_window_start)
            if wait_time > 0:
                logger.info(
                    "Secondary rate limit approaching (%d/%d points). Waiting %.1fs",
                    self._secondary_points_used,
                    effective_secondary,
                    wait_time,
                )
                await asyncio.sleep(wait_time)
                self._secondary_points_used = 0
                self._secondary_window_start = time.monotonic()

        elapsed = now - self._last_request_time
        if elapsed < self._min_delay_s:
            await asyncio.sleep(self._min_delay_s - elapsed)

    def _update_rate_limits(self, response: httpx.Response) -> None:
        """Update rate limit tracking from response headers.

        Args:
            response: httpx response with rate limit headers
        """
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is not None:
            try:
                self._rate_limit_remaining = int(remaining)
            except ValueError:
                logger.warning(
                    "Non-numeric X-RateLimit-Remaining header: %r", remaining
                )

        reset = response.headers.get("X-RateLimit-Reset")
        if reset is not None:
            try:
                self._rate_limit_reset = float(reset)
            except ValueError:
                logger.warning("Non-numeric X-RateLimit-Reset header: %r", reset)

    def _retry_after(self, response: httpx.Response) -> int:
        try:
            return int(response.headers.get("Retry-After", self.DEFAULT_RETRY_AFTER))
        except ValueError:
            return self.DEFAULT_RETRY_AFTER

    # --- ETag Caching ---

    def _cache_key(self, url: str, params: dict[str, str] | None = None) -> str:
        key_parts = [url]
        if params:
            key_parts.extend(f"{k}={v}" for k, v in sorted(params.items()))
        return hashlib.sha256("|".join(key_parts).encode()).hexdigest()[:16]

    def _get_conditional_headers(self, cache_key: str) -> dict[str, str]:
        headers: dict[str, str] = {}
        cached = self._etag_cache.get(cache_key)
        if cached:
            if cached.get("last_modified"):
                headers["If-Modified-Since"] = cached["last_modified"]
            if cached.get("etag"):
                headers["If-None-Match"] = cached["etag"]
        return headers

    def _update_cache(self, cache_key: str, response: httpx.Response, data: Any) -> None:
        etag = response.headers.get("ETag")
        last_modified = response.headers.get("Last-Modified")
        if etag or last_modified:
            # Evict oldest 25% when full (dicts keep insertion order)
            if len(self._etag_cache) >= self.MAX_ETAG_CACHE_SIZE:
                for key in list(self._etag_cache.keys())[: self.MAX_ETAG_CACHE_SIZE // 4]:
                    del self._etag_cache[key]
            self._etag_cache[cache_key] = {
                "etag": etag,
                "last_modified": last_modified,
                "data": data,
            }

    # --- Core HTTP Methods ---

    async def _raw_request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Make a raw HTTP request with rate limiting, retries, and error handling.

        Handles all retry logic (5xx, 429, 403, timeout) and returns the raw
        httpx.Response on success (2xx or 304).

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path (e.g., /repos/owner/repo/commits)
            params: Query parameters
            point_cost: Request point cost for secondary rate limit (1-5)
            extra_headers: Additional headers (e.g., conditional cache headers)

        Returns:
            Raw httpx.Response (status 2xx or 304)

        Raises:
            GitHubClientError: On non-retryable errors (auth, not found)
            RateLimitExceeded: When rate limited and not waiting, or still
                rate limited after retries
        """
        for attempt in range(self.MAX_RETRIES + 1):
            await self._enforce_rate_limit(point_cost)

            try:
                self._last_request_time = time.monotonic()
                response = await self._client.request(
                    method, path, params=params, headers=extra_headers or {}
                )

                # Only charge the secondary budget once per logical request
                self._update_rate_limits(response)
                if attempt == 0:
                    self._secondary_points_used += point_cost

                # Primary rate limit exhausted
                if response.status_code == 403:
                    remaining = response.headers.get("X-RateLimit-Remaining", "")
                    message = _error_message(response)
                    if remaining == "0":
                        reset = float(response.headers.get("X-RateLimit-Reset", "0"))
                        reset_dt = datetime.fromtimestamp(reset, tz=timezone.utc)
                        if self.wait_on_rate_limit and attempt < self.MAX_RETRIES:
                            wait = max(1, reset - time.time())
                            logger.warning(
                                "Rate limit hit. Waiting %.0fs (attempt %d/%d)",
                                wait,
                                attempt + 1,
                                self.MAX_RETRIES,
                            )
                            await asyncio.sleep(min(wait, self.MAX_BACKOFF))
                            continue
                        raise RateLimitExceeded(reset_dt)
                    if "secondary rate limit" in message.lower():
                        retry_after = self._retry_after(response)
                        if self.wait_on_rate_limit and attempt < self.MAX_RETRIES:
                            logger.warning(
                                "Secondary rate limit (403). Waiting %ds (attempt %d/%d)",
                                retry_after,
                                attempt + 1,
                                self.MAX_RETRIES,
                            )
                            await asyncio.sleep(retry_after)
                            continue
                        raise RateLimitExceeded(
                            datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc),
                            "Secondary rate limit exceeded",
                        )
                    # Forbidden, insufficient permissions
                    raise GitHubClientError(f"GitHub API error 403: {message}", 403)

                # Secondary rate limit (Retry-After header)
                if response.status_code == 429:
                    retry_after = self._retry_after(response)
                    if self.wait_on_rate_limit and attempt < self.MAX_RETRIES:
                        logger.warning(
                            "Secondary rate limit. Retry-After: %ds (attempt %d/%d)",
                            retry_after,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(retry_after)
                        continue
                    raise RateLimitExceeded(
                        datetime.fromtimestamp(time.time() + retry_after, tz=timezone.utc),
                        "Secondary rate limit exceeded",
                    )

                # Client errors (non-retryable)
                if response.status_code in (401, 404, 422):
                    raise GitHubClientError(
                        f"GitHub API error {response.status_code}: {_error_message(response)}",
                        response.status_code,
                    )

                # Server errors (retryable)
                if response.status_code >= 500:
                    if attempt < self.MAX_RETRIES:
                        backoff = min(
                            self.MAX_BACKOFF,
                            self.BASE_BACKOFF ** (attempt + 1),
                        ) + random.uniform(0, 1)  # jitter
                        logger.warning(
                            "Server error %d. Retrying in %.1fs (attempt %d/%d)",
                            response.status_code,
                            backoff,
                            attempt + 1,
                            self.MAX_RETRIES,
                        )
                        await asyncio.sleep(backoff)
                        continue
                    raise GitHubClientError(
                        f"GitHub API server error {response.status_code} after "
                        f"{self.MAX_RETRIES} retries",
                        response.status_code,
                    )

                # Success (2xx or 304)
                return response

            except httpx.TimeoutException as e:
                if attempt < self.MAX_RETRIES:
                    backoff = min(self.MAX_BACKOFF, self.BASE_BACKOFF ** (attempt + 1))
                    logger.warning(
                        "Request timeout. Retrying in %.1fs (attempt %d/%d)",
                        backoff,
                        attempt + 1,
                        self.MAX_RETRIES,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise GitHubClientError(
                    f"Request timeout after {self.MAX_RETRIES} retries: {e}"
                ) from e

            except httpx.HTTPError as e:
                raise GitHubClientError(f"HTTP error: {e}") from e

        raise GitHubClientError("Request failed after all retries")

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, str] | None = None,
        point_cost: int = 1,
        use_cache: bool = True,
    ) -> dict[str, Any]:
        """Make a single API request with caching and JSON parsing.

        Delegates to _raw_request() for retry/error logic. GET requests are
        sent conditionally when a cached ETag exists; a 304 returns the
        cached body.

        Args:
            method: HTTP method (GET, POST, etc.)
            path: API path
            params: Query parameters
            point_cost: Request point cost for secondary rate limit (1-5)
            use_cache: Whether to use ETag caching for GET requests

        Returns:
            Parsed JSON response

        Raises:
            GitHubClientError: On non-retryable errors (auth, not found)
            RateLimitExceeded: When rate limited
        """
        cache_key = (
            self._cache_key(path, params) if use_cache and method == "GET" else ""
        )

        for attempt in range(self.MAX_RETRIES + 1):
            extra_headers = self._get_conditional_headers(cache_key) if cache_key else {}

            response = await self._raw_request(
                method,
                path,
                params=params,
                point_cost=point_cost,
                extra_headers=extra_headers or None,
            )

            if response.status_code == 304 and cache_key:
                cached = self._etag_cache.get(cache_key)
                if cached:
                    # 304 is free against the secondary budget
                    self._secondary_points_used -= point_cost
                    return cached["data"]
                self._etag_cache.pop(cache_key, None)
                self._secondary_points_used -= point_cost
                logger.warning("Received 304 but no cached data for %s, retrying", path)
                if attempt < self.MAX_RETRIES:
                    continue
                raise GitHubClientError(
                    f"Received 304 Not Modified but no cached data for {path}"
                )

            data = response.json()
            if cache_key:
                self._update_cache(cache_key, response, data)
            return data

        raise GitHubClientError("Request failed after all retries")

    # --- Metrics ---

    def get_rate_limit_status(self) -> dict[str, Any]:
        """Get current rate limit status for metrics/logging.

        Returns:
            Dict with remaining, reset, secondary_points_used, cache_size
        """
        return {
            "primary_remaining": self._rate_limit_remaining,
            "primary_reset": self._rate_limit_reset,
            "secondary_points_used": self._secondary_points_used,
            "etag_cache_size": len(self._etag_cache),
        }
