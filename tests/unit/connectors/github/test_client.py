"""Unit tests for the GitHub API client.

Tests GitHubClient with:
- Authentication headers
- Fail-fast rate limiting for ingestion jobs (wait_on_rate_limit=False)
- Wait-and-retry rate limiting (primary 403, secondary 403, 429)
- ETag caching and conditional page requests
- Error handling (retries, backoff, non-retryable errors)
"""

import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from gitpulse.connectors.github.client import (
    GitHubClient,
    GitHubClientError,
    RateLimitExceeded,
)

SLEEP = "gitpulse.connectors.github.client.asyncio.sleep"


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def github_client():
    """GitHubClient with zero pacing delay."""
    return GitHubClient(token="ghs_test_token", min_delay_ms=0)


@pytest.fixture
def job_client():
    """GitHubClient configured the way ingestion jobs use it."""
    return GitHubClient(token="ghs_test_token", min_delay_ms=0, wait_on_rate_limit=False)


def _mock_response(
    status_code: int = 200,
    json_data: dict | list | None = None,
    headers: dict | None = None,
    content: bytes = b"{}",
) -> Mock:
    """Create a mock httpx.Response with given attributes."""
    resp = Mock(spec=httpx.Response)
    resp.status_code = status_code
    resp.json.return_value = json_data if json_data is not None else {}
    resp.content = content
    resp.text = content.decode() if content else ""
    _headers = {
        "X-RateLimit-Remaining": "4999",
        "X-RateLimit-Reset": str(int(time.time()) + 3600),
    }
    if headers:
        _headers.update(headers)
    resp.headers = _headers
    return resp


def _exhausted(reset: int) -> Mock:
    return _mock_response(
        status_code=403,
        headers={"X-RateLimit-Remaining": "0", "X-RateLimit-Reset": str(reset)},
        json_data={"message": "API rate limit exceeded"},
        content=b'{"message": "API rate limit exceeded"}',
    )


# =============================================================================
# Configuration
# =============================================================================


class TestConfiguration:
    """Test client construction."""

    def test_auth_headers(self, github_client):
        headers = github_client._client.headers

        assert headers["Authorization"] == "Bearer ghs_test_token"
        assert headers["Accept"] == "application/vnd.github+json"
        assert headers["X-GitHub-Api-Version"] == "2022-11-28"
        assert "gitpulse-ingest" in headers["User-Agent"]

    def test_custom_base_url_strips_slash(self):
        client = GitHubClient(token="t", base_url="https://github.example.com/api/v3/")

        assert client.base_url == "https://github.example.com/api/v3"

    @pytest.mark.asyncio
    async def test_close_on_exit(self):
        client = GitHubClient(token="t")

        with patch.object(client._client, "aclose", new=AsyncMock()) as mock_close:
            async with client:
                pass

        mock_close.assert_awaited_once()


# =============================================================================
# Rate limiting
# =============================================================================


class TestFailFastRateLimit:
    """Ingestion clients raise instead of sleeping."""

    @pytest.mark.asyncio
    async def test_primary_exhaustion_raises_with_reset(self, job_client):
        reset = int(time.time()) + 600

        with (
            patch.object(
                job_client._client, "request", new=AsyncMock(return_value=_exhausted(reset))
            ) as mock_request,
            patch(SLEEP, new=AsyncMock()) as mock_sleep,
            pytest.raises(RateLimitExceeded) as exc_info,
        ):
            await job_client.get_repository("acme/api")

        assert exc_info.value.reset_ms == reset * 1000
        assert exc_info.value.status_code == 403
        assert mock_request.call_count == 1
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_429_raises_with_retry_after(self, job_client):
        resp_429 = _mock_response(status_code=429, headers={"Retry-After": "30"})
        before = time.time()

        with (
            patch.object(job_client._client, "request", new=AsyncMock(return_value=resp_429)),
            pytest.raises(RateLimitExceeded, match="Secondary rate limit") as exc_info,
        ):
            await job_client.get_page("/search/issues")

        assert exc_info.value.reset_at.timestamp() >= before + 30

    @pytest.mark.asyncio
    async def test_secondary_403_raises(self, job_client):
        resp = _mock_response(
            status_code=403,
            json_data={"message": "You have exceeded a secondary rate limit"},
            content=b'{"message": "You have exceeded a secondary rate limit"}',
        )

        with (
            patch.object(job_client._client, "request", new=AsyncMock(return_value=resp)),
            pytest.raises(RateLimitExceeded),
        ):
            await job_client.get_page("/search/issues")


class TestWaitingRateLimit:
    """Default clients sleep and retry."""

    @pytest.mark.asyncio
    async def test_primary_exhaustion_waits_then_succeeds(self, github_client):
        resp_ok = _mock_response(json_data={"full_name": "acme/api"})

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[_exhausted(int(time.time()) + 5), resp_ok]),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            result = await github_client.get_repository("acme/api")

        assert result == {"full_name": "acme/api"}

    @pytest.mark.asyncio
    async def test_429_sleeps_retry_after(self, github_client):
        resp_429 = _mock_response(status_code=429, headers={"Retry-After": "5"})
        resp_ok = _mock_response(json_data={"ok": True})

        with (
            patch.object(
                github_client._client, "request", new=AsyncMock(side_effect=[resp_429, resp_ok])
            ),
            patch(SLEEP, new=AsyncMock()) as mock_sleep,
        ):
            result = await github_client._request("GET", "/user")

        assert result == {"ok": True}
        assert any(c.args[0] == 5 for c in mock_sleep.call_args_list)

    @pytest.mark.asyncio
    async def test_exhaustion_after_retries_raises(self, github_client):
        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(return_value=_exhausted(int(time.time()) + 5)),
            ) as mock_request,
            patch(SLEEP, new=AsyncMock()),
            pytest.raises(RateLimitExceeded),
        ):
            await github_client._request("GET", "/user")

        assert mock_request.call_count == github_client.MAX_RETRIES + 1

    @pytest.mark.asyncio
    async def test_rate_limit_tracking(self, github_client):
        resp = _mock_response(headers={"X-RateLimit-Remaining": "4500"})

        with patch.object(github_client._client, "request", new=AsyncMock(return_value=resp)):
            await github_client._request("GET", "/user")

        assert github_client.get_rate_limit_status()["primary_remaining"] == 4500

    def test_reset_ms(self):
        reset_at = datetime(2025, 10, 9, 10, 0, tzinfo=timezone.utc)

        exc = RateLimitExceeded(reset_at)

        assert exc.reset_ms == int(reset_at.timestamp() * 1000)
        assert reset_at.isoformat() in str(exc)


# =============================================================================
# Conditional requests
# =============================================================================


class TestConditionalRequests:
    """Test ETag handling."""

    @pytest.mark.asyncio
    async def test_get_page_sends_if_none_match(self, github_client):
        resp = _mock_response(status_code=304)

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            result = await github_client.get_page(
                "/repos/acme/api/commits", params={"page": "1"}, etag='"abc"'
            )

        assert result is resp
        call = mock_request.call_args
        assert call.args == ("GET", "/repos/acme/api/commits")
        assert call.kwargs["params"] == {"page": "1"}
        assert call.kwargs["headers"] == {"If-None-Match": '"abc"'}

    @pytest.mark.asyncio
    async def test_get_page_without_etag_is_unconditional(self, github_client):
        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=_mock_response())
        ) as mock_request:
            await github_client.get_page("/search/issues")

        assert mock_request.call_args.kwargs["headers"] == {}

    @pytest.mark.asyncio
    async def test_304_returns_cached_data(self, github_client):
        original = {"id": 101, "full_name": "acme/api"}
        resp1 = _mock_response(json_data=original, headers={"ETag": '"v1"'})
        resp2 = _mock_response(status_code=304)

        with patch.object(
            github_client._client, "request", new=AsyncMock(side_effect=[resp1, resp2])
        ) as mock_request:
            first = await github_client.get_repository("acme/api")
            second = await github_client.get_repository("acme/api")

        assert first == second == original
        assert mock_request.call_args_list[1].kwargs["headers"]["If-None-Match"] == '"v1"'

    @pytest.mark.asyncio
    async def test_token_exchange_is_not_cached(self, github_client):
        resp = _mock_response(
            status_code=201,
            json_data={"token": "ghs_x", "expires_at": "2025-10-09T10:00:00Z"},
            headers={"ETag": '"t"'},
        )

        with patch.object(
            github_client._client, "request", new=AsyncMock(return_value=resp)
        ) as mock_request:
            result = await github_client.create_installation_token(42)

        assert result["token"] == "ghs_x"
        assert mock_request.call_args.args == ("POST", "/app/installations/42/access_tokens")
        assert github_client._etag_cache == {}


# =============================================================================
# Error handling
# =============================================================================


class TestErrorHandling:
    """Test retries and non-retryable failures."""

    @pytest.mark.asyncio
    async def test_retry_on_500(self, github_client):
        resp_500 = _mock_response(status_code=500)
        resp_ok = _mock_response(json_data={"ok": True})

        with (
            patch.object(
                github_client._client, "request", new=AsyncMock(side_effect=[resp_500, resp_ok])
            ),
            patch(SLEEP, new=AsyncMock()),
            patch("gitpulse.connectors.github.client.random.uniform", return_value=0.5),
        ):
            result = await github_client._request("GET", "/user")

        assert result == {"ok": True}

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries(self, github_client):
        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(return_value=_mock_response(status_code=502)),
            ) as mock_request,
            patch(SLEEP, new=AsyncMock()),
            pytest.raises(GitHubClientError, match="server error 502"),
        ):
            await github_client._request("GET", "/user")

        assert mock_request.call_count == github_client.MAX_RETRIES + 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 404, 422])
    async def test_client_errors_not_retried(self, github_client, status):
        resp = _mock_response(
            status_code=status,
            json_data={"message": "Nope"},
            content=b'{"message": "Nope"}',
        )

        with (
            patch.object(
                github_client._client, "request", new=AsyncMock(return_value=resp)
            ) as mock_request,
            pytest.raises(GitHubClientError, match=f"GitHub API error {status}: Nope") as exc_info,
        ):
            await github_client.get_repository("acme/missing")

        assert exc_info.value.status_code == status
        assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_forbidden_403_not_rate_limit(self, job_client):
        resp = _mock_response(
            status_code=403,
            json_data={"message": "Resource not accessible by integration"},
            content=b'{"message": "Resource not accessible by integration"}',
        )

        with (
            patch.object(job_client._client, "request", new=AsyncMock(return_value=resp)),
            pytest.raises(GitHubClientError, match="403") as exc_info,
        ):
            await job_client.get_page("/repos/acme/api/commits")

        assert not isinstance(exc_info.value, RateLimitExceeded)

    @pytest.mark.asyncio
    async def test_timeout_retries(self, github_client):
        resp_ok = _mock_response(json_data={"ok": True})

        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=[httpx.ReadTimeout("Read timeout"), resp_ok]),
            ),
            patch(SLEEP, new=AsyncMock()),
        ):
            result = await github_client._request("GET", "/user")

        assert result == {"ok": True}

    @pytest.mark.asyncio
    async def test_http_error_wrapped(self, github_client):
        with (
            patch.object(
                github_client._client,
                "request",
                new=AsyncMock(side_effect=httpx.ConnectError("Connection failed")),
            ),
            pytest.raises(GitHubClientError, match="HTTP error"),
        ):
            await github_client._request("GET", "/user")
