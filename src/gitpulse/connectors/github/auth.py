"""GitHub App authentication.

Signs short-lived App JWTs (RS256, python-jose) and exchanges them for
installation access tokens. Both are cached in an injected TokenCache and
refreshed shortly before they expire.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from jose import jwt

from ...config import SyncConfig, get_config
from ...models import now_ms
from .canonicalize import parse_timestamp
from .client import GitHubClient, GitHubClientError

__all__ = [
    "APP_JWT_SKEW_SECONDS",
    "APP_JWT_TTL_MS",
    "TOKEN_REFRESH_BUFFER_MS",
    "GitHubAppAuth",
    "InstallationToken",
    "TokenCache",
    "TokenMintError",
]

logger = logging.getLogger("gitpulse.github.auth")

TOKEN_REFRESH_BUFFER_MS = 60 * 1000
APP_JWT_TTL_MS = 8 * 60 * 1000  # GitHub rejects App JWTs living longer than 10 min
APP_JWT_SKEW_SECONDS = 30

_APP_JWT_KEY = "app-jwt"


class TokenMintError(GitHubClientError):
    """Raised when an installation token cannot be obtained."""

    pass


@dataclass(frozen=True)
class InstallationToken:
    token: str
    expires_at: int  # epoch ms


class TokenCache:
    """Expiring token cache.

    Entries are served only while more than ``refresh_buffer_ms`` of their
    lifetime remains.
    """

    def __init__(self, refresh_buffer_ms: int = TOKEN_REFRESH_BUFFER_MS) -> None:
        self.refresh_buffer_ms = refresh_buffer_ms
        self._entries: dict[str, InstallationToken] = {}
        self._lock = threading.Lock()

    def get(self, key: str, now: int) -> InstallationToken | None:
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or entry.expires_at - now <= self.refresh_buffer_ms:
            return None
        return entry

    def set(self, key: str, token: InstallationToken) -> None:
        with self._lock:
            self._entries[key] = token

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class GitHubAppAuth:
    """Mint installation tokens for a GitHub App.

    Args:
        app_id: GitHub App id (JWT issuer)
        private_key: PEM-encoded RSA private key
        cache: Shared TokenCache (a private one is created if omitted)
        base_url: GitHub API base URL
        client_factory: Builds the GitHubClient used for the token exchange
        clock: Epoch-ms clock

    Example:
        >>> auth = GitHubAppAuth.from_config()
        >>> token = await auth.get_token(12345)
    """

    def __init__(
        self,
        app_id: str,
        private_key: str,
        cache: TokenCache | None = None,
        base_url: str | None = None,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not app_id or not private_key:
            raise TokenMintError("GITHUB_APP_ID and GITHUB_APP_PRIVATE_KEY must be configured")
        self.app_id = app_id
        self._private_key = private_key
        self.cache = cache if cache is not None else TokenCache()
        self.base_url = base_url
        self._client_factory = client_factory
        self._clock = clock

    @classmethod
    def from_config(
        cls, config: SyncConfig | None = None, cache: TokenCache | None = None
    ) -> "GitHubAppAuth":
        config = config or get_config()
        return cls(
            app_id=config.github_app_id,
            private_key=config.github_app_private_key.get_secret_value(),
            cache=cache,
            base_url=config.github_api_url,
        )

    def build_app_jwt(self) -> str:
        """Return a cached or freshly signed App JWT."""
        now = self._clock()
        cached = self.cache.get(_APP_JWT_KEY, now)
        if cached is not None:
            return cached.token

        claims = {
            "iat": now // 1000 - APP_JWT_SKEW_SECONDS,
            "exp": (now + APP_JWT_TTL_MS) // 1000,
            "iss": self.app_id,
        }
        token = jwt.encode(claims, self._private_key, algorithm="RS256")
        self.cache.set(_APP_JWT_KEY, InstallationToken(token, now + APP_JWT_TTL_MS))
        return token

    async def get_installation_token(self, installation_id: int) -> InstallationToken:
        """Return a cached or newly minted installation access token.

        Raises:
            TokenMintError: If GitHub rejects the exchange
        """
        key = f"installation:{installation_id}"
        cached = self.cache.get(key, self._clock())
        if cached is not None:
            return cached

        app_jwt = self.build_app_jwt()
        try:
            async with self._client_factory(app_jwt, base_url=self.base_url) as client:
                payload = await client.create_installation_token(installation_id)
        except GitHubClientError as e:
            raise TokenMintError(
                f"Failed to mint installation token for {installation_id}: {e}",
                e.status_code,
            ) from e

        expires_at = parse_timestamp(payload.get("expires_at"))
        if not payload.get("token") or expires_at is None:
            raise TokenMintError(
                f"Malformed token response for installation {installation_id}"
            )

        token = InstallationToken(token=payload["token"], expires_at=expires_at)
        self.cache.set(key, token)
        logger.info(
            "installation_token_minted",
            extra={"installation_id": installation_id, "expires_at": expires_at},
        )
        return token

    async def get_token(self, installation_id: int) -> str:
        """Token string for ``installation_id``; the job runner's token provider."""
        return (await self.get_installation_token(installation_id)).token
