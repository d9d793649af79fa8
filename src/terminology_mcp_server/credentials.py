"""OAuth2 client-credentials token manager for the WHO ICD-11 API.

The bearer token is an expiring resource kept in the shared ``TtlCache``
under the ``token`` prefix. It is refreshed ahead of the upstream expiry and
evicted immediately when an API call reports it as rejected (401).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from terminology_mcp_server.cache import MISSING, CachePrefix, TtlCache
from terminology_mcp_server.errors import AuthConfigError, UpstreamApiError
from terminology_mcp_server.retry import RetryExecutor, RetryPolicy
from terminology_mcp_server.transport import HttpTransport

logger = logging.getLogger(__name__)

TOKEN_CACHE_KEY = "who_oauth_token"
WHO_TOKEN_SCOPE = "icdapi_access"

# The token exchange is retried more patiently than ordinary lookups.
TOKEN_RETRY_POLICY = RetryPolicy(max_retries=3, initial_delay=2.0)


@dataclass(frozen=True)
class Credential:
    """A bearer token and its absolute expiry (``time.monotonic`` based)."""

    access_token: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


class OAuthTokenManager:
    """Obtains, caches, and refreshes the WHO bearer token.

    Args:
        client_id: WHO API client id.
        client_secret: WHO API client secret.
        token_url: OAuth2 token endpoint.
        cache: Shared TTL cache; the token lives under ``token:who_oauth_token``.
        transport: HTTP transport used for the token exchange.
        retry_executor: Retry wrapper for the exchange.
        token_ttl: Upper bound on how long a token is reused, in seconds.
        refresh_margin: Seconds subtracted from the upstream ``expires_in``.
        clock: Monotonic clock (injectable for tests).

    Raises:
        AuthConfigError: If either credential is empty.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str,
        cache: TtlCache,
        transport: HttpTransport,
        retry_executor: RetryExecutor | None = None,
        token_ttl: float = 3000,
        refresh_margin: float = 60,
        scope: str = WHO_TOKEN_SCOPE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not client_id or not client_secret:
            raise AuthConfigError(
                "WHO API credentials not configured. "
                "Set WHO_CLIENT_ID and WHO_CLIENT_SECRET environment variables."
            )
        self._client_id = client_id
        self._client_secret = client_secret
        self.token_url = token_url
        self.scope = scope
        self._cache = cache
        self._transport = transport
        self._retry = retry_executor or RetryExecutor(TOKEN_RETRY_POLICY, name="who-token")
        self.token_ttl = token_ttl
        self.refresh_margin = refresh_margin
        self._clock = clock

    async def get_token(self) -> str:
        """Return a valid bearer token, exchanging credentials if needed."""
        cached = self._cache.get(CachePrefix.TOKEN, TOKEN_CACHE_KEY)
        if cached is not MISSING and cached.is_valid(self._clock()):
            return cached.access_token  # type: ignore[no-any-return]

        payload = await self._retry.call(self._exchange)
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            raise UpstreamApiError("WHO token response did not include an access_token")

        ttl = self._ttl_for(payload.get("expires_in"))
        credential = Credential(access_token=access_token, expires_at=self._clock() + ttl)
        self._cache.set(CachePrefix.TOKEN, TOKEN_CACHE_KEY, credential, ttl)
        logger.info("New WHO OAuth token obtained and cached for %.0fs", ttl)
        return access_token

    def invalidate(self) -> None:
        """Evict the stored token so the next call re-authenticates."""
        if self._cache.delete(CachePrefix.TOKEN, TOKEN_CACHE_KEY):
            logger.info("WHO OAuth token evicted")

    async def aclose(self) -> None:
        await self._transport.aclose()

    # -- Internal ----------------------------------------------------------

    async def _exchange(self) -> dict:
        return await self._transport.post_form(  # type: ignore[no-any-return]
            self.token_url,
            data={
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "grant_type": "client_credentials",
                "scope": self.scope,
            },
        )

    def _ttl_for(self, expires_in: object) -> float:
        """Reuse window: the configured TTL, shortened if the token expires sooner."""
        ttl = self.token_ttl
        if isinstance(expires_in, (int, float)) and not isinstance(expires_in, bool):
            ttl = min(ttl, float(expires_in) - self.refresh_margin)
        # A token that is already near expiry is still cached briefly.
        return max(1.0, ttl)
