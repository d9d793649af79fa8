"""Base class and shared helpers for upstream terminology clients.

Every client composes the same three governance pieces around its HTTP
calls: the upstream's token bucket, a retry executor, and the shared TTL
cache. Subclasses only build paths, pick cache keys, and normalize payloads.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, TypeVar

from terminology_mcp_server.cache import TtlCache
from terminology_mcp_server.config import CacheTtlConfig
from terminology_mcp_server.errors import NotFoundError
from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter
from terminology_mcp_server.retry import RetryExecutor, RetryPolicy
from terminology_mcp_server.transport import HttpTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

#: Upstream API calls get two retries (three attempts in total).
UPSTREAM_RETRY_POLICY = RetryPolicy(max_retries=2)


class HierarchyDirection(str, Enum):
    """Direction for hierarchy traversal."""

    PARENTS = "parents"
    CHILDREN = "children"


class BaseUpstreamClient:
    """Rate-limited, retried, cached access to one upstream API.

    Args:
        transport: HTTP transport bound to the upstream base URL.
        limiter: The upstream's token bucket; one token per HTTP attempt.
        cache: Shared TTL cache.
        ttl: TTL classes used for cache writes.
        retry_executor: Retry wrapper; defaults to ``UPSTREAM_RETRY_POLICY``.
    """

    #: Subclasses override to provide a unique cache namespace.
    _cache_namespace: str = "base"

    def __init__(
        self,
        transport: HttpTransport,
        limiter: TokenBucketRateLimiter,
        cache: TtlCache,
        ttl: CacheTtlConfig | None = None,
        retry_executor: RetryExecutor | None = None,
    ) -> None:
        self._transport = transport
        self.limiter = limiter
        self._cache = cache
        self.ttl = ttl or CacheTtlConfig()
        self._retry = retry_executor or RetryExecutor(
            UPSTREAM_RETRY_POLICY, name=self._cache_namespace
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._transport.aclose()

    # -- Internal helpers ---------------------------------------------------

    async def _cached(
        self, key: str, factory: Callable[[], Awaitable[T]], ttl: float
    ) -> T:
        """Cache-aside under this client's namespace."""
        return await self._cache.get_or_compute(self._cache_namespace, key, factory, ttl)

    async def _get(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """GET JSON with retry; every attempt takes a limiter token first."""

        async def attempt() -> Any:
            await self.limiter.acquire()
            return await self._send(path, params, headers)

        return await self._retry.call(attempt)

    async def _get_or_none(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Like ``_get`` but returns None on 404."""
        try:
            return await self._get(path, params, headers)
        except NotFoundError:
            logger.debug("[%s] not found: %s", self._cache_namespace, path)
            return None

    async def _send(
        self,
        path: str,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
    ) -> Any:
        """One raw HTTP attempt (the limiter token is already held)."""
        return await self._transport.get_json(path, params=params, headers=headers)


def as_list(value: Any) -> list[Any]:
    """Return ``value`` if it is a list, wrap a lone dict, else ``[]``."""
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return [value]
    return []


def as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def as_str(value: Any, default: str = "") -> str:
    """Coerce scalar payload fields to ``str``; None and containers -> default."""
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default
