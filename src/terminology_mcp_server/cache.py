"""In-memory TTL cache with per-entry expiry and cache-aside helper.

Backed by ``cachetools.TLRUCache`` so each entry carries its own expiry
(``ttu`` reads it from the stored ``CacheEntry``). Keys are composed as
``"<prefix>:<key>"``; prefixes may not contain ``:`` so two namespaces can
never collide.

``get_or_compute`` runs the factory in its own task and awaits it through
``asyncio.shield``: a caller that gives up stops waiting but does not abort
the upstream request, and the value is still stored for later callers.

Concurrent misses for the same key are NOT collapsed by default: two
callers that both miss run the factory twice and the last write wins.
Pass ``coalesce_misses=True`` to attach concurrent callers to the
in-flight computation instead.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from cachetools import TLRUCache

logger = logging.getLogger(__name__)

T = TypeVar("T")

_DEFAULT_MAXSIZE = 10_000


class CachePrefix:
    """Cache key prefixes, one per terminology plus credentials."""

    ICD11 = "icd11"
    LOINC = "loinc"
    RXNORM = "rxnorm"
    MESH = "mesh"
    SNOMED = "snomed"
    TOKEN = "token"


class _Missing:
    """Sentinel type for "no entry" (distinct from a cached None)."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class CacheEntry:
    """Stored value and its absolute expiry on the cache clock."""

    value: Any
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    """Hit/miss counters and current key count."""

    hits: int
    misses: int
    keys: int


def _entry_expiry(_key: str, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


class TtlCache:
    """Namespaced TTL cache shared by every upstream client.

    Args:
        maxsize: Maximum number of entries held at once.
        timer: Monotonic clock in seconds (injectable for tests).
        coalesce_misses: Share one in-flight computation between concurrent
            ``get_or_compute`` callers for the same key.
    """

    def __init__(
        self,
        maxsize: int = _DEFAULT_MAXSIZE,
        timer: Callable[[], float] = time.monotonic,
        coalesce_misses: bool = False,
    ) -> None:
        self._timer = timer
        self._store: TLRUCache = TLRUCache(
            maxsize=maxsize, ttu=_entry_expiry, timer=timer
        )
        self.coalesce_misses = coalesce_misses
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._pending: set[asyncio.Task[Any]] = set()
        self._hits = 0
        self._misses = 0

    # -- Key composition ----------------------------------------------------

    @staticmethod
    def make_key(prefix: str, key: str) -> str:
        """Compose the store key; the prefix is always an unambiguous head."""
        if not prefix or ":" in prefix:
            raise ValueError(f"invalid cache prefix: {prefix!r}")
        return f"{prefix}:{key}"

    # -- Basic operations ---------------------------------------------------

    def set(self, prefix: str, key: str, value: Any, ttl: float) -> None:
        """Store ``value`` for ``ttl`` seconds, overwriting any existing entry."""
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        composite = self.make_key(prefix, key)
        self._store[composite] = CacheEntry(value=value, expires_at=self._timer() + ttl)

    def get(self, prefix: str, key: str, default: Any = MISSING) -> Any:
        """Return the unexpired value, or ``default`` (``MISSING``) if absent."""
        composite = self.make_key(prefix, key)
        entry = self._store.get(composite)
        if entry is None:
            # Evict lazily: an expired entry may still occupy the store.
            self._store.expire()
            return default
        return entry.value

    def has(self, prefix: str, key: str) -> bool:
        return self.make_key(prefix, key) in self._store

    def delete(self, prefix: str, key: str) -> int:
        """Remove one entry; returns the number of entries removed."""
        composite = self.make_key(prefix, key)
        if composite in self._store:
            del self._store[composite]
            return 1
        return 0

    def clear_prefix(self, prefix: str) -> int:
        """Remove every entry under ``prefix``; returns how many were removed."""
        head = self.make_key(prefix, "")
        doomed = [k for k in list(self._store.keys()) if k.startswith(head)]
        for composite in doomed:
            self._store.pop(composite, None)
        return len(doomed)

    def flush(self) -> None:
        """Remove every entry."""
        self._store.clear()

    def sweep(self) -> int:
        """Evict all expired entries; returns how many were evicted."""
        expired = self._store.expire()
        return len(expired) if expired is not None else 0

    def stats(self) -> CacheStats:
        self._store.expire()
        return CacheStats(hits=self._hits, misses=self._misses, keys=len(self._store))

    def __len__(self) -> int:
        return len(self._store)

    # -- Cache-aside --------------------------------------------------------

    async def get_or_compute(
        self,
        prefix: str,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: float,
    ) -> T:
        """Return the cached value, or compute, store, and return it.

        On factory failure nothing is stored, the previous state is left
        untouched, and the error propagates.
        """
        composite = self.make_key(prefix, key)
        cached = self.get(prefix, key)
        if cached is not MISSING:
            self._hits += 1
            logger.debug("Cache hit: %s", composite)
            return cached  # type: ignore[no-any-return]

        if self.coalesce_misses and composite in self._inflight:
            self._misses += 1
            logger.debug("Cache miss joined in-flight computation: %s", composite)
            return await asyncio.shield(self._inflight[composite])

        self._misses += 1
        logger.debug("Cache miss: %s", composite)
        task = asyncio.ensure_future(self._compute(prefix, key, factory, ttl))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        task.add_done_callback(_consume_exception)
        if self.coalesce_misses:
            self._inflight[composite] = task
            task.add_done_callback(lambda _t: self._inflight.pop(composite, None))
        return await asyncio.shield(task)

    async def _compute(
        self,
        prefix: str,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: float,
    ) -> T:
        value = await factory()
        self.set(prefix, key, value, ttl)
        return value


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Callers may have stopped waiting; mark the exception as retrieved.
    if not task.cancelled():
        task.exception()
