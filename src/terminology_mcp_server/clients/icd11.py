"""ICD-11 client for the WHO ICD API (OAuth2 protected).

Endpoints (release and linearization are configurable):
- ``/release/11/{release}/mms/search``: free-text search.
- ``/release/11/{release}/mms/codeinfo/{code}``: lookup by code.
- ``/release/11/{release}/mms``: linearization root (chapters).
- ``.../codeinfo/{code}/postcoordination``: postcoordination axes.

Entity URIs returned by the API (``parent``, ``child``) are fetched
directly. Every request carries a bearer token from ``OAuthTokenManager``;
a 401 evicts the token and surfaces as ``AuthExpiredError``.

API documentation: https://icd.who.int/icdapi
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from terminology_mcp_server.cache import CachePrefix, TtlCache
from terminology_mcp_server.clients.base import (
    BaseUpstreamClient,
    HierarchyDirection,
    as_dict,
    as_list,
    as_str,
)
from terminology_mcp_server.config import CacheTtlConfig
from terminology_mcp_server.credentials import OAuthTokenManager
from terminology_mcp_server.errors import (
    AuthExpiredError,
    TerminologyApiError,
    UpstreamApiError,
)
from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter
from terminology_mcp_server.retry import RetryExecutor
from terminology_mcp_server.transport import HttpTransport

logger = logging.getLogger(__name__)

WHO_DEFAULT_HEADERS = {"Accept": "application/json", "API-Version": "v2"}


@dataclass(frozen=True)
class Icd11SearchResult:
    """A single ICD-11 search hit.

    Attributes:
        id: Entity URI.
        code: ICD-11 code, empty for blocks and chapters.
        title: Entity title.
        score: Relevance score reported by the API.
        is_leaf: Whether the entity has no children.
        chapter: Chapter number, when reported.
    """

    id: str
    code: str
    title: str
    score: float | None = None
    is_leaf: bool = False
    chapter: str = ""


@dataclass(frozen=True)
class Icd11PostcoordinationAxis:
    axis_name: str
    required: bool
    allow_multiple_values: bool
    scale_entities: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Icd11Entity:
    """Normalized ICD-11 entity (linearization or foundation)."""

    id: str
    code: str
    title: str
    definition: str = ""
    long_definition: str = ""
    fully_specified_name: str = ""
    coding_note: str = ""
    class_kind: str = ""
    code_range: str = ""
    block_id: str = ""
    browser_url: str = ""
    parents: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    inclusions: list[str] = field(default_factory=list)
    exclusions: list[str] = field(default_factory=list)
    postcoordination: list[Icd11PostcoordinationAxis] = field(default_factory=list)


class Icd11Client(BaseUpstreamClient):
    """Terminology client for WHO ICD-11 (MMS linearization)."""

    _cache_namespace = CachePrefix.ICD11

    def __init__(
        self,
        transport: HttpTransport,
        limiter: TokenBucketRateLimiter,
        cache: TtlCache,
        token_manager: OAuthTokenManager,
        ttl: CacheTtlConfig | None = None,
        retry_executor: RetryExecutor | None = None,
        release_id: str = "2024-01",
        linearization: str = "mms",
    ) -> None:
        super().__init__(transport, limiter, cache, ttl, retry_executor)
        self.token_manager = token_manager
        self.release_id = release_id
        self.linearization = linearization

    @property
    def _release_path(self) -> str:
        return f"/release/11/{self.release_id}/{self.linearization}"

    # -- Public API --------------------------------------------------------

    async def search(
        self, query: str, language: str = "en", max_results: int = 25
    ) -> list[Icd11SearchResult]:
        """Search ICD-11 entities by free text or code."""
        query = query.strip()
        if not query:
            return []

        async def fetch() -> list[Icd11SearchResult]:
            data = await self._get(
                f"{self._release_path}/search",
                params={
                    "q": query,
                    "subtreeFilterUsesFoundationDescendants": "false",
                    "includeKeywordResult": "true",
                    "useFlexisearch": "true",
                    "flatResults": "true",
                    "highlightingEnabled": "false",
                    "medicalCodingMode": "true",
                },
                headers={"Accept-Language": language},
            )
            payload = as_dict(data)
            if payload.get("error"):
                raise UpstreamApiError(
                    f"ICD-11 search failed: {payload.get('errorMessage') or 'unknown error'}"
                )
            hits = as_list(payload.get("destinationEntities"))
            return [_parse_search_hit(hit) for hit in hits[:max_results]]

        return await self._cached(
            f"search:{query.lower()}:{language}:{max_results}", fetch, self.ttl.search
        )

    async def lookup(self, code_or_uri: str, language: str = "en") -> Icd11Entity | None:
        """Look up an entity by ICD-11 code (e.g. ``BA00``) or entity URI.

        Returns None when the code does not exist.
        """
        code_or_uri = code_or_uri.strip()
        if code_or_uri.startswith("http"):
            target = _api_url(code_or_uri)
        else:
            target = f"{self._release_path}/codeinfo/{quote(code_or_uri, safe='')}"

        async def fetch() -> Icd11Entity | None:
            data = await self._get_or_none(target, headers={"Accept-Language": language})
            return _parse_entity(data) if data is not None else None

        return await self._cached(f"lookup:{code_or_uri}:{language}", fetch, self.ttl.lookup)

    async def get_entity(self, uri: str, language: str = "en") -> Icd11Entity | None:
        """Fetch an entity by its URI."""

        async def fetch() -> Icd11Entity | None:
            data = await self._get_or_none(
                _api_url(uri), headers={"Accept-Language": language}
            )
            return _parse_entity(data) if data is not None else None

        return await self._cached(f"entity:{uri}:{language}", fetch, self.ttl.lookup)

    async def get_hierarchy(
        self,
        code: str,
        direction: HierarchyDirection | str = HierarchyDirection.PARENTS,
        language: str = "en",
    ) -> list[Icd11Entity]:
        """Return the direct parents or children of ``code``.

        Related entities are fetched one at a time; an entity that fails to
        load is logged and skipped.
        """
        direction = HierarchyDirection(direction)
        entity = await self.lookup(code, language)
        if entity is None:
            return []
        uris = entity.parents if direction is HierarchyDirection.PARENTS else entity.children
        return await self._fetch_entities(uris, language)

    async def get_chapters(self, language: str = "en") -> list[Icd11Entity]:
        """Return the top-level chapters of the linearization."""

        async def fetch() -> list[str]:
            data = await self._get(
                self._release_path, headers={"Accept-Language": language}
            )
            return [as_str(uri) for uri in as_list(as_dict(data).get("child")) if uri]

        chapter_uris = await self._cached(f"chapters:{language}", fetch, self.ttl.static)
        return await self._fetch_entities(chapter_uris, language)

    async def get_postcoordination(
        self, code: str, language: str = "en"
    ) -> list[Icd11PostcoordinationAxis]:
        """Return postcoordination axes for ``code`` (empty when none apply)."""
        code = code.strip()
        path = f"{self._release_path}/codeinfo/{quote(code, safe='')}/postcoordination"

        async def fetch() -> list[Icd11PostcoordinationAxis]:
            data = await self._get_or_none(path, headers={"Accept-Language": language})
            return _parse_postcoordination(as_dict(data).get("postcoordinationScale"))

        return await self._cached(f"postcoord:{code}:{language}", fetch, self.ttl.lookup)

    async def aclose(self) -> None:
        await super().aclose()
        await self.token_manager.aclose()

    # -- Internal ----------------------------------------------------------

    async def _fetch_entities(self, uris: list[str], language: str) -> list[Icd11Entity]:
        entities: list[Icd11Entity] = []
        for uri in uris:
            try:
                related = await self.get_entity(uri, language)
            except TerminologyApiError as exc:
                logger.warning("Failed to fetch ICD-11 entity %s: %s", uri, exc)
                continue
            if related is not None:
                entities.append(related)
        return entities

    async def _get(
        self,
        path: str,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Resolve the bearer token once, then GET under the lookup retry policy.

        The token exchange has its own retry policy and is not repeated by
        the lookup retries.
        """
        token = await self.token_manager.get_token()
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
        return await super()._get(path, params, request_headers)

    async def _send(
        self,
        path: str,
        params: Mapping[str, Any] | None,
        headers: Mapping[str, str] | None,
    ) -> Any:
        try:
            return await self._transport.get_json(path, params=params, headers=headers)
        except UpstreamApiError as exc:
            if exc.status_code == 401:
                self.token_manager.invalidate()
                raise AuthExpiredError(
                    "Authentication failed - token expired", status_code=401
                ) from exc
            raise


def _api_url(uri: str) -> str:
    """Entity URIs are published as http:// identifiers; the API is https."""
    if uri.startswith("http://"):
        return "https://" + uri[len("http://"):]
    return uri


def _language_value(value: Any) -> str:
    """Extract ``@value`` from a JSON-LD language-tagged string."""
    if isinstance(value, dict):
        return as_str(value.get("@value"))
    return as_str(value)


def _labels(items: Any) -> list[str]:
    labels = []
    for item in as_list(items):
        label = _language_value(as_dict(item).get("label"))
        if label:
            labels.append(label)
    return labels


def _parse_search_hit(hit: Any) -> Icd11SearchResult:
    item = as_dict(hit)
    score = item.get("score")
    return Icd11SearchResult(
        id=as_str(item.get("id")),
        code=as_str(item.get("theCode")),
        title=_language_value(item.get("title")),
        score=float(score) if isinstance(score, (int, float)) else None,
        is_leaf=bool(item.get("isLeaf", False)),
        chapter=as_str(item.get("chapter")),
    )


def _parse_postcoordination(scales: Any) -> list[Icd11PostcoordinationAxis]:
    axes = []
    for scale in as_list(scales):
        item = as_dict(scale)
        allow_multiple = item.get("allowMultipleValues")
        axes.append(
            Icd11PostcoordinationAxis(
                axis_name=as_str(item.get("axisName")),
                required=item.get("requiredPostcoordination") in (True, "true"),
                allow_multiple_values=allow_multiple in (True, "true", "AllowAlways"),
                scale_entities=[as_str(e) for e in as_list(item.get("scaleEntity"))],
            )
        )
    return axes


def _parse_entity(data: Any) -> Icd11Entity:
    item = as_dict(data)
    return Icd11Entity(
        id=as_str(item.get("@id")),
        code=as_str(item.get("code")),
        title=_language_value(item.get("title")),
        definition=_language_value(item.get("definition")),
        long_definition=_language_value(item.get("longDefinition")),
        fully_specified_name=_language_value(item.get("fullySpecifiedName")),
        coding_note=_language_value(item.get("codingNote")),
        class_kind=as_str(item.get("classKind")),
        code_range=as_str(item.get("codeRange")),
        block_id=as_str(item.get("blockId")),
        browser_url=as_str(item.get("browserUrl")),
        parents=[as_str(u) for u in as_list(item.get("parent")) if u],
        children=[as_str(u) for u in as_list(item.get("child")) if u],
        inclusions=_labels(item.get("inclusion")),
        exclusions=_labels(item.get("exclusion")),
        postcoordination=_parse_postcoordination(item.get("postcoordinationScale")),
    )
