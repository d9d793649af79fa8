"""SNOMED CT client using a Snowstorm terminology server.

Defaults to the public SNOMED International browser instance. SNOMED CT
content is for reference only; production use requires a SNOMED
International (IHTSDO) license.

API documentation: https://browser.ihtsdotools.org/snowstorm/snomed-ct/
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from terminology_mcp_server.cache import CachePrefix, TtlCache
from terminology_mcp_server.clients.base import (
    BaseUpstreamClient,
    HierarchyDirection,
    as_dict,
    as_list,
    as_str,
)
from terminology_mcp_server.config import CacheTtlConfig
from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter
from terminology_mcp_server.retry import RetryExecutor
from terminology_mcp_server.transport import HttpTransport

logger = logging.getLogger(__name__)

SNOMED_DISCLAIMER = (
    "SNOMED CT content is for reference purposes only. "
    "Production use requires IHTSDO license."
)
SNOMED_USER_AGENT = "terminology-mcp-server/0.1.0"

DESCRIPTION_TYPES = {
    "900000000000003001": "FSN",
    "900000000000013009": "SYN",
    "900000000000550004": "DEF",
}


@dataclass(frozen=True)
class SnomedConcept:
    """A SNOMED CT concept summary.

    Attributes:
        concept_id: SCTID.
        fsn: Fully specified name.
        pt: Preferred term.
        active: Whether the concept is active in the branch.
        definition_status: PRIMITIVE or FULLY_DEFINED.
        module_id: Owning module SCTID.
        effective_time: Release date (point lookups only).
    """

    concept_id: str
    fsn: str = ""
    pt: str = ""
    active: bool = True
    definition_status: str = ""
    module_id: str = ""
    effective_time: str = ""


@dataclass(frozen=True)
class SnomedDescription:
    description_id: str
    term: str
    type: str
    type_id: str = ""
    lang: str = "en"
    active: bool = True
    case_significance: str = ""
    acceptability: dict[str, str] = field(default_factory=dict)


class SnomedClient(BaseUpstreamClient):
    """Terminology client for SNOMED CT via Snowstorm."""

    _cache_namespace = CachePrefix.SNOMED

    def __init__(
        self,
        transport: HttpTransport,
        limiter: TokenBucketRateLimiter,
        cache: TtlCache,
        ttl: CacheTtlConfig | None = None,
        retry_executor: RetryExecutor | None = None,
        branch: str = "MAIN",
    ) -> None:
        super().__init__(transport, limiter, cache, ttl, retry_executor)
        self.branch = branch

    async def search_concepts(
        self, term: str, active_only: bool = True, limit: int = 25
    ) -> list[SnomedConcept]:
        """Search concepts by description term."""
        term = term.strip()
        if not term:
            return []

        async def fetch() -> list[SnomedConcept]:
            data = await self._get(
                f"/{self.branch}/concepts",
                params={
                    "term": term,
                    "activeFilter": "true" if active_only else "false",
                    "limit": limit,
                    "offset": 0,
                },
            )
            return [_parse_concept(item) for item in as_list(as_dict(data).get("items"))]

        return await self._cached(
            f"search:{term.lower()}:{active_only}:{limit}", fetch, self.ttl.search
        )

    async def get_concept(self, sctid: str) -> SnomedConcept | None:
        sctid = sctid.strip()

        async def fetch() -> SnomedConcept | None:
            data = await self._get_or_none(f"/{self.branch}/concepts/{sctid}")
            return _parse_concept(data) if data else None

        return await self._cached(f"concept:{sctid}", fetch, self.ttl.lookup)

    async def get_hierarchy(
        self,
        sctid: str,
        direction: HierarchyDirection | str = HierarchyDirection.PARENTS,
        limit: int = 50,
    ) -> list[SnomedConcept]:
        """Inferred parents, or up to ``limit`` inferred children."""
        sctid = sctid.strip()
        direction = HierarchyDirection(direction)
        params: dict[str, Any] = {"form": "inferred"}
        if direction is HierarchyDirection.CHILDREN:
            params["limit"] = limit
            key = f"children:{sctid}:{limit}"
        else:
            key = f"parents:{sctid}"

        async def fetch() -> list[SnomedConcept]:
            data = await self._get_or_none(
                f"/browser/{self.branch}/concepts/{sctid}/{direction.value}",
                params=params,
            )
            return [_parse_concept(item) for item in as_list(data)]

        return await self._cached(key, fetch, self.ttl.lookup)

    async def get_descriptions(self, sctid: str) -> list[SnomedDescription]:
        sctid = sctid.strip()

        async def fetch() -> list[SnomedDescription]:
            data = await self._get_or_none(f"/{self.branch}/concepts/{sctid}/descriptions")
            descriptions = []
            for raw in as_list(as_dict(data).get("conceptDescriptions")):
                desc = as_dict(raw)
                type_id = as_str(desc.get("typeId"))
                descriptions.append(
                    SnomedDescription(
                        description_id=as_str(desc.get("descriptionId")),
                        term=as_str(desc.get("term")),
                        type=as_str(desc.get("type"))
                        or DESCRIPTION_TYPES.get(type_id, "OTHER"),
                        type_id=type_id,
                        lang=as_str(desc.get("lang"), "en") or "en",
                        active=bool(desc.get("active", True)),
                        case_significance=as_str(desc.get("caseSignificance")),
                        acceptability={
                            as_str(k): as_str(v)
                            for k, v in as_dict(desc.get("acceptabilityMap")).items()
                        },
                    )
                )
            return descriptions

        return await self._cached(f"descriptions:{sctid}", fetch, self.ttl.lookup)

    async def execute_ecl(self, ecl: str, limit: int = 25) -> list[SnomedConcept]:
        """Evaluate an Expression Constraint Language query."""
        ecl = ecl.strip()
        if not ecl:
            return []

        async def fetch() -> list[SnomedConcept]:
            data = await self._get(
                f"/{self.branch}/concepts",
                params={"ecl": ecl, "limit": limit, "offset": 0},
            )
            return [_parse_concept(item) for item in as_list(as_dict(data).get("items"))]

        return await self._cached(f"ecl:{ecl}:{limit}", fetch, self.ttl.search)


def _term(value: Any) -> str:
    """fsn/pt arrive either as ``{"term": ..., "lang": ...}`` or a bare string."""
    if isinstance(value, dict):
        return as_str(value.get("term"))
    return as_str(value)


def _parse_concept(raw: Any) -> SnomedConcept:
    item = as_dict(raw)
    return SnomedConcept(
        concept_id=as_str(item.get("conceptId") or item.get("id")),
        fsn=_term(item.get("fsn")),
        pt=_term(item.get("pt")),
        active=bool(item.get("active", True)),
        definition_status=as_str(item.get("definitionStatus")),
        module_id=as_str(item.get("moduleId")),
        effective_time=as_str(item.get("effectiveTime")),
    )
