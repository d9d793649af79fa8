"""Composition root: one cache, five limiters, five clients.

``TerminologyGateway`` builds every governance component explicitly from a
``GatewayConfig`` and owns their lifecycle, so tests can construct isolated
instances (optionally over an ``httpx.MockTransport``). It also hosts the
cross-terminology operations that fan out over several clients.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import httpx

from terminology_mcp_server.cache import TtlCache
from terminology_mcp_server.clients.icd11 import (
    WHO_DEFAULT_HEADERS,
    Icd11Client,
    Icd11SearchResult,
)
from terminology_mcp_server.clients.loinc import LoincClient, LoincItem
from terminology_mcp_server.clients.mesh import MeshClient, MeshMatch
from terminology_mcp_server.clients.rxnorm import RxNormClient
from terminology_mcp_server.clients.snomed import (
    SNOMED_DISCLAIMER,
    SNOMED_USER_AGENT,
    SnomedClient,
    SnomedConcept,
)
from terminology_mcp_server.config import GatewayConfig, UpstreamConfig
from terminology_mcp_server.credentials import OAuthTokenManager
from terminology_mcp_server.errors import AuthConfigError, TerminologyApiError
from terminology_mcp_server.rate_limiter import TokenBucketRateLimiter
from terminology_mcp_server.transport import HttpTransport

logger = logging.getLogger(__name__)

TERMINOLOGIES = ("icd11", "snomed", "loinc", "rxnorm", "mesh")

#: SNOMED CT to ICD-10 complex map reference set.
ICD10_COMPLEX_MAP_REFSET = "447562003"

_FIND_EQUIVALENT_LIMIT = 5
_ICD10_MAPPING_LIMIT = 10

_JSON_HEADERS = {"Accept": "application/json"}


# ---------------------------------------------------------------------------
# Crosswalk result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Icd10ToIcd11Mapping:
    """Candidate ICD-11 entities for an ICD-10 code (search based, unverified)."""

    icd10_code: str
    matches: list[Icd11SearchResult] = field(default_factory=list)
    note: str = (
        "Potential matches based on search. Verify mapping accuracy for clinical use."
    )


@dataclass(frozen=True)
class SnomedToIcd10Mapping:
    sctid: str
    concept: SnomedConcept | None
    map_reference_set: str = ICD10_COMPLEX_MAP_REFSET
    guidance: list[str] = field(default_factory=list)
    disclaimer: str = SNOMED_DISCLAIMER


@dataclass(frozen=True)
class LoincToSnomedMapping:
    loinc_num: str
    details: LoincItem | None
    suggested_search_terms: list[str] = field(default_factory=list)
    guidance: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EquivalentItem:
    code: str
    display: str


@dataclass(frozen=True)
class EquivalentResult:
    """Per-terminology outcome of ``find_equivalent``.

    ``error`` carries the structured error of a failed search; the other
    terminologies are unaffected.
    """

    terminology: str
    found: bool
    items: list[EquivalentItem] = field(default_factory=list)
    error: dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class TerminologyGateway:
    """Owns the shared cache, per-upstream limiters, and upstream clients.

    Args:
        cache: Shared TTL cache.
        limiters: Token buckets keyed by upstream name.
        loinc: LOINC client.
        rxnorm: RxNorm client.
        mesh: MeSH client.
        snomed: SNOMED CT client.
        icd11: ICD-11 client, or None when WHO credentials are missing.
        sweep_interval: Seconds between background cache sweeps.
    """

    def __init__(
        self,
        cache: TtlCache,
        limiters: dict[str, TokenBucketRateLimiter],
        loinc: LoincClient,
        rxnorm: RxNormClient,
        mesh: MeshClient,
        snomed: SnomedClient,
        icd11: Icd11Client | None = None,
        sweep_interval: float = 120.0,
    ) -> None:
        self.cache = cache
        self.limiters = limiters
        self.loinc = loinc
        self.rxnorm = rxnorm
        self.mesh = mesh
        self.snomed = snomed
        self._icd11 = icd11
        self.sweep_interval = sweep_interval
        self._sweep_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> "TerminologyGateway":
        """Build every component from ``config``.

        Args:
            config: Gateway configuration (defaults to ``GatewayConfig()``).
            http_transport: Optional httpx transport shared by all HTTP
                clients (``httpx.MockTransport`` in tests).
        """
        config = config or GatewayConfig()
        cache = TtlCache(coalesce_misses=config.cache_coalesce_misses)
        limiters = {
            name: TokenBucketRateLimiter(
                capacity=upstream.capacity,
                refill_rate=upstream.rate_limit,
                name=name,
            )
            for name, upstream in config.upstreams.items()
        }

        def transport(name: str, headers: dict[str, str] = _JSON_HEADERS) -> HttpTransport:
            upstream: UpstreamConfig = config.upstream(name)
            return HttpTransport(
                name=name,
                base_url=upstream.base_url,
                timeout=upstream.timeout,
                headers=headers,
                transport=http_transport,
            )

        icd11: Icd11Client | None = None
        if config.who_credentials.configured:
            token_manager = OAuthTokenManager(
                client_id=config.who_credentials.client_id,
                client_secret=config.who_credentials.client_secret,
                token_url=config.who_token_url,
                cache=cache,
                transport=HttpTransport(
                    name="who-token",
                    timeout=config.who_token_timeout,
                    headers=_JSON_HEADERS,
                    transport=http_transport,
                ),
                token_ttl=config.ttl.token,
            )
            icd11 = Icd11Client(
                transport("who", WHO_DEFAULT_HEADERS),
                limiters["who"],
                cache,
                token_manager,
                ttl=config.ttl,
                release_id=config.who_release_id,
            )
        else:
            logger.warning(
                "WHO_CLIENT_ID/WHO_CLIENT_SECRET not set; ICD-11 operations are disabled"
            )

        return cls(
            cache=cache,
            limiters=limiters,
            loinc=LoincClient(transport("loinc"), limiters["loinc"], cache, ttl=config.ttl),
            rxnorm=RxNormClient(
                transport("rxnorm"), limiters["rxnorm"], cache, ttl=config.ttl
            ),
            mesh=MeshClient(transport("mesh"), limiters["mesh"], cache, ttl=config.ttl),
            snomed=SnomedClient(
                transport(
                    "snomed",
                    {**_JSON_HEADERS, "Accept-Language": "en", "User-Agent": SNOMED_USER_AGENT},
                ),
                limiters["snomed"],
                cache,
                ttl=config.ttl,
                branch=config.snomed_branch,
            ),
            icd11=icd11,
            sweep_interval=config.cache_sweep_interval,
        )

    @property
    def icd11(self) -> Icd11Client:
        """The ICD-11 client.

        Raises:
            AuthConfigError: If WHO credentials were not configured.
        """
        if self._icd11 is None:
            raise AuthConfigError(
                "WHO API credentials not configured. "
                "Set WHO_CLIENT_ID and WHO_CLIENT_SECRET environment variables."
            )
        return self._icd11

    # -- Lifecycle ----------------------------------------------------------

    def start(self) -> None:
        """Start the periodic cache sweep on the running loop."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.get_running_loop().create_task(
                self._sweep_periodically()
            )

    async def aclose(self) -> None:
        """Stop the sweep task and close every HTTP client."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None
        clients = [self.loinc, self.rxnorm, self.mesh, self.snomed]
        if self._icd11 is not None:
            clients.append(self._icd11)
        for client in clients:
            await client.aclose()

    async def __aenter__(self) -> "TerminologyGateway":
        self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def _sweep_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            evicted = self.cache.sweep()
            if evicted:
                logger.debug("Cache sweep evicted %d expired entries", evicted)

    # -- Crosswalk ---------------------------------------------------------

    async def map_icd10_to_icd11(self, icd10_code: str) -> Icd10ToIcd11Mapping:
        """Search ICD-11 for candidates matching an ICD-10 code."""
        code = icd10_code.strip().upper()
        matches = await self.icd11.search(code, "en", _ICD10_MAPPING_LIMIT)
        return Icd10ToIcd11Mapping(icd10_code=code, matches=matches)

    async def map_snomed_to_icd10(self, sctid: str) -> SnomedToIcd10Mapping:
        """Return the SNOMED concept plus where its ICD-10 map can be found.

        No public automated SNOMED CT to ICD-10 map is available; the
        result points to the complex map reference set.
        """
        concept = await self.snomed.get_concept(sctid)
        guidance = [
            f"SNOMED International ICD-10 complex map, reference set {ICD10_COMPLEX_MAP_REFSET}",
            "US: SNOMED CT to ICD-10-CM map distributed by NLM",
            "UK: NHS SNOMED CT to ICD-10 map",
        ]
        if concept is not None:
            guidance.append(
                f'Search ICD-10 for "{concept.pt}" or map a mappable ancestor '
                "from the SNOMED CT hierarchy"
            )
        return SnomedToIcd10Mapping(sctid=sctid.strip(), concept=concept, guidance=guidance)

    async def map_loinc_to_snomed(self, loinc_num: str) -> LoincToSnomedMapping:
        """Return LOINC details plus SNOMED CT search suggestions.

        LOINC to SNOMED CT mappings need a UMLS or LOINC license; no
        automated mapping is performed.
        """
        details = await self.loinc.get_details(loinc_num)
        suggestions = [t for t in (details.component, details.system) if t] if details else []
        guidance = [
            "UMLS Metathesaurus (license required): https://uts.nlm.nih.gov/uts/",
            "LOINC SNOMED CT Expression Association: https://loinc.org/downloads/",
            "Regenstrief RELMA mapping tool",
        ]
        return LoincToSnomedMapping(
            loinc_num=loinc_num.strip(),
            details=details,
            suggested_search_terms=suggestions,
            guidance=guidance,
        )

    async def find_equivalent(
        self, term: str, targets: Sequence[str] | None = None
    ) -> list[EquivalentResult]:
        """Search several terminologies concurrently for ``term``.

        A failing terminology is reported with its error; it never hides
        the results of the others.
        """
        wanted = [t for t in TERMINOLOGIES if targets is None or t in targets]
        searches: dict[str, Callable[[], Awaitable[list[EquivalentItem]]]] = {
            "icd11": lambda: self._icd11_equivalents(term),
            "snomed": lambda: self._snomed_equivalents(term),
            "loinc": lambda: self._loinc_equivalents(term),
            "rxnorm": lambda: self._rxnorm_equivalents(term),
            "mesh": lambda: self._mesh_equivalents(term),
        }
        return list(
            await asyncio.gather(
                *(self._equivalent(name, searches[name]) for name in wanted)
            )
        )

    async def _equivalent(
        self, name: str, search: Callable[[], Awaitable[list[EquivalentItem]]]
    ) -> EquivalentResult:
        try:
            items = await search()
        except TerminologyApiError as exc:
            logger.warning("find_equivalent: %s search failed: %s", name, exc)
            return EquivalentResult(terminology=name, found=False, error=exc.to_dict())
        return EquivalentResult(terminology=name, found=bool(items), items=items)

    async def _icd11_equivalents(self, term: str) -> list[EquivalentItem]:
        results = await self.icd11.search(term, "en", _FIND_EQUIVALENT_LIMIT)
        return [EquivalentItem(code=r.code, display=r.title) for r in results]

    async def _snomed_equivalents(self, term: str) -> list[EquivalentItem]:
        concepts = await self.snomed.search_concepts(term, True, _FIND_EQUIVALENT_LIMIT)
        return [EquivalentItem(code=c.concept_id, display=c.pt) for c in concepts]

    async def _loinc_equivalents(self, term: str) -> list[EquivalentItem]:
        result = await self.loinc.search(term, _FIND_EQUIVALENT_LIMIT)
        return [
            EquivalentItem(code=i.loinc_num, display=i.long_common_name)
            for i in result.items
        ]

    async def _rxnorm_equivalents(self, term: str) -> list[EquivalentItem]:
        drugs = await self.rxnorm.search_drugs(term)
        return [
            EquivalentItem(code=d.rxcui, display=d.name)
            for d in drugs[:_FIND_EQUIVALENT_LIMIT]
        ]

    async def _mesh_equivalents(self, term: str) -> list[EquivalentItem]:
        results = await self.mesh.search_descriptors(
            term, MeshMatch.CONTAINS, _FIND_EQUIVALENT_LIMIT
        )
        return [EquivalentItem(code=r.id, display=r.label) for r in results]
