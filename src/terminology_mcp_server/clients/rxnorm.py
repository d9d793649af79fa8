"""RxNorm terminology client using NLM RxNav REST API.

Free, no API key required. Covers drug name search (/drugs.json),
approximate matching (/approximateTerm.json), concept properties and
status, related concepts, ingredients, drug classes (RxClass), and NDC
crosswalks.

API documentation: https://rxnav.nlm.nih.gov/RxNormAPIs.html
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from terminology_mcp_server.cache import CachePrefix
from terminology_mcp_server.clients.base import BaseUpstreamClient, as_dict, as_list, as_str
from terminology_mcp_server.errors import TerminologyApiError

logger = logging.getLogger(__name__)

#: Class types accepted by RxClass.
RXCLASS_TYPES = ("ATC", "VA", "MESH", "FDASPL", "FMTSME", "EPC", "DISEASE")


@dataclass(frozen=True)
class RxNormDrug:
    """A drug concept as returned by name search.

    Attributes:
        rxcui: RxNorm concept unique identifier.
        name: Concept name.
        synonym: Alternate name, if any.
        tty: RxNorm term type (e.g. SCD, SBD, IN).
        language: Source language, usually ENG.
    """

    rxcui: str
    name: str
    synonym: str = ""
    tty: str = ""
    language: str = "ENG"


@dataclass(frozen=True)
class RxNormApproximateMatch:
    rxcui: str
    rxaui: str
    name: str
    score: float
    rank: int


@dataclass(frozen=True)
class RxNormConcept:
    rxcui: str
    name: str
    synonym: str = ""
    tty: str = ""
    language: str = "ENG"
    suppress: str = "N"
    umlscui: str = ""
    status: str = "Active"
    remapped_to: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RxNormRelatedGroup:
    tty: str
    concepts: list[RxNormDrug] = field(default_factory=list)


@dataclass(frozen=True)
class RxNormIngredient:
    rxcui: str
    name: str
    tty: str
    is_multiple: bool = False


@dataclass(frozen=True)
class RxNormDrugClass:
    class_id: str
    class_name: str
    class_type: str
    source: str = ""


class RxNormClient(BaseUpstreamClient):
    """Terminology client for NLM RxNorm via RxNav REST API."""

    _cache_namespace = CachePrefix.RXNORM

    async def search_drugs(self, name: str) -> list[RxNormDrug]:
        """Search drugs by name via /drugs.json."""
        name = name.strip()
        if not name:
            return []

        async def fetch() -> list[RxNormDrug]:
            data = as_dict(await self._get("/drugs.json", params={"name": name}))
            groups = as_list(as_dict(data.get("drugGroup")).get("conceptGroup"))
            drugs: list[RxNormDrug] = []
            for group in groups:
                drugs.extend(_parse_drugs(as_dict(group).get("conceptProperties")))
            return drugs

        return await self._cached(f"search:{name.lower()}", fetch, self.ttl.search)

    async def get_approximate_match(
        self, term: str, max_results: int = 25
    ) -> list[RxNormApproximateMatch]:
        """Fuzzy match via /approximateTerm.json."""
        term = term.strip()
        if not term:
            return []

        async def fetch() -> list[RxNormApproximateMatch]:
            data = as_dict(
                await self._get(
                    "/approximateTerm.json",
                    params={"term": term, "maxEntries": max_results},
                )
            )
            candidates = as_list(as_dict(data.get("approximateGroup")).get("candidate"))
            matches = []
            for raw in candidates:
                item = as_dict(raw)
                matches.append(
                    RxNormApproximateMatch(
                        rxcui=as_str(item.get("rxcui")),
                        rxaui=as_str(item.get("rxaui")),
                        name=as_str(item.get("name")),
                        score=_as_float(item.get("score")),
                        rank=int(_as_float(item.get("rank"))),
                    )
                )
            return matches

        return await self._cached(f"approx:{term.lower()}:{max_results}", fetch, self.ttl.search)

    async def get_concept(self, rxcui: str) -> RxNormConcept | None:
        """Return concept properties plus status, or None if unknown.

        The status lookup is best effort: if it fails the concept is
        reported as Active with no remapping.
        """
        rxcui = rxcui.strip()

        async def fetch() -> RxNormConcept | None:
            data = await self._get_or_none(f"/rxcui/{rxcui}/properties.json")
            props = as_dict(as_dict(data).get("properties"))
            if not props:
                return None

            status: dict[str, Any] = {}
            try:
                status_data = await self._get(f"/rxcui/{rxcui}/status.json")
                status = as_dict(as_dict(status_data).get("rxcuiStatus"))
            except TerminologyApiError as exc:
                logger.debug("RxNorm status lookup failed for %s: %s", rxcui, exc)

            remapped = [as_str(r) for r in as_list(status.get("remappedTo"))]
            return RxNormConcept(
                rxcui=as_str(props.get("rxcui"), rxcui),
                name=as_str(props.get("name")),
                synonym=as_str(props.get("synonym")),
                tty=as_str(props.get("tty")),
                language=as_str(props.get("language"), "ENG") or "ENG",
                suppress=as_str(props.get("suppress"), "N") or "N",
                umlscui=as_str(props.get("umlscui")),
                status=as_str(status.get("status"), "Active") or "Active",
                remapped_to=[r for r in remapped if r],
            )

        return await self._cached(f"concept:{rxcui}", fetch, self.ttl.lookup)

    async def get_related_concepts(self, rxcui: str) -> list[RxNormRelatedGroup]:
        """All related concepts, grouped by term type."""
        rxcui = rxcui.strip()

        async def fetch() -> list[RxNormRelatedGroup]:
            data = as_dict(await self._get_or_none(f"/rxcui/{rxcui}/allrelated.json"))
            groups = as_list(as_dict(data.get("allRelatedGroup")).get("conceptGroup"))
            related = []
            for raw in groups:
                group = as_dict(raw)
                concepts = _parse_drugs(group.get("conceptProperties"))
                if concepts:
                    related.append(
                        RxNormRelatedGroup(tty=as_str(group.get("tty")), concepts=concepts)
                    )
            return related

        return await self._cached(f"related:{rxcui}", fetch, self.ttl.lookup)

    async def get_ingredients(self, rxcui: str) -> list[RxNormIngredient]:
        """Single (IN) and multiple (MIN) ingredients of a drug."""
        rxcui = rxcui.strip()

        async def fetch() -> list[RxNormIngredient]:
            data = as_dict(
                await self._get_or_none(
                    f"/rxcui/{rxcui}/related.json", params={"tty": "IN MIN"}
                )
            )
            groups = as_list(as_dict(data.get("relatedGroup")).get("conceptGroup"))
            ingredients = []
            for group in groups:
                for drug in _parse_drugs(as_dict(group).get("conceptProperties")):
                    ingredients.append(
                        RxNormIngredient(
                            rxcui=drug.rxcui,
                            name=drug.name,
                            tty=drug.tty,
                            is_multiple=drug.tty == "MIN",
                        )
                    )
            return ingredients

        return await self._cached(f"ingredients:{rxcui}", fetch, self.ttl.lookup)

    async def get_drug_classes(
        self, rxcui: str, class_type: str | None = None
    ) -> list[RxNormDrugClass]:
        """Drug classes from RxClass, optionally filtered by class type."""
        rxcui = rxcui.strip()

        async def fetch() -> list[RxNormDrugClass]:
            data = as_dict(
                await self._get_or_none(
                    "/rxclass/class/byRxcui.json", params={"rxcui": rxcui}
                )
            )
            infos = as_list(as_dict(data.get("rxclassDrugInfoList")).get("rxclassDrugInfo"))
            classes = []
            for raw in infos:
                info = as_dict(raw)
                item = as_dict(info.get("rxclassMinConceptItem"))
                classes.append(
                    RxNormDrugClass(
                        class_id=as_str(item.get("classId")),
                        class_name=as_str(item.get("className")),
                        class_type=as_str(item.get("classType")),
                        source=as_str(info.get("rela")),
                    )
                )
            return classes

        classes = await self._cached(f"classes:{rxcui}", fetch, self.ttl.lookup)
        if class_type:
            wanted = class_type.upper()
            return [c for c in classes if c.class_type.upper() == wanted]
        return classes

    async def get_ndcs(self, rxcui: str) -> list[str]:
        """Active National Drug Codes for a concept."""
        rxcui = rxcui.strip()

        async def fetch() -> list[str]:
            data = as_dict(
                await self._get_or_none(
                    f"/rxcui/{rxcui}/allndcs.json", params={"history": 0}
                )
            )
            ndc_list = as_dict(as_dict(data.get("ndcGroup")).get("ndcList"))
            return [as_str(ndc) for ndc in as_list(ndc_list.get("ndc")) if ndc]

        return await self._cached(f"ndcs:{rxcui}", fetch, self.ttl.lookup)

    async def get_rxcui_by_ndc(self, ndc: str) -> str | None:
        """Resolve an NDC to its RxCUI, or None if unknown."""
        ndc = ndc.strip()

        async def fetch() -> str | None:
            data = as_dict(await self._get_or_none("/ndcstatus.json", params={"ndc": ndc}))
            return as_str(as_dict(data.get("ndcStatus")).get("rxcui")) or None

        return await self._cached(f"ndc2rxcui:{ndc}", fetch, self.ttl.lookup)


def _parse_drugs(props: Any) -> list[RxNormDrug]:
    drugs = []
    for raw in as_list(props):
        prop = as_dict(raw)
        rxcui = as_str(prop.get("rxcui"))
        if not rxcui:
            continue
        drugs.append(
            RxNormDrug(
                rxcui=rxcui,
                name=as_str(prop.get("name")),
                synonym=as_str(prop.get("synonym")),
                tty=as_str(prop.get("tty")),
                language=as_str(prop.get("language"), "ENG") or "ENG",
            )
        )
    return drugs


def _as_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
