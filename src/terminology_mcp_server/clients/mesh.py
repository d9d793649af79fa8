"""MeSH terminology client using the NLM MeSH RDF Linked Data API.

Descriptor search goes through /lookup/descriptor; descriptor details,
tree numbers, and allowable qualifiers are all read from the descriptor's
JSON-LD document (/{id}.json), which is fetched once and cached.

API documentation: https://id.nlm.nih.gov/mesh/
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from terminology_mcp_server.cache import CachePrefix
from terminology_mcp_server.clients.base import BaseUpstreamClient, as_dict, as_list, as_str

logger = logging.getLogger(__name__)

_MESH_ID_RE = re.compile(r"mesh/([A-Z]\d+)$")
_MESH_URI_ROOTS = ("http://id.nlm.nih.gov/mesh/", "https://id.nlm.nih.gov/mesh/")


class MeshMatch(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTSWITH = "startswith"


@dataclass(frozen=True)
class MeshSearchResult:
    id: str
    uri: str
    label: str


@dataclass(frozen=True)
class MeshTreeNumber:
    tree_number: str
    uri: str


@dataclass(frozen=True)
class MeshConcept:
    uri: str
    label: str
    is_preferred: bool = False


@dataclass(frozen=True)
class MeshQualifier:
    """An allowable qualifier. Labels need a separate lookup and are left empty."""

    id: str
    uri: str
    label: str = ""


@dataclass(frozen=True)
class MeshDescriptor:
    id: str
    uri: str
    label: str = ""
    scope_note: str = ""
    tree_numbers: list[MeshTreeNumber] = field(default_factory=list)
    concepts: list[MeshConcept] = field(default_factory=list)
    qualifiers: list[MeshQualifier] = field(default_factory=list)


class MeshClient(BaseUpstreamClient):
    """Terminology client for NLM Medical Subject Headings."""

    _cache_namespace = CachePrefix.MESH

    async def search_descriptors(
        self,
        term: str,
        match: MeshMatch | str = MeshMatch.CONTAINS,
        limit: int = 25,
    ) -> list[MeshSearchResult]:
        """Search descriptors by label."""
        term = term.strip()
        match = MeshMatch(match)
        if not term:
            return []

        async def fetch() -> list[MeshSearchResult]:
            data = await self._get_or_none(
                "/lookup/descriptor",
                params={"label": term, "match": match.value, "limit": limit},
            )
            results = []
            for raw in as_list(data):
                item = as_dict(raw)
                uri = as_str(item.get("resource"))
                results.append(
                    MeshSearchResult(
                        id=extract_mesh_id(uri), uri=uri, label=as_str(item.get("label"))
                    )
                )
            return results

        return await self._cached(
            f"search:{term.lower()}:{match.value}:{limit}", fetch, self.ttl.search
        )

    async def get_descriptor(self, mesh_id: str) -> MeshDescriptor | None:
        """Return a descriptor with its tree numbers, concepts and qualifiers."""
        mesh_id = mesh_id.strip()
        document = await self._descriptor_document(mesh_id)
        if document is None:
            return None

        main = _find_main_entity(document, mesh_id)
        return MeshDescriptor(
            id=mesh_id,
            uri=f"{_MESH_URI_ROOTS[1]}{mesh_id}",
            label=_jsonld_value(main.get("rdfs:label")),
            scope_note=_jsonld_value(main.get("meshv:scopeNote")),
            tree_numbers=_tree_numbers(document),
            concepts=_concepts(document),
            qualifiers=_qualifiers(document),
        )

    async def get_tree_numbers(self, mesh_id: str) -> list[MeshTreeNumber]:
        document = await self._descriptor_document(mesh_id.strip())
        return _tree_numbers(document) if document is not None else []

    async def get_allowed_qualifiers(self, mesh_id: str) -> list[MeshQualifier]:
        document = await self._descriptor_document(mesh_id.strip())
        return _qualifiers(document) if document is not None else []

    async def _descriptor_document(self, mesh_id: str) -> dict[str, Any] | None:
        """Fetch (or reuse) the descriptor's JSON-LD document; None if unknown."""

        async def fetch() -> dict[str, Any] | None:
            data = await self._get_or_none(f"/{mesh_id}.json")
            return as_dict(data) if data is not None else None

        return await self._cached(f"descriptor:{mesh_id}", fetch, self.ttl.lookup)


def extract_mesh_id(uri: str) -> str:
    """``http://id.nlm.nih.gov/mesh/D003920`` -> ``D003920``."""
    match = _MESH_ID_RE.search(uri)
    return match.group(1) if match else uri


def _graph(document: dict[str, Any]) -> list[dict[str, Any]]:
    return [as_dict(item) for item in as_list(document.get("@graph"))]


def _types(item: dict[str, Any]) -> list[str]:
    return [as_str(t) for t in as_list(item.get("@type")) or [item.get("@type")]]


def _jsonld_value(prop: Any) -> str:
    """Read a plain, ``@value``-wrapped, or list-wrapped JSON-LD literal."""
    if isinstance(prop, list):
        prop = prop[0] if prop else None
    if isinstance(prop, dict):
        return as_str(prop.get("@value"))
    return as_str(prop)


def _find_main_entity(document: dict[str, Any], mesh_id: str) -> dict[str, Any]:
    if "@graph" not in document:
        return document
    wanted = {f"{root}{mesh_id}" for root in _MESH_URI_ROOTS}
    for item in _graph(document):
        if item.get("@id") in wanted:
            return item
    return {}


def _tree_numbers(document: dict[str, Any]) -> list[MeshTreeNumber]:
    return [
        MeshTreeNumber(
            tree_number=_jsonld_value(item.get("rdfs:label")),
            uri=as_str(item.get("@id")),
        )
        for item in _graph(document)
        if "meshv:TreeNumber" in _types(item) and item.get("rdfs:label")
    ]


def _concepts(document: dict[str, Any]) -> list[MeshConcept]:
    return [
        MeshConcept(
            uri=as_str(item.get("@id")),
            label=_jsonld_value(item.get("rdfs:label")),
            is_preferred=bool(item.get("meshv:preferredConcept")),
        )
        for item in _graph(document)
        if "meshv:Concept" in _types(item) and item.get("rdfs:label")
    ]


def _qualifiers(document: dict[str, Any]) -> list[MeshQualifier]:
    qualifiers = []
    for item in _graph(document):
        refs = item.get("meshv:allowableQualifier")
        if not refs:
            continue
        for ref in refs if isinstance(refs, list) else [refs]:
            uri = ref if isinstance(ref, str) else as_str(as_dict(ref).get("@id"))
            if uri:
                qualifiers.append(MeshQualifier(id=extract_mesh_id(uri), uri=uri))
    return qualifiers
