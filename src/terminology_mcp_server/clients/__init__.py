"""Upstream terminology clients.

Provides async HTTP clients for:
- ICD-11: diseases and health conditions (WHO ICD API, OAuth2)
- LOINC: lab tests and observations (NLM Clinical Tables)
- RxNorm: medications and drug concepts (NLM RxNav)
- MeSH: medical subject headings (NLM MeSH RDF)
- SNOMED CT: clinical concepts (Snowstorm)

Every client shares the rate-limit, retry and cache plumbing in
``BaseUpstreamClient``.

Example usage::

    from terminology_mcp_server.gateway import TerminologyGateway

    gateway = TerminologyGateway.from_config(GatewayConfig.from_env())
    drugs = await gateway.rxnorm.search_drugs("aspirin")
    await gateway.aclose()
"""

from terminology_mcp_server.clients.base import BaseUpstreamClient, HierarchyDirection
from terminology_mcp_server.clients.icd11 import Icd11Client
from terminology_mcp_server.clients.loinc import LoincClient
from terminology_mcp_server.clients.mesh import MeshClient, MeshMatch
from terminology_mcp_server.clients.rxnorm import RxNormClient
from terminology_mcp_server.clients.snomed import SnomedClient

__all__ = [
    "BaseUpstreamClient",
    "HierarchyDirection",
    "Icd11Client",
    "LoincClient",
    "MeshClient",
    "MeshMatch",
    "RxNormClient",
    "SnomedClient",
]
