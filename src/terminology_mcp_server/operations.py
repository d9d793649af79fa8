"""Operation registry and dispatcher.

Every public operation is registered by name with a handler whose typed
signature doubles as the argument schema: ``pydantic.validate_call``
validates the argument bag before the handler runs, and the same
signature is what the MCP server advertises for each tool.

``OperationRegistry.invoke`` never raises for expected failures; it returns
``{"result": ...}`` or ``{"error": {"code", "message", "status_code"}}``.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Optional

from pydantic import Field, ValidationError, validate_call
from pydantic_core import to_jsonable_python

from terminology_mcp_server.errors import TerminologyApiError
from terminology_mcp_server.gateway import TERMINOLOGIES, TerminologyGateway

logger = logging.getLogger(__name__)

UNKNOWN_OPERATION = "UNKNOWN_OPERATION"
VALIDATION_ERROR = "VALIDATION_ERROR"

Language = Literal["en", "es", "pt", "fr", "de", "it", "zh", "ja", "ar", "ru"]
Direction = Literal["parents", "children"]
Terminology = Literal["icd11", "snomed", "loinc", "rxnorm", "mesh"]
RxClassType = Literal["ATC", "VA", "MESH", "FDASPL", "FMTSME", "EPC", "DISEASE"]

NonEmpty = Annotated[str, Field(min_length=1)]
MaxResults = Annotated[int, Field(ge=1, le=100)]
LoincNum = Annotated[str, Field(pattern=r"^\d{1,5}-\d$", description="LOINC number, e.g. 2339-0")]
RxCui = Annotated[str, Field(pattern=r"^\d+$", description="RxNorm concept unique identifier")]
Sctid = Annotated[str, Field(pattern=r"^\d+$", description="SNOMED CT concept identifier")]
MeshId = Annotated[str, Field(pattern=r"^D\d+$", description="MeSH descriptor id, e.g. D003920")]

Handler = Callable[..., Awaitable[Any]]


class ArgumentError(ValueError):
    """Arguments that pass type validation but are inconsistent together."""


@dataclass(frozen=True)
class Operation:
    """A named, validated entry point."""

    name: str
    description: str
    handler: Handler
    validated: Handler


def _error(code: str, message: str, status_code: int | None = None) -> dict[str, Any]:
    return {"error": {"code": code, "message": message, "status_code": status_code}}


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()) if p != "kwargs")
        parts.append(f"{location}: {err['msg']}" if location else err["msg"])
    return "; ".join(parts)


class OperationRegistry:
    """Maps operation names to handlers and dispatches invocations."""

    def __init__(self) -> None:
        self._operations: dict[str, Operation] = {}

    def register(
        self, name: str, description: str | None = None
    ) -> Callable[[Handler], Handler]:
        """Decorator registering ``handler`` under ``name``."""

        def decorator(handler: Handler) -> Handler:
            if name in self._operations:
                raise ValueError(f"operation already registered: {name}")
            self._operations[name] = Operation(
                name=name,
                description=description or (handler.__doc__ or "").strip(),
                handler=handler,
                validated=validate_call(handler),
            )
            return handler

        return decorator

    @property
    def operations(self) -> list[Operation]:
        return list(self._operations.values())

    def __contains__(self, name: object) -> bool:
        return name in self._operations

    async def invoke(self, name: str, args: dict[str, Any] | None = None) -> dict[str, Any]:
        """Validate ``args`` and run the named operation."""
        operation = self._operations.get(name)
        if operation is None:
            return _error(UNKNOWN_OPERATION, f"Unknown operation: {name}")
        if args is not None and not isinstance(args, dict):
            return _error(VALIDATION_ERROR, "arguments must be an object")
        try:
            result = await operation.validated(**(args or {}))
        except ValidationError as exc:
            return _error(VALIDATION_ERROR, _validation_message(exc))
        except ArgumentError as exc:
            return _error(VALIDATION_ERROR, str(exc))
        except TerminologyApiError as exc:
            logger.warning("Operation %s failed: %s (%s)", name, exc.message, exc.code.value)
            return {"error": exc.to_dict()}
        return {"result": to_jsonable_python(result)}


def build_registry(gateway: TerminologyGateway) -> OperationRegistry:
    """Register every terminology operation against ``gateway``."""
    registry = OperationRegistry()

    # -- ICD-11 -------------------------------------------------------------

    @registry.register("icd11_search")
    async def icd11_search(
        query: NonEmpty, language: Language = "en", max_results: MaxResults = 25
    ):
        """Search ICD-11 for diseases, conditions and health problems by text or code."""
        return await gateway.icd11.search(query, language, max_results)

    @registry.register("icd11_lookup")
    async def icd11_lookup(
        code: Optional[str] = None,
        uri: Optional[str] = None,
        language: Language = "en",
    ):
        """Get an ICD-11 entity by code (e.g. "BA00") or entity URI."""
        target = (code or uri or "").strip()
        if not target:
            raise ArgumentError("Either code or uri must be provided")
        return await gateway.icd11.lookup(target, language)

    @registry.register("icd11_hierarchy")
    async def icd11_hierarchy(code: NonEmpty, direction: Direction, language: Language = "en"):
        """List the parent or child entities of an ICD-11 code."""
        return await gateway.icd11.get_hierarchy(code, direction, language)

    @registry.register("icd11_chapters")
    async def icd11_chapters(language: Language = "en"):
        """List the top-level ICD-11 chapters."""
        return await gateway.icd11.get_chapters(language)

    @registry.register("icd11_postcoordination")
    async def icd11_postcoordination(code: NonEmpty, language: Language = "en"):
        """Get the postcoordination axes available for an ICD-11 code."""
        return await gateway.icd11.get_postcoordination(code, language)

    # -- LOINC --------------------------------------------------------------

    @registry.register("loinc_search")
    async def loinc_search(query: NonEmpty, max_results: MaxResults = 25):
        """Search LOINC for laboratory tests, observations and measurements."""
        return await gateway.loinc.search(query, max_results)

    @registry.register("loinc_details")
    async def loinc_details(loinc_num: LoincNum):
        """Get the six-axis definition of a LOINC code."""
        return await gateway.loinc.get_details(loinc_num)

    @registry.register("loinc_answers")
    async def loinc_answers(loinc_num: LoincNum):
        """Get the valid answers for a LOINC questionnaire item."""
        return await gateway.loinc.get_answers(loinc_num)

    @registry.register("loinc_panels")
    async def loinc_panels(loinc_num: LoincNum):
        """Get the structure of a LOINC panel or form."""
        return await gateway.loinc.get_panel(loinc_num)

    # -- RxNorm -------------------------------------------------------------

    @registry.register("rxnorm_search")
    async def rxnorm_search(query: NonEmpty, max_results: MaxResults = 25):
        """Search RxNorm drugs by brand or generic name.

        Falls back to approximate matching when the name search finds nothing.
        """
        drugs = await gateway.rxnorm.search_drugs(query)
        approximate = []
        if not drugs:
            approximate = await gateway.rxnorm.get_approximate_match(query, max_results)
        return {"drugs": drugs[:max_results], "approximate_matches": approximate}

    @registry.register("rxnorm_concept")
    async def rxnorm_concept(rxcui: RxCui, include_related: bool = False):
        """Get an RxNorm concept by RxCUI, optionally with related concepts."""
        concept = await gateway.rxnorm.get_concept(rxcui)
        if concept is None:
            return None
        related = await gateway.rxnorm.get_related_concepts(rxcui) if include_related else []
        return {"concept": concept, "related": related}

    @registry.register("rxnorm_ingredients")
    async def rxnorm_ingredients(rxcui: RxCui):
        """Get the active ingredients of a drug product."""
        return await gateway.rxnorm.get_ingredients(rxcui)

    @registry.register("rxnorm_classes")
    async def rxnorm_classes(rxcui: RxCui, class_type: Optional[RxClassType] = None):
        """Get therapeutic and pharmacologic classes for a drug."""
        return await gateway.rxnorm.get_drug_classes(rxcui, class_type)

    @registry.register("rxnorm_ndc")
    async def rxnorm_ndc(rxcui: Optional[RxCui] = None, ndc: Optional[str] = None):
        """Map between RxNorm concepts and National Drug Codes (NDC).

        Provide an RxCUI to list its NDCs, or an NDC to resolve its RxCUI.
        """
        if ndc:
            return {"ndc": ndc, "rxcui": await gateway.rxnorm.get_rxcui_by_ndc(ndc)}
        if rxcui:
            return {"rxcui": rxcui, "ndcs": await gateway.rxnorm.get_ndcs(rxcui)}
        raise ArgumentError("Either rxcui or ndc must be provided")

    # -- MeSH ---------------------------------------------------------------

    @registry.register("mesh_search")
    async def mesh_search(
        query: NonEmpty,
        match: Literal["exact", "contains", "startswith"] = "contains",
        max_results: MaxResults = 25,
    ):
        """Search MeSH descriptors by label."""
        return await gateway.mesh.search_descriptors(query, match, max_results)

    @registry.register("mesh_descriptor")
    async def mesh_descriptor(mesh_id: MeshId):
        """Get a MeSH descriptor with its tree numbers, concepts and qualifiers."""
        return await gateway.mesh.get_descriptor(mesh_id)

    @registry.register("mesh_tree")
    async def mesh_tree(mesh_id: MeshId):
        """Get the tree locations of a MeSH descriptor."""
        return await gateway.mesh.get_tree_numbers(mesh_id)

    @registry.register("mesh_qualifiers")
    async def mesh_qualifiers(mesh_id: MeshId):
        """Get the allowable qualifiers (subheadings) of a MeSH descriptor."""
        return await gateway.mesh.get_allowed_qualifiers(mesh_id)

    # -- SNOMED CT ----------------------------------------------------------

    @registry.register("snomed_search")
    async def snomed_search(
        query: NonEmpty, active_only: bool = True, max_results: MaxResults = 25
    ):
        """Search SNOMED CT concepts by term (reference use only; license required)."""
        return await gateway.snomed.search_concepts(query, active_only, max_results)

    @registry.register("snomed_concept")
    async def snomed_concept(sctid: Sctid):
        """Get a SNOMED CT concept by SCTID."""
        return await gateway.snomed.get_concept(sctid)

    @registry.register("snomed_hierarchy")
    async def snomed_hierarchy(
        sctid: Sctid,
        direction: Direction = "parents",
        limit: Annotated[int, Field(ge=1, le=1000)] = 50,
    ):
        """Get the inferred IS-A parents or children of a SNOMED CT concept."""
        return await gateway.snomed.get_hierarchy(sctid, direction, limit)

    @registry.register("snomed_descriptions")
    async def snomed_descriptions(sctid: Sctid):
        """Get all descriptions (FSN, synonyms, definitions) of a SNOMED CT concept."""
        return await gateway.snomed.get_descriptions(sctid)

    @registry.register("snomed_ecl")
    async def snomed_ecl(ecl: NonEmpty, max_results: MaxResults = 25):
        """Execute an Expression Constraint Language query, e.g. "<< 73211009"."""
        return await gateway.snomed.execute_ecl(ecl, max_results)

    # -- Crosswalk ----------------------------------------------------------

    @registry.register("map_icd10_to_icd11")
    async def map_icd10_to_icd11(icd10_code: NonEmpty):
        """Find candidate ICD-11 entities for an ICD-10 code (e.g. "E11")."""
        return await gateway.map_icd10_to_icd11(icd10_code)

    @registry.register("map_snomed_to_icd10")
    async def map_snomed_to_icd10(sctid: Sctid):
        """Show a SNOMED CT concept and where its ICD-10 mapping is published."""
        return await gateway.map_snomed_to_icd10(sctid)

    @registry.register("map_loinc_to_snomed")
    async def map_loinc_to_snomed(loinc_code: LoincNum):
        """Show a LOINC code with guidance for finding SNOMED CT equivalents."""
        return await gateway.map_loinc_to_snomed(loinc_code)

    @registry.register("find_equivalent")
    async def find_equivalent(
        term: NonEmpty,
        source_terminology: Optional[Terminology] = None,
        target_terminologies: Optional[list[Terminology]] = None,
    ):
        """Search for the same concept across ICD-11, SNOMED CT, LOINC, RxNorm and MeSH."""
        targets = target_terminologies or [
            t for t in TERMINOLOGIES if t != source_terminology
        ]
        return await gateway.find_equivalent(term, targets)

    return registry
