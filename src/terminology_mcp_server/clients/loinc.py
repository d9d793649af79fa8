"""LOINC terminology client using the NLM Clinical Tables API.

Searches LOINC items via /api/loinc_items/v3/search (free, no API key).
Answer lists and panel (form) definitions come from the
/loinc_answers and /loinc_form_definitions endpoints.

The search endpoint answers with a positional array::

    [total_count, [codes...], null, [[display fields...], ...]]

where each display-field row follows ``LOINC_DISPLAY_FIELDS``.

API documentation: https://clinicaltables.nlm.nih.gov/apidoc/loinc_items/v3/doc.html
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from terminology_mcp_server.cache import CachePrefix
from terminology_mcp_server.clients.base import BaseUpstreamClient, as_dict, as_list, as_str

logger = logging.getLogger(__name__)

LOINC_DISPLAY_FIELDS = (
    "LOINC_NUM",
    "LONG_COMMON_NAME",
    "COMPONENT",
    "PROPERTY",
    "TIME_ASPCT",
    "SYSTEM",
    "SCALE_TYP",
    "METHOD_TYP",
    "CLASS",
    "STATUS",
    "SHORTNAME",
)

_SEARCH_PATH = "/api/loinc_items/v3/search"
_ANSWERS_PATH = "/loinc_answers"
_FORMS_PATH = "/loinc_form_definitions"


@dataclass(frozen=True)
class LoincItem:
    """A LOINC term with its six-axis definition."""

    loinc_num: str
    long_common_name: str = ""
    component: str = ""
    property: str = ""
    time_aspect: str = ""
    system: str = ""
    scale_type: str = ""
    method_type: str = ""
    loinc_class: str = ""
    status: str = ""
    short_name: str = ""


@dataclass(frozen=True)
class LoincSearchResult:
    total_count: int
    items: list[LoincItem] = field(default_factory=list)


@dataclass(frozen=True)
class LoincAnswer:
    answer_code: str
    answer_string: str
    sequence: int = 0


@dataclass(frozen=True)
class LoincPanelItem:
    loinc_num: str
    name: str
    required: bool = False
    sequence: int = 0


@dataclass(frozen=True)
class LoincPanel:
    loinc_num: str
    name: str
    items: list[LoincPanelItem] = field(default_factory=list)


class LoincClient(BaseUpstreamClient):
    """Terminology client for LOINC via NLM Clinical Tables."""

    _cache_namespace = CachePrefix.LOINC

    async def search(self, query: str, max_results: int = 25) -> LoincSearchResult:
        """Search LOINC by free text or LOINC number."""
        query = query.strip()
        if not query:
            return LoincSearchResult(total_count=0)

        async def fetch() -> LoincSearchResult:
            data = await self._get(
                _SEARCH_PATH,
                params={
                    "terms": query,
                    "maxList": max_results,
                    "df": ",".join(LOINC_DISPLAY_FIELDS),
                },
            )
            total, codes, rows = _unpack_search(data)
            items = [_parse_item(code, rows[i] if i < len(rows) else []) for i, code in enumerate(codes)]
            return LoincSearchResult(total_count=total, items=items)

        return await self._cached(f"search:{query.lower()}:{max_results}", fetch, self.ttl.search)

    async def get_details(self, loinc_num: str) -> LoincItem | None:
        """Return the LOINC item whose number matches exactly, or None."""
        loinc_num = loinc_num.strip()

        async def fetch() -> LoincItem | None:
            data = await self._get(
                _SEARCH_PATH,
                params={
                    "terms": loinc_num,
                    "maxList": 1,
                    "df": ",".join(LOINC_DISPLAY_FIELDS),
                },
            )
            total, codes, rows = _unpack_search(data)
            if total == 0 or loinc_num not in codes:
                return None
            index = codes.index(loinc_num)
            return _parse_item(loinc_num, rows[index] if index < len(rows) else [])

        return await self._cached(f"details:{loinc_num}", fetch, self.ttl.lookup)

    async def get_answers(self, loinc_num: str) -> list[LoincAnswer]:
        """Return the answer list for a question code (empty if it has none)."""
        loinc_num = loinc_num.strip()

        async def fetch() -> list[LoincAnswer]:
            data = await self._get_or_none(_ANSWERS_PATH, params={"loinc_num": loinc_num})
            answers = []
            for raw in as_list(data):
                item = as_dict(raw)
                answers.append(
                    LoincAnswer(
                        answer_code=as_str(item.get("AnswerListId")),
                        answer_string=as_str(item.get("DisplayText"))
                        or as_str(item.get("AnswerStringId")),
                        sequence=_as_int(item.get("Sequence")),
                    )
                )
            return answers

        return await self._cached(f"answers:{loinc_num}", fetch, self.ttl.lookup)

    async def get_panel(self, loinc_num: str) -> LoincPanel | None:
        """Return the panel definition for ``loinc_num``, or None if it is not a panel."""
        loinc_num = loinc_num.strip()

        async def fetch() -> LoincPanel | None:
            data = as_dict(
                await self._get_or_none(_FORMS_PATH, params={"loinc_num": loinc_num})
            )
            raw_items = as_list(data.get("items"))
            if not raw_items:
                return None
            items = []
            for raw in raw_items:
                item = as_dict(raw)
                items.append(
                    LoincPanelItem(
                        loinc_num=as_str(item.get("questionCode")),
                        name=as_str(item.get("question")),
                        required=item.get("required") in ("1", 1, True),
                        sequence=_as_int(item.get("displayOrder")),
                    )
                )
            return LoincPanel(
                loinc_num=loinc_num,
                name=as_str(data.get("name")) or f"Panel {loinc_num}",
                items=items,
            )

        return await self._cached(f"panel:{loinc_num}", fetch, self.ttl.lookup)


def _unpack_search(data: Any) -> tuple[int, list[str], list[list[Any]]]:
    """Split the positional Clinical Tables response."""
    if not isinstance(data, list) or len(data) < 2:
        return 0, [], []
    total = _as_int(data[0])
    codes = [as_str(code) for code in as_list(data[1])]
    rows = [row if isinstance(row, list) else [] for row in as_list(data[3])] if len(data) > 3 else []
    return total, codes, rows


def _parse_item(code: str, row: list[Any]) -> LoincItem:
    def column(index: int) -> str:
        return as_str(row[index]) if index < len(row) else ""

    return LoincItem(
        loinc_num=code,
        long_common_name=column(1),
        component=column(2),
        property=column(3),
        time_aspect=column(4),
        system=column(5),
        scale_type=column(6),
        method_type=column(7),
        loinc_class=column(8),
        status=column(9),
        short_name=column(10),
    )


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
