"""Preprint adapter over the Europe PMC REST API, restricted to SRC:PPR."""
from __future__ import annotations

import re

from research_engine.config import settings
from research_engine.models.research import ProviderName, SearchFilters, Source
from research_engine.tools.base import SearchProvider, truncate_content

EUROPE_PMC_SEARCH_URL = "https://www.ebi.ac.uk/europepmc/webservices/rest/search"

_TAG_RE = re.compile(r"<[^>]+>")


class PreprintProvider(SearchProvider):
    name = ProviderName.PREPRINT
    corpus_language = "en"
    peer_reviewed = False

    @property
    def default_timeout(self) -> float:
        return settings.preprint_timeout_seconds

    @staticmethod
    def build_query(query: str, filters: SearchFilters) -> str:
        parts = [f"({query})", "SRC:PPR"]
        if filters.min_year or filters.max_year:
            parts.append(f"PUB_YEAR:[{filters.min_year or 1900} TO {filters.max_year or 3000}]")
        return " AND ".join(parts)

    async def _search(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        if max_results == 0 or not query.strip():
            return []

        response = await self._get(
            EUROPE_PMC_SEARCH_URL,
            {
                "query": self.build_query(query, filters),
                "format": "json",
                "resultType": "core",
                "pageSize": max_results,
            },
        )
        items = response.json().get("resultList", {}).get("result", []) or []
        return [source for source in (_to_source(item) for item in items) if source]


def _to_source(item: dict) -> Source | None:
    record_id = str(item.get("id") or "")
    if not record_id:
        return None
    year = item.get("pubYear")
    abstract = _TAG_RE.sub(" ", item.get("abstractText", "") or "")
    venue = (
        (item.get("bookOrReportDetails") or {}).get("publisher")
        or item.get("journalTitle")
        or "preprint"
    )
    return Source(
        provider=ProviderName.PREPRINT,
        external_id=record_id,
        title=(item.get("title") or "Untitled").rstrip("."),
        url=f"https://europepmc.org/article/PPR/{record_id}",
        authors=[a.strip() for a in (item.get("authorString") or "").rstrip(".").split(",") if a.strip()],
        venue=venue,
        year=int(year) if str(year or "").isdigit() else None,
        doi=item.get("doi", "") or "",
        content=truncate_content(abstract),
        peer_reviewed=False,
    )
