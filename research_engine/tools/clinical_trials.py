"""Clinical-trial registry adapter over the ClinicalTrials.gov v2 API."""
from __future__ import annotations

from typing import Any

from research_engine.config import settings
from research_engine.models.research import ProviderName, SearchFilters, Source
from research_engine.tools.base import SearchProvider, truncate_content

CLINICAL_TRIALS_URL = "https://clinicaltrials.gov/api/v2/studies"


class ClinicalTrialsProvider(SearchProvider):
    name = ProviderName.CLINICAL_TRIALS
    corpus_language = "en"
    peer_reviewed = False

    @property
    def default_timeout(self) -> float:
        return settings.trials_timeout_seconds

    async def _search(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        if max_results == 0 or not query.strip():
            return []

        response = await self._get(
            CLINICAL_TRIALS_URL,
            {
                "query.term": query,
                "pageSize": max_results,
                "format": "json",
            },
        )
        studies = response.json().get("studies", []) or []
        sources = [source for source in (_to_source(study) for study in studies) if source]
        return [s for s in sources if _within_years(s.year, filters)]


def _within_years(year: int | None, filters: SearchFilters) -> bool:
    if year is None:
        return True
    if filters.min_year and year < filters.min_year:
        return False
    if filters.max_year and year > filters.max_year:
        return False
    return True


def _to_source(study: dict[str, Any]) -> Source | None:
    protocol = study.get("protocolSection", {}) or {}
    ident = protocol.get("identificationModule", {}) or {}
    nct_id = ident.get("nctId")
    if not nct_id:
        return None

    status = protocol.get("statusModule", {}) or {}
    description = protocol.get("descriptionModule", {}) or {}
    sponsor = (protocol.get("sponsorCollaboratorsModule", {}) or {}).get("leadSponsor", {}) or {}
    design = protocol.get("designModule", {}) or {}

    start_date = (status.get("startDateStruct", {}) or {}).get("date", "") or ""
    year = int(start_date[:4]) if start_date[:4].isdigit() else None
    phases = ", ".join(design.get("phases", []) or [])
    overall = status.get("overallStatus", "")
    summary = description.get("briefSummary", "") or description.get("detailedDescription", "")
    header = " | ".join(part for part in (overall, phases) if part)

    return Source(
        provider=ProviderName.CLINICAL_TRIALS,
        external_id=nct_id,
        title=ident.get("briefTitle") or ident.get("officialTitle") or nct_id,
        url=f"https://clinicaltrials.gov/study/{nct_id}",
        authors=[sponsor["name"]] if sponsor.get("name") else [],
        venue="ClinicalTrials.gov",
        year=year,
        content=truncate_content(f"{header}. {summary}" if header else summary),
        peer_reviewed=False,
    )
