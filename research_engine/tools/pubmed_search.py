"""PubMed adapter over NCBI E-utilities (esearch for ids, efetch for abstracts)."""
from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from typing import Any

from research_engine.config import settings
from research_engine.models.research import ProviderName, SearchFilters, Source
from research_engine.tools.base import SearchProvider, truncate_content

EUTILS_BASE = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"
ESEARCH_URL = f"{EUTILS_BASE}/esearch.fcgi"
EFETCH_URL = f"{EUTILS_BASE}/efetch.fcgi"


class PubMedProvider(SearchProvider):
    name = ProviderName.PUBMED
    corpus_language = "en"
    peer_reviewed = True

    @property
    def default_timeout(self) -> float:
        return settings.pubmed_timeout_seconds

    def _base_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"db": "pubmed", "tool": "balli-research"}
        if settings.ncbi_api_key:
            params["api_key"] = settings.ncbi_api_key
        if settings.ncbi_email:
            params["email"] = settings.ncbi_email
        return params

    async def _search(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        if max_results == 0 or not query.strip():
            return []

        params = {
            **self._base_params(),
            "term": query,
            "retmax": max_results,
            "retmode": "json",
            "sort": "relevance",
        }
        if filters.min_year or filters.max_year:
            params["datetype"] = "pdat"
            params["mindate"] = str(filters.min_year or 1900)
            params["maxdate"] = str(filters.max_year or 3000)

        response = await self._get(ESEARCH_URL, params)
        ids = response.json().get("esearchresult", {}).get("idlist", []) or []
        if not ids:
            return []

        fetch_params = {
            **self._base_params(),
            "id": ",".join(ids),
            "retmode": "xml",
            "rettype": "abstract",
        }
        fetched = await self._get(EFETCH_URL, fetch_params)
        return parse_pubmed_xml(fetched.text)


def _text(elem: ET.Element | None) -> str:
    if elem is None:
        return ""
    return " ".join("".join(elem.itertext()).split())


def _year(article: ET.Element) -> int | None:
    for path in (".//PubDate/Year", ".//ArticleDate/Year", ".//PubDate/MedlineDate"):
        match = re.search(r"(19|20)\d{2}", _text(article.find(path)))
        if match:
            return int(match.group(0))
    return None


def parse_pubmed_xml(xml_text: str) -> list[Source]:
    root = ET.fromstring(xml_text)
    sources: list[Source] = []
    for article in root.findall(".//PubmedArticle"):
        pmid = _text(article.find(".//MedlineCitation/PMID"))
        if not pmid:
            continue

        authors = []
        for author in article.findall(".//AuthorList/Author"):
            last_name = _text(author.find("LastName"))
            initials = _text(author.find("Initials")) or _text(author.find("ForeName"))[:1]
            if last_name:
                authors.append(f"{last_name} {initials}".strip())
            else:
                collective = _text(author.find("CollectiveName"))
                if collective:
                    authors.append(collective)

        abstract_parts = []
        for part in article.findall(".//Abstract/AbstractText"):
            label = part.get("Label")
            body = _text(part)
            abstract_parts.append(f"{label}: {body}" if label else body)

        doi = ""
        for article_id in article.findall(".//ArticleIdList/ArticleId"):
            if article_id.get("IdType") == "doi":
                doi = _text(article_id)
                break

        publication_types = [_text(p) for p in article.findall(".//PublicationTypeList/PublicationType")]
        is_preprint = any(t.lower() == "preprint" for t in publication_types)

        sources.append(
            Source(
                provider=ProviderName.PUBMED,
                external_id=pmid,
                title=_text(article.find(".//ArticleTitle")) or "Untitled",
                url=f"https://pubmed.ncbi.nlm.nih.gov/{pmid}/",
                authors=authors,
                venue=_text(article.find(".//Journal/Title")),
                year=_year(article),
                doi=doi,
                content=truncate_content(" ".join(abstract_parts)),
                peer_reviewed=not is_preprint,
            )
        )
    return sources
