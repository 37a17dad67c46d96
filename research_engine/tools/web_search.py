"""General web search: Tavily, or Brave with Tavily as fallback."""
from __future__ import annotations

import hashlib
import re
from typing import Any
from urllib.parse import urlparse

from tavily import AsyncTavilyClient

from research_engine.config import settings
from research_engine.models.research import ProviderName, SearchFilters, Source
from research_engine.services import logger as log_service
from research_engine.tools.base import SearchProvider, truncate_content

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

_YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url or "")
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def extract_domain(url: str) -> str:
    return urlparse(url).netloc.lower().removeprefix("www.")


class WebSearchProvider(SearchProvider):
    name = ProviderName.WEB
    corpus_language = None
    peer_reviewed = False

    def __init__(self, http_client=None, tavily_client: AsyncTavilyClient | None = None):
        super().__init__(http_client)
        self._tavily = tavily_client
        self.call_cost_usd = settings.web_search_call_price_usd

    @property
    def default_timeout(self) -> float:
        return settings.web_timeout_seconds

    @property
    def tavily(self) -> AsyncTavilyClient:
        if self._tavily is None:
            self._tavily = AsyncTavilyClient(api_key=settings.tavily_api_key)
        return self._tavily

    async def _search(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        if max_results == 0 or not query.strip():
            return []

        backend = settings.web_search_backend.lower().strip()
        if backend == "tavily":
            return await self._search_tavily(query, filters, max_results)
        if backend != "brave":
            raise ValueError(f"Unsupported WEB_SEARCH_BACKEND: {settings.web_search_backend}")

        try:
            results = await self._search_brave(query, filters, max_results)
            if results or not settings.web_search_fallback_to_tavily:
                return results
            reason = "brave returned zero results"
        except Exception as e:
            if not settings.web_search_fallback_to_tavily:
                raise
            reason = str(e)

        log_service.log_event(
            event_type="web_search_fallback",
            message="Falling back to Tavily",
            fallback_from="brave",
            reason=reason,
            query=query,
        )
        return await self._search_tavily(query, filters, max_results)

    async def _search_tavily(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        kwargs: dict[str, Any] = {
            "query": query,
            "search_depth": "basic",
            "max_results": max_results,
            "topic": "general",
        }
        if filters.include_domains:
            kwargs["include_domains"] = list(filters.include_domains)
        if filters.exclude_domains:
            kwargs["exclude_domains"] = list(filters.exclude_domains)

        response = await self.tavily.search(**kwargs)
        return [
            _to_source(r.get("title", ""), r.get("url", ""), r.get("content", ""), r.get("published_date"))
            for r in response.get("results", [])
            if is_valid_url(r.get("url", ""))
        ]

    async def _search_brave(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        if not settings.brave_api_key:
            raise RuntimeError("BRAVE_API_KEY is not configured")

        q = query
        for domain in filters.include_domains:
            q = f"{q} site:{domain}"
        params: dict[str, Any] = {"q": q, "count": max_results}
        response = await self._get(
            BRAVE_SEARCH_URL,
            params,
            headers={
                "Accept": "application/json",
                "X-Subscription-Token": settings.brave_api_key,
            },
        )
        payload = response.json()
        mapped = []
        for item in payload.get("web", {}).get("results", []):
            url = item.get("url", "")
            if not is_valid_url(url) or extract_domain(url) in filters.exclude_domains:
                continue
            description = item.get("description", "") or ""
            snippets = item.get("extra_snippets", []) or []
            content = description.strip() or " ".join(snippets).strip()
            mapped.append(_to_source(item.get("title", ""), url, content, item.get("page_age")))
        return mapped


def _to_source(title: str, url: str, content: str, published: str | None) -> Source:
    match = _YEAR_RE.search(published or "")
    return Source(
        provider=ProviderName.WEB,
        external_id=hashlib.sha1(url.encode("utf-8")).hexdigest()[:16],
        title=title or extract_domain(url),
        url=url,
        venue=extract_domain(url),
        year=int(match.group(0)) if match else None,
        content=truncate_content(re.sub(r"<[^>]+>", " ", content or "")),
        peer_reviewed=False,
    )
