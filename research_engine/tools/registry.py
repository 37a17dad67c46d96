from __future__ import annotations

from typing import Iterable

import httpx

from research_engine.config import settings
from research_engine.models.research import ProviderName
from research_engine.tools.base import SearchProvider
from research_engine.tools.clinical_trials import ClinicalTrialsProvider
from research_engine.tools.preprint_search import PreprintProvider
from research_engine.tools.pubmed_search import PubMedProvider
from research_engine.tools.web_search import WebSearchProvider


class ProviderRegistry:
    """Maps provider names to adapters; the only place that knows the concrete set."""

    def __init__(self, providers: Iterable[SearchProvider]):
        self._providers: dict[ProviderName, SearchProvider] = {}
        for provider in providers:
            self._providers[provider.name] = provider

    def get(self, name: ProviderName) -> SearchProvider | None:
        return self._providers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    @property
    def names(self) -> list[ProviderName]:
        return list(self._providers)

    def timeout_for(self, name: ProviderName) -> float:
        provider = self._providers.get(name)
        return provider.default_timeout if provider else 0.0

    def corpus_language(self, name: ProviderName) -> str | None:
        provider = self._providers.get(name)
        return provider.corpus_language if provider else None


def build_default_registry(http_client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    providers: list[SearchProvider] = [
        PubMedProvider(http_client),
        PreprintProvider(http_client),
        ClinicalTrialsProvider(http_client),
    ]
    if settings.tavily_api_key or settings.brave_api_key:
        providers.append(WebSearchProvider(http_client))
    return ProviderRegistry(providers)
