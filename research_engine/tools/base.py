from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import httpx

from research_engine.config import settings
from research_engine.models.research import CallStatus, ProviderName, SearchFilters, Source


@dataclass(slots=True)
class ProviderResult:
    results: list[Source] = field(default_factory=list)
    status: CallStatus = CallStatus.SUCCESS
    latency_ms: int = 0
    error: str | None = None


class SearchProvider(ABC):
    """One external evidence source.

    Subclasses implement ``_search``; callers use ``search``, which applies the
    timeout and turns every outcome into a ``ProviderResult``. It never raises
    for an empty result set, and reports timeouts separately from failures.
    """

    name: ProviderName
    corpus_language: str | None = "en"  # None: any language
    peer_reviewed: bool = False
    call_cost_usd: float = 0.0

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self.http_client = http_client

    @property
    def default_timeout(self) -> float:
        return 2.0

    async def search(
        self,
        query: str,
        filters: SearchFilters | None = None,
        max_results: int = 10,
        timeout: float | None = None,
    ) -> ProviderResult:
        budget = self.default_timeout if timeout is None else timeout
        t0 = time.monotonic()
        try:
            results = await asyncio.wait_for(
                self._search(query, filters or SearchFilters(), max(max_results, 0)),
                timeout=budget,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return ProviderResult(
                status=CallStatus.TIMEOUT,
                latency_ms=_elapsed_ms(t0),
                error=f"{self.name.value} timed out after {budget:.1f}s",
            )
        except Exception as e:
            return ProviderResult(
                status=CallStatus.ERROR,
                latency_ms=_elapsed_ms(t0),
                error=f"{type(e).__name__}: {e}",
            )
        return ProviderResult(
            results=results[:max_results],
            status=CallStatus.SUCCESS,
            latency_ms=_elapsed_ms(t0),
        )

    @abstractmethod
    async def _search(
        self, query: str, filters: SearchFilters, max_results: int
    ) -> list[Source]:
        ...

    async def _get(self, url: str, params: dict, headers: dict | None = None) -> httpx.Response:
        if self.http_client is not None:
            response = await self.http_client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(url, params=params, headers=headers)
        response.raise_for_status()
        return response


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def truncate_content(text: str, limit: int | None = None) -> str:
    limit = settings.source_content_max_chars if limit is None else limit
    text = " ".join((text or "").split())
    if len(text) <= limit:
        return text
    return text[: max(limit - 1, 0)].rstrip() + "…"
