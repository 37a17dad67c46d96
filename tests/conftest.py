"""Shared fakes: canned providers, model responses and model streams."""
from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from types import SimpleNamespace
from typing import Any, Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from research_engine.models.research import ProviderName, SearchFilters, Source
from research_engine.tools.base import SearchProvider


def make_source(
    external_id: str = "1",
    *,
    provider: ProviderName = ProviderName.PUBMED,
    title: str = "Metformin and cardiovascular outcomes in type 2 diabetes",
    content: str = "Metformin reduced cardiovascular events in adults with type 2 diabetes.",
    year: int | None = 2022,
    peer_reviewed: bool = True,
    authors: list[str] | None = None,
    **kwargs: Any,
) -> Source:
    return Source(
        provider=provider,
        external_id=external_id,
        title=title,
        content=content,
        year=year,
        peer_reviewed=peer_reviewed,
        authors=authors if authors is not None else ["Smith J"],
        **kwargs,
    )


class StaticProvider(SearchProvider):
    """Provider returning canned sources, optionally slowly or with an error."""

    def __init__(
        self,
        name: ProviderName,
        results: list[Source] | Callable[[str], list[Source]] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        timeout: float = 2.0,
        corpus_language: str | None = "en",
    ):
        super().__init__()
        self.name = name
        self.corpus_language = corpus_language
        self._results = results or []
        self.delay = delay
        self.error = error
        self._timeout = timeout
        self.queries: list[str] = []

    @property
    def default_timeout(self) -> float:
        return self._timeout

    async def _search(self, query: str, filters: SearchFilters, max_results: int) -> list[Source]:
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        results = self._results(query) if callable(self._results) else self._results
        return [replace(s, authors=list(s.authors), provenance=set()) for s in results]


def text_response(text: str, input_tokens: int = 20, output_tokens: int = 10) -> SimpleNamespace:
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def json_response(payload: dict[str, Any]) -> SimpleNamespace:
    return text_response(json.dumps(payload))


def mock_llm_client(*responses: Any) -> MagicMock:
    """Client whose ``messages.create`` returns (or raises) the given items in order."""
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(responses))
    return client


def text_delta(text: str) -> SimpleNamespace:
    return SimpleNamespace(
        type="content_block_delta",
        delta=SimpleNamespace(type="text_delta", text=text),
    )


class FakeStream:
    """Async iterator over raw stream events, like the SDK's stream object."""

    def __init__(
        self,
        tokens: list[str],
        *,
        error_after: int | None = None,
        after_stop: list[str] | None = None,
        hang_after_stop: float = 0.0,
        stall_before_stop: float = 0.0,
    ):
        events: list[Any] = [
            SimpleNamespace(
                type="message_start",
                message=SimpleNamespace(usage=SimpleNamespace(input_tokens=100)),
            )
        ]
        events.extend(text_delta(t) for t in tokens)
        self.error_after = error_after
        self._tail: list[Any] = [
            SimpleNamespace(
                type="message_delta",
                delta=SimpleNamespace(stop_reason="end_turn"),
                usage=SimpleNamespace(output_tokens=len(tokens)),
            ),
            SimpleNamespace(type="message_stop"),
        ]
        self._tail.extend(text_delta(t) for t in (after_stop or []))
        self._events = events
        self._index = 0
        self._tail_index = 0
        self._delivered_tokens = 0
        self.hang_after_stop = hang_after_stop
        self.stall_before_stop = stall_before_stop
        self.closed = False

    def __aiter__(self) -> FakeStream:
        return self

    async def __anext__(self) -> Any:
        await asyncio.sleep(0)
        if self._index < len(self._events):
            event = self._events[self._index]
            if event.type == "content_block_delta":
                if self.error_after is not None and self._delivered_tokens >= self.error_after:
                    raise RuntimeError("upstream stream reset")
                self._delivered_tokens += 1
            self._index += 1
            return event
        if self.error_after is not None:
            raise RuntimeError("upstream stream reset")
        if self.stall_before_stop:
            stall, self.stall_before_stop = self.stall_before_stop, 0.0
            await asyncio.sleep(stall)
        if self._tail_index < len(self._tail):
            event = self._tail[self._tail_index]
            self._tail_index += 1
            return event
        if self.hang_after_stop:
            await asyncio.sleep(self.hang_after_stop)
        raise StopAsyncIteration

    async def close(self) -> None:
        self.closed = True


def stream_client(*streams: FakeStream) -> MagicMock:
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(streams))
    return client


@pytest.fixture
def sources() -> list[Source]:
    return [
        make_source("1"),
        make_source(
            "2",
            title="Sodium-glucose cotransporter inhibitors and heart failure",
            content="SGLT2 inhibitors lowered hospitalization for heart failure.",
            year=2021,
            authors=["Lee K"],
        ),
        make_source(
            "NCT01",
            provider=ProviderName.CLINICAL_TRIALS,
            title="Metformin in prediabetes trial",
            content="A randomized trial of metformin in adults with prediabetes.",
            year=2020,
            peer_reviewed=False,
            authors=["Trial Group"],
        ),
    ]
