from __future__ import annotations

import json

import httpx
import pytest

from research_engine.client import ResearchClient, StreamProtocolError
from research_engine.models.events import StageEvent, StageEventType


def sse(*events: StageEvent) -> bytes:
    return "".join(event.format() for event in events).encode("utf-8")


def event(sequence: int, event_type: StageEventType, **data) -> StageEvent:
    return StageEvent(type=event_type, sequence=sequence, timestamp=float(sequence), data=data)


def client_for(body: bytes, seen: list | None = None) -> ResearchClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResearchClient("http://test", http_client=http_client)


@pytest.mark.asyncio
async def test_ask_collects_tokens_and_completion():
    seen: list[httpx.Request] = []
    body = sse(
        event(1, StageEventType.ROUTING, tier=1),
        event(2, StageEventType.TOKEN, text="Hb"),
        event(3, StageEventType.TOKEN, text="A1c"),
        event(4, StageEventType.COMPLETE, answer="HbA1c", tier=1),
    )

    result = await client_for(body, seen).ask("What is HbA1c?", locale="tr")

    assert result["answer"] == "HbA1c"
    assert result["streamed_text"] == "HbA1c"
    assert seen[0].url.path == "/api/research/stream"
    assert json.loads(seen[0].content) == {"question": "What is HbA1c?", "locale": "tr"}


@pytest.mark.asyncio
async def test_error_event_is_returned():
    body = sse(
        event(1, StageEventType.TOKEN, text="partial"),
        event(2, StageEventType.ERROR, code="SYNTHESIS_FAILURE", message="reset", truncated=True),
    )

    result = await client_for(body).ask("q")

    assert result["error"]["code"] == "SYNTHESIS_FAILURE"
    assert result["streamed_text"] == "partial"


@pytest.mark.asyncio
async def test_missing_terminal_event_is_a_protocol_error():
    body = sse(event(1, StageEventType.ROUTING, tier=2))

    with pytest.raises(StreamProtocolError):
        async for _ in client_for(body).stream("q"):
            pass


@pytest.mark.asyncio
async def test_sequence_going_backwards_is_a_protocol_error():
    body = sse(
        event(2, StageEventType.ROUTING, tier=2),
        event(1, StageEventType.COMPLETE, answer=""),
    )

    with pytest.raises(StreamProtocolError):
        async for _ in client_for(body).stream("q"):
            pass
