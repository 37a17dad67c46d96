"""HTTP client for the research stream."""
from __future__ import annotations

from typing import Any, AsyncIterator

import httpx

from research_engine.models.events import StageEvent, StageEventType
from research_engine.services.stream_parser import iter_sse_events


class StreamProtocolError(RuntimeError):
    """The server broke the event-stream contract (order or terminal event)."""


class ResearchClient:
    """Posts a question and yields the parsed stage events in order.

    Raises StreamProtocolError if sequence numbers go backwards or the stream
    ends without a ``complete`` or ``error`` event.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client
        self.timeout = timeout

    async def stream(
        self,
        question: str,
        *,
        locale: str = "en",
        image_ref: str | None = None,
    ) -> AsyncIterator[StageEvent]:
        body: dict[str, Any] = {"question": question, "locale": locale}
        if image_ref:
            body["image_ref"] = image_ref

        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/api/research/stream",
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as response:
                response.raise_for_status()
                last_sequence = 0
                terminal = False
                async for event in iter_sse_events(response.aiter_bytes()):
                    if event.sequence <= last_sequence:
                        raise StreamProtocolError(
                            f"sequence went from {last_sequence} to {event.sequence}"
                        )
                    last_sequence = event.sequence
                    yield event
                    if event.is_terminal:
                        terminal = True
                        break
                if not terminal:
                    raise StreamProtocolError("stream closed without a terminal event")
        finally:
            if owns_client:
                await client.aclose()

    async def ask(self, question: str, **kwargs: Any) -> dict[str, Any]:
        """Run a question to completion and return the answer with its metadata."""
        tokens: list[str] = []
        async for event in self.stream(question, **kwargs):
            if event.type == StageEventType.TOKEN:
                tokens.append(event.data.get("text", ""))
            elif event.type == StageEventType.COMPLETE:
                return {**event.data, "streamed_text": "".join(tokens)}
            elif event.type == StageEventType.ERROR:
                return {"error": event.data, "streamed_text": "".join(tokens)}
        return {"streamed_text": "".join(tokens)}
