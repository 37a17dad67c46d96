"""Incremental parsers for streamed output.

Both parsers are pull-based: callers push raw chunks in and only ever get
complete units back. Partial units stay buffered across reads.
"""
from __future__ import annotations

import codecs
import json
import re
from collections import deque
from typing import AsyncIterable, AsyncIterator, Iterator

from research_engine.models.events import StageEvent, StageEventType

# "[", "[3", "[3,", "[3, 1" ... a marker that may still be completed
_PARTIAL_MARKER_RE = re.compile(r"\[\d{0,4}(?:\s*,\s*\d{0,4})*$")
CITATION_MARKER_RE = re.compile(r"\[(\d{1,4}(?:\s*,\s*\d{1,4})*)\]")


class SSEParseError(ValueError):
    pass


class SSEParser:
    """Turns server-sent-event bytes into ``StageEvent`` objects."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._ready: deque[StageEvent] = deque()

    def feed(self, chunk: bytes) -> None:
        self._buffer += self._decoder.decode(chunk)
        self._buffer = self._buffer.replace("\r\n", "\n")
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            event = self._parse_block(block)
            if event is not None:
                self._ready.append(event)

    def close(self) -> None:
        """Flush the decoder. A trailing block without its blank line is dropped."""
        self._buffer += self._decoder.decode(b"", final=True)
        self._buffer = ""

    @property
    def pending(self) -> bool:
        return bool(self._buffer.strip())

    def next_event(self) -> StageEvent | None:
        return self._ready.popleft() if self._ready else None

    def __iter__(self) -> Iterator[StageEvent]:
        while self._ready:
            yield self._ready.popleft()

    @staticmethod
    def _parse_block(block: str) -> StageEvent | None:
        event_name = ""
        event_id = ""
        data_lines: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                event_name = value
            elif name == "data":
                data_lines.append(value)
            elif name == "id":
                event_id = value
        if not data_lines:
            return None

        raw = "\n".join(data_lines)
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise SSEParseError(f"Malformed event data: {raw[:200]}") from exc

        if isinstance(payload, dict) and "type" in payload and "sequence" in payload:
            return StageEvent.from_dict(payload)
        if not event_name:
            raise SSEParseError("Event block has neither an event name nor a typed payload")
        return StageEvent(
            type=StageEventType(event_name),
            sequence=int(event_id) if event_id.isdigit() else 0,
            timestamp=0.0,
            data=payload if isinstance(payload, dict) else {"value": payload},
        )


async def iter_sse_events(chunks: AsyncIterable[bytes]) -> AsyncIterator[StageEvent]:
    parser = SSEParser()
    async for chunk in chunks:
        parser.feed(chunk)
        for event in parser:
            yield event
    parser.close()


class CitationSafeBuffer:
    """Holds back text that could be the start of an inline ``[n]`` marker.

    ``push`` returns the longest prefix that is safe to emit now; the held tail
    is released once it is either completed or proven not to be a marker.
    """

    def __init__(self) -> None:
        self._held = ""

    def push(self, text: str) -> str:
        combined = self._held + text
        cut = combined.rfind("[")
        if cut != -1 and _PARTIAL_MARKER_RE.fullmatch(combined[cut:]):
            self._held = combined[cut:]
            return combined[:cut]
        self._held = ""
        return combined

    def flush(self) -> str:
        held, self._held = self._held, ""
        return held

    @property
    def holding(self) -> bool:
        return bool(self._held)
