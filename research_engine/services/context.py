"""Request-scoped state passed explicitly through the pipeline."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from uuid import uuid4

from research_engine.config import settings
from research_engine.models.session import Message, Session
from research_engine.services.cost_tracker import CostTracker


class CancellationToken:
    """Cancellation signal tied to the caller's connection."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "client disconnected") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class RequestContext:
    question: str
    session: Session | None = None
    locale: str = "en"
    image_ref: str | None = None
    request_id: str = field(default_factory=lambda: uuid4().hex)
    cost: CostTracker = field(default_factory=CostTracker)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.monotonic)
    timeout_seconds: float = field(default_factory=lambda: settings.pipeline_timeout_seconds)

    @property
    def deadline(self) -> float:
        return self.started_at + self.timeout_seconds

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    @property
    def timed_out(self) -> bool:
        return time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def history(self, turns: int | None = None) -> list[Message]:
        if self.session is None:
            return []
        return self.session.history_excerpt(
            settings.history_excerpt_turns if turns is None else turns
        )
