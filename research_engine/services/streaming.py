"""Stage event constructors and the single ordered emission point."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from research_engine.models.events import StageEvent, StageEventType
from research_engine.models.research import (
    ExclusionReport,
    GapAssessment,
    ProviderCallResult,
    ResearchPlan,
    Round,
    RoundPurpose,
    RoutingDecision,
    VerificationReport,
)


@dataclass(frozen=True, slots=True)
class EventDraft:
    type: StageEventType
    data: dict[str, Any] = field(default_factory=dict)


class EmitterClosed(RuntimeError):
    """Raised when a stage tries to emit after the terminal event."""


class StageEmitter:
    """Single writer for one request's event stream.

    Stages running in concurrent tasks hand drafts to ``emit``; sequence numbers
    are assigned here, so the order readers see is the order of assignment.
    After ``complete`` or ``error`` the emitter refuses further events.
    """

    def __init__(self, request_id: str = ""):
        self.request_id = request_id
        self._queue: asyncio.Queue[StageEvent | None] = asyncio.Queue()
        self._sequence = 0
        self._terminal: StageEvent | None = None
        self.history: list[StageEvent] = []

    @property
    def closed(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> StageEvent | None:
        return self._terminal

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def emit(self, draft: EventDraft) -> StageEvent:
        if self._terminal is not None:
            raise EmitterClosed(
                f"cannot emit {draft.type.value} after {self._terminal.type.value}"
            )
        self._sequence += 1
        event = StageEvent(
            type=draft.type,
            sequence=self._sequence,
            timestamp=time.time(),
            data=draft.data,
        )
        self.history.append(event)
        self._queue.put_nowait(event)
        if event.is_terminal:
            self._terminal = event
            self._queue.put_nowait(None)
        return event

    async def events(self) -> AsyncIterator[StageEvent]:
        """Yield events in sequence order until the terminal event."""
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


# --- Constructors ---


def routing(decision: RoutingDecision) -> EventDraft:
    return EventDraft(
        StageEventType.ROUTING,
        {
            "tier": int(decision.tier),
            "confidence": round(decision.confidence, 4),
            "explicit_deep_request": decision.explicit_deep_request,
            "reasoning": decision.reasoning,
            "fallback": decision.fallback,
        },
    )


def recall_result(status: str, sessions: list[dict[str, Any]]) -> EventDraft:
    return EventDraft(StageEventType.RECALL_RESULT, {"status": status, "sessions": sessions})


def planning_started(query: str) -> EventDraft:
    return EventDraft(StageEventType.PLANNING_STARTED, {"query": query})


def planning_complete(plan: ResearchPlan) -> EventDraft:
    return EventDraft(StageEventType.PLANNING_COMPLETE, plan.to_dict())


def round_started(
    number: int,
    purpose: RoundPurpose,
    queries: list[str],
    target_sources: int,
) -> EventDraft:
    return EventDraft(
        StageEventType.ROUND_STARTED,
        {
            "round": number,
            "purpose": purpose.value,
            "queries": queries,
            "target_sources": target_sources,
        },
    )


def api_call(round_number: int | None, result: ProviderCallResult) -> EventDraft:
    data: dict[str, Any] = {
        "provider": result.call.provider.value,
        "query": result.call.query,
        "status": result.status.value,
        "latency_ms": result.latency_ms,
        "results_count": len(result.results),
    }
    if round_number is not None:
        data["round"] = round_number
    if result.error:
        data["error"] = result.error
    return EventDraft(StageEventType.API_CALL, data)


def round_complete(completed: Round, new_sources: int, total_sources: int) -> EventDraft:
    summary = completed.summary()
    summary.pop("calls", None)
    summary["new_sources"] = new_sources
    summary["total_sources"] = total_sources
    return EventDraft(StageEventType.ROUND_COMPLETE, summary)


def gap_detected(assessment: GapAssessment) -> EventDraft:
    return EventDraft(StageEventType.GAP_DETECTED, assessment.to_dict())


def synthesis_started(sources_count: int, exclusions: ExclusionReport | None = None) -> EventDraft:
    data: dict[str, Any] = {"sources_count": sources_count}
    if exclusions is not None:
        data["exclusions"] = exclusions.to_dict()
    return EventDraft(StageEventType.SYNTHESIS_STARTED, data)


def token(text: str) -> EventDraft:
    return EventDraft(StageEventType.TOKEN, {"text": text})


def complete(
    *,
    answer: str,
    tier: int,
    citations: list[dict[str, Any]],
    verification: VerificationReport | None,
    **kwargs: Any,
) -> EventDraft:
    return EventDraft(
        StageEventType.COMPLETE,
        {
            "answer": answer,
            "tier": tier,
            "citations": citations,
            "verification": verification.to_dict() if verification else None,
            **kwargs,
        },
    )


def error(code: str, message: str, **kwargs: Any) -> EventDraft:
    return EventDraft(StageEventType.ERROR, {"code": code, "message": message, **kwargs})
