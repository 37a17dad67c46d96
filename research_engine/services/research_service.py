"""One conversation turn: session bookkeeping around a pipeline run."""
from __future__ import annotations

from research_engine.agents.orchestrator import PipelineOutcome, ResearchOrchestrator
from research_engine.agents.router import detect_recall_intent
from research_engine.errors import SessionPersistenceFailure
from research_engine.models.session import Session
from research_engine.services import logger as log_service
from research_engine.services.context import RequestContext
from research_engine.services.session_manager import SessionManager
from research_engine.services.streaming import StageEmitter


class ResearchService:
    def __init__(self, orchestrator: ResearchOrchestrator, sessions: SessionManager):
        self.orchestrator = orchestrator
        self.sessions = sessions

    async def prepare(
        self,
        question: str,
        *,
        locale: str = "en",
        image_ref: str | None = None,
    ) -> RequestContext:
        """Close the current session if this question starts a new one, then record it."""
        reason = self.sessions.end_reason_before_turn(
            question, recall_intent=detect_recall_intent(question)
        )
        if reason is not None:
            await self._end(reason)

        history_session = self.sessions.ensure_active()
        self.sessions.append_user(question, image_ref=image_ref)
        return RequestContext(
            question=question,
            session=history_session,
            locale=locale,
            image_ref=image_ref,
        )

    async def run_turn(self, context: RequestContext, emitter: StageEmitter) -> PipelineOutcome:
        outcome = await self.orchestrator.run(context, emitter)
        if outcome.answer:
            self.sessions.append_assistant(outcome.answer)

        reason = self.sessions.end_reason_after_turn(context.question)
        if reason is not None:
            await self._end(reason, context)
        return outcome

    async def _end(self, reason: str, context: RequestContext | None = None) -> Session | None:
        try:
            return await self.sessions.end_session(
                reason, cost=context.cost if context is not None else None
            )
        except SessionPersistenceFailure as e:
            # the session stays active in memory and is retried on the next turn
            log_service.log_failure(e.code, e.message, reason=reason, **e.context)
            return None
