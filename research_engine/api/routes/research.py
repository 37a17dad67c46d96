from __future__ import annotations

import asyncio
import json as _json

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from research_engine.models.schemas import ResearchRequest
from research_engine.services import logger as log_service
from research_engine.services.research_service import ResearchService
from research_engine.services.streaming import StageEmitter

router = APIRouter(prefix="/api/research", tags=["research"])


@router.post("/stream")
async def stream_research(payload: ResearchRequest, request: Request):
    """SSE endpoint that runs one turn and streams its stage events."""
    service: ResearchService = request.app.state.research_service
    context = await service.prepare(
        payload.question,
        locale=payload.locale,
        image_ref=payload.image_ref,
    )
    emitter = StageEmitter(context.request_id)

    async def event_generator():
        log_service.log_event(
            event_type="research_started",
            message="Research started",
            request_id=context.request_id,
            session_id=context.session.id if context.session else None,
            question=payload.question[:100],
        )
        task = asyncio.create_task(service.run_turn(context, emitter))
        try:
            async for event in emitter.events():
                yield {
                    "id": str(event.sequence),
                    "event": event.type.value,
                    "data": _json.dumps(event.to_dict(), ensure_ascii=False),
                }
            await task
        finally:
            if not task.done():
                # client went away: abandon in-flight work, keep what was sent
                context.cancel_token.cancel("client disconnected")
                task.cancel()
                log_service.log_event(
                    event_type="research_cancelled",
                    message="Client disconnected; pipeline cancelled",
                    request_id=context.request_id,
                    last_sequence=emitter.last_sequence,
                )

    return EventSourceResponse(event_generator())
