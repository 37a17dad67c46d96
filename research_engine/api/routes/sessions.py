from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from research_engine.errors import SessionPersistenceFailure
from research_engine.models.schemas import (
    RecallMatchResponse,
    RecallSearchRequest,
    RecallSearchResponse,
    SessionDetailResponse,
    SessionResponse,
)
from research_engine.services.recall_repository import RecallRepository
from research_engine.services.session_manager import EndReason, SessionManager
from research_engine.services.session_store import SessionFilter

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


@router.get("/active", response_model=SessionDetailResponse)
async def get_active_session(request: Request):
    session = _manager(request).active
    if session is None:
        raise HTTPException(status_code=404, detail="No active session")
    return SessionDetailResponse(
        session=SessionResponse.from_session(session),
        messages=session.messages,
    )


@router.post("/active/end", response_model=SessionResponse)
async def end_active_session(request: Request):
    """Complete the active session now; it becomes searchable through recall."""
    try:
        completed = await _manager(request).end_session(EndReason.USER_REQUEST)
    except SessionPersistenceFailure as e:
        raise HTTPException(status_code=503, detail=e.to_dict())
    if completed is None:
        raise HTTPException(status_code=404, detail="No active session")
    return SessionResponse.from_session(completed)


@router.get("", response_model=list[SessionResponse])
async def list_sessions(request: Request, limit: int = Query(default=50, ge=1, le=500)):
    """List completed sessions, most recent first."""
    sessions = _manager(request).store.load_complete(SessionFilter(limit=limit))
    return [SessionResponse.from_session(s) for s in sessions]


@router.post("/recall", response_model=RecallSearchResponse)
async def search_recall(payload: RecallSearchRequest, request: Request):
    recall: RecallRepository = request.app.state.recall
    result = recall.search(payload.terms)
    return RecallSearchResponse(
        status=result.status,
        matches=[
            RecallMatchResponse(
                session_id=m.session_id,
                title=m.title,
                summary=m.summary,
                key_topics=list(m.key_topics),
                updated_at=m.updated_at,
                score=m.score,
            )
            for m in result.matches
        ],
    )


@router.get("/{session_id}", response_model=SessionDetailResponse)
async def get_session(session_id: str, request: Request):
    sessions = _manager(request).store.load_complete(SessionFilter(ids=(session_id,)))
    if not sessions:
        raise HTTPException(status_code=404, detail="Session not found")
    session = sessions[0]
    return SessionDetailResponse(
        session=SessionResponse.from_session(session),
        messages=session.messages,
    )
