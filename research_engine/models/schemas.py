from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from research_engine.models.session import Message, Session, SessionStatus


# --- Requests ---


class ResearchRequest(BaseModel):
    question: str = Field(min_length=1, max_length=4000)
    locale: str = "en"
    image_ref: str | None = None


class RecallSearchRequest(BaseModel):
    terms: list[str] = Field(min_length=1)


# --- Responses ---


class SessionResponse(BaseModel):
    id: str
    status: SessionStatus
    title: str | None
    summary: str | None
    key_topics: list[str]
    created_at: datetime
    updated_at: datetime
    message_count: int
    completion_reason: str | None = None

    @classmethod
    def from_session(cls, session: Session) -> SessionResponse:
        return cls(
            id=session.id,
            status=session.status,
            title=session.title,
            summary=session.summary,
            key_topics=list(session.key_topics),
            created_at=session.created_at,
            updated_at=session.updated_at,
            message_count=len(session.messages),
            completion_reason=session.completion_reason,
        )


class SessionDetailResponse(BaseModel):
    session: SessionResponse
    messages: list[Message]


class RecallMatchResponse(BaseModel):
    session_id: str
    title: str
    summary: str
    key_topics: list[str]
    updated_at: datetime
    score: float


class RecallSearchResponse(BaseModel):
    status: str
    matches: list[RecallMatchResponse]
