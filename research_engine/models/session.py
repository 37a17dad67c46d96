from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"


class Message(BaseModel):
    """One conversation turn. Never edited or removed once appended."""

    model_config = {"frozen": True}

    role: MessageRole
    content: str
    image_ref: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Session(BaseModel):
    """A conversation. Appended to while active, immutable once complete."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    messages: list[Message] = []
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    title: Optional[str] = None
    summary: Optional[str] = None
    key_topics: list[str] = []
    carried_summary: Optional[str] = None  # set by summarize-and-continue
    completion_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def snapshot(self) -> Session:
        return self.model_copy(deep=True)

    def user_messages(self) -> list[Message]:
        return [m for m in self.messages if m.role == MessageRole.USER]

    def history_excerpt(self, turns: int) -> list[Message]:
        if turns <= 0:
            return []
        return list(self.messages[-turns:])
