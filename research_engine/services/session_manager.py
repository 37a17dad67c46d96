"""Conversation lifecycle: one active session, append-only, completed into recall."""
from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta
from typing import Callable

from research_engine.agents.session_metadata import SessionMetadataGenerator, fallback_metadata
from research_engine.config import settings
from research_engine.errors import SessionPersistenceFailure
from research_engine.models.session import Message, MessageRole, Session, SessionStatus, utcnow
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.recall_repository import RecallRepository
from research_engine.services.session_store import SessionStore
from research_engine.services.text import estimate_tokens, word_set

SATISFACTION_PHRASES = (
    # tr
    "teşekkürler",
    "teşekkür ederim",
    "sağ ol",
    "sağol",
    "tamam anladım",
    "tamam yeter",
    "yeter",
    "anladım",
    # en
    "thank you",
    "thanks",
    "that's all",
    "that is all",
    "that's enough",
    "got it",
)

NEW_TOPIC_PHRASES = (
    "yeni konu",
    "başka bir şey",
    "şimdi başka",
    "yeni bir araştırma",
    "new topic",
    "something else",
    "different question",
)


class EndReason:
    SATISFACTION = "satisfaction"
    TOPIC_CHANGE = "topic_change"
    INACTIVITY = "inactivity"
    TOKEN_CEILING = "token_ceiling"
    USER_REQUEST = "user_request"


def _contains_phrase(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = " ".join((text or "").lower().replace("’", "'").split())
    return any(re.search(rf"(?<!\w){re.escape(p)}(?!\w)", lowered) for p in phrases)


def is_satisfaction(text: str) -> bool:
    return _contains_phrase(text, SATISFACTION_PHRASES)


def is_new_topic_request(text: str) -> bool:
    return _contains_phrase(text, NEW_TOPIC_PHRASES)


def topic_overlap(question: str, session: Session) -> float | None:
    """Share of the question's keywords already present in the session's user turns.

    None when the question has no keywords of its own (a follow-up such as "why?").
    """
    current = word_set(question, min_length=5)
    if not current:
        return None
    previous: set[str] = set()
    for message in session.user_messages():
        previous |= word_set(message.content, min_length=5)
    return len(current & previous) / len(current)


def session_tokens(session: Session) -> int:
    carried = estimate_tokens(session.carried_summary or "")
    return carried + sum(estimate_tokens(m.content) for m in session.messages)


class SessionManager:
    """Owns the single active session of one conversation context.

    Only this class mutates a session's message list, and only by appending;
    everything else receives ``snapshot()`` copies.
    """

    def __init__(
        self,
        store: SessionStore,
        recall: RecallRepository,
        *,
        metadata: SessionMetadataGenerator | None = None,
        clock: Callable[[], datetime] = utcnow,
        autosave_every: int | None = None,
        inactivity_seconds: int | None = None,
        token_ceiling: int | None = None,
        token_policy: str | None = None,
        topic_overlap_threshold: float | None = None,
    ):
        self.store = store
        self.recall = recall
        self.metadata = metadata
        self.clock = clock
        self.autosave_every = autosave_every or settings.session_autosave_every
        self.inactivity = timedelta(
            seconds=inactivity_seconds or settings.session_inactivity_seconds
        )
        self.token_ceiling = token_ceiling or settings.session_token_ceiling
        self.token_policy = token_policy or settings.session_token_policy
        if self.token_policy not in ("summarize_and_continue", "force_end"):
            raise ValueError(f"Unsupported session token policy: {self.token_policy}")
        self.topic_overlap_threshold = (
            settings.session_topic_overlap_threshold
            if topic_overlap_threshold is None
            else topic_overlap_threshold
        )
        self._active: Session | None = None
        self._save_pending = False
        self._lock = asyncio.Lock()

    # --- State ---

    @property
    def active(self) -> Session | None:
        return self._active.snapshot() if self._active is not None else None

    def restore(self) -> Session | None:
        """Reload the last active session after a restart, and index completed ones."""
        restored = self.store.load_active()
        if restored is not None:
            self._active = restored
        indexed = self.recall.index_many(self.store.load_complete())
        log_service.log_event(
            event_type="sessions_restored",
            message="Session state loaded from store",
            active_session=restored.id if restored else None,
            indexed=indexed,
        )
        return self.active

    def ensure_active(self) -> Session:
        if self._active is None:
            self._active = Session(created_at=self.clock(), updated_at=self.clock())
            log_service.log_event(
                event_type="session_started",
                message="New active session",
                session_id=self._active.id,
            )
        return self._active.snapshot()

    # --- Appends ---

    def _append(self, role: MessageRole, content: str, image_ref: str | None = None) -> Message:
        session = self._active
        if session is None or session.status != SessionStatus.ACTIVE:
            raise RuntimeError("No active session to append to")
        timestamp = self.clock()
        if session.messages and timestamp <= session.messages[-1].timestamp:
            timestamp = session.messages[-1].timestamp + timedelta(microseconds=1)
        message = Message(role=role, content=content, image_ref=image_ref, timestamp=timestamp)
        session.messages.append(message)
        session.updated_at = timestamp
        self._autosave()
        return message

    def append_user(self, content: str, image_ref: str | None = None) -> Message:
        self.ensure_active()
        return self._append(MessageRole.USER, content, image_ref)

    def append_assistant(self, content: str) -> Message:
        return self._append(MessageRole.ASSISTANT, content)

    def _autosave(self) -> None:
        session = self._active
        if session is None:
            return
        if len(session.messages) % self.autosave_every != 0 and not self._save_pending:
            return
        try:
            self.store.save(session)
            self._save_pending = False
        except SessionPersistenceFailure as e:
            # keep the in-memory state; the next tick retries
            self._save_pending = True
            log_service.log_failure(
                e.code,
                e.message,
                session_id=session.id,
                messages=len(session.messages),
            )

    # --- Transition checks ---

    def is_inactive(self, now: datetime | None = None) -> bool:
        if self._active is None:
            return False
        return (now or self.clock()) - self._active.updated_at > self.inactivity

    def end_reason_before_turn(self, question: str, *, recall_intent: bool = False) -> str | None:
        """Reason to close the current session before ``question`` is handled."""
        session = self._active
        if session is None or not session.messages:
            return None
        if self.is_inactive():
            return EndReason.INACTIVITY
        if is_new_topic_request(question):
            return EndReason.TOPIC_CHANGE
        if recall_intent or is_satisfaction(question):
            return None
        overlap = topic_overlap(question, session)
        if overlap is not None and overlap < self.topic_overlap_threshold:
            return EndReason.TOPIC_CHANGE
        return None

    def end_reason_after_turn(self, question: str) -> str | None:
        """Reason to close the session once the current turn's answer is recorded."""
        if self._active is None:
            return None
        if is_satisfaction(question):
            return EndReason.SATISFACTION
        if session_tokens(self._active) > self.token_ceiling:
            return EndReason.TOKEN_CEILING
        return None

    # --- Completion ---

    async def end_session(self, reason: str, *, cost: CostTracker | None = None) -> Session | None:
        """Complete the active session: metadata, final persist, recall index.

        Raises SessionPersistenceFailure if the final persist fails; the session
        then stays active in memory.
        """
        async with self._lock:
            session = self._active
            if session is None:
                return None
            if not session.messages:
                self._active = None
                return None

            if self.metadata is not None:
                meta = await self.metadata.generate(session.snapshot(), cost=cost)
            else:
                meta = fallback_metadata(session)

            completed = session.model_copy(
                update={
                    "status": SessionStatus.COMPLETE,
                    "title": meta.title,
                    "summary": meta.summary,
                    "key_topics": list(meta.key_topics),
                    "completion_reason": reason,
                    "updated_at": max(self.clock(), session.updated_at),
                },
                deep=True,
            )
            try:
                self.store.save(completed)
            except SessionPersistenceFailure as e:
                log_service.log_failure(e.code, e.message, session_id=session.id, final=True)
                raise

            self._active = None
            self._save_pending = False
            self.recall.index(completed)
            log_service.log_event(
                event_type="session_completed",
                message="Session completed",
                session_id=completed.id,
                reason=reason,
                title=completed.title,
                messages=len(completed.messages),
            )

            if reason == EndReason.TOKEN_CEILING and self.token_policy == "summarize_and_continue":
                self._active = Session(
                    created_at=self.clock(),
                    updated_at=self.clock(),
                    carried_summary=completed.summary,
                )
                log_service.log_event(
                    event_type="session_continued",
                    message="Token ceiling reached; continuing with a summary",
                    previous_session_id=completed.id,
                    session_id=self._active.id,
                )
            return completed

    async def expire_if_inactive(self) -> Session | None:
        if not self.is_inactive():
            return None
        return await self.end_session(EndReason.INACTIVITY)
