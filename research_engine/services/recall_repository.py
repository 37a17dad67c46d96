"""Recall index over completed sessions, scored with BM25 per field."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable

import numpy as np
from rank_bm25 import BM25Plus

from research_engine.config import settings
from research_engine.models.session import Session, SessionStatus
from research_engine.services import logger as log_service
from research_engine.services.text import tokenize

FIELDS = ("title", "topics", "summary", "messages")


class RecallStatus:
    MATCH = "match"
    NO_MATCH = "no_match"
    MULTIPLE = "multiple"


@dataclass(frozen=True, slots=True)
class RecallMatch:
    session_id: str
    title: str
    summary: str
    key_topics: tuple[str, ...]
    updated_at: datetime
    score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "title": self.title,
            "summary": self.summary,
            "key_topics": list(self.key_topics),
            "updated_at": self.updated_at.isoformat(),
            "score": round(self.score, 4),
        }


@dataclass(frozen=True, slots=True)
class RecallResult:
    status: str
    matches: tuple[RecallMatch, ...] = ()

    @property
    def best(self) -> RecallMatch | None:
        return self.matches[0] if self.matches else None


def field_tokens(session: Session) -> dict[str, list[str]]:
    return {
        "title": tokenize(session.title or ""),
        "topics": tokenize(" ".join(session.key_topics)),
        "summary": tokenize(session.summary or ""),
        "messages": tokenize(" ".join(m.content for m in session.messages)),
    }


def _field_scores(corpus: list[list[str]], terms: list[str]) -> np.ndarray:
    """BM25 scores for one field, normalised to [0, 1] across the index.

    BM25+ adds a per-term floor to every document; it is subtracted so a
    document without any term hit scores zero.
    """
    if not corpus or not any(corpus):
        return np.zeros(len(corpus))
    bm25 = BM25Plus(corpus)
    scores = np.asarray(bm25.get_scores(terms), dtype=np.float64)
    floor = sum((bm25.idf.get(t) or 0.0) for t in terms) * bm25.delta
    scores = np.clip(scores - floor, 0.0, None)
    best = float(scores.max()) if scores.size else 0.0
    return scores / best if best > 0 else scores


class RecallRepository:
    """Append-only index of completed sessions.

    Active sessions are refused; a session id already indexed is ignored.
    """

    def __init__(
        self,
        *,
        weights: dict[str, float] | None = None,
        close_match_margin: float | None = None,
        max_results: int | None = None,
    ):
        self.weights = weights or {
            "title": settings.recall_title_weight,
            "topics": settings.recall_topics_weight,
            "summary": settings.recall_summary_weight,
            "messages": settings.recall_messages_weight,
        }
        self.close_match_margin = (
            settings.recall_close_match_margin if close_match_margin is None else close_match_margin
        )
        self.max_results = max_results or settings.recall_max_results
        self._sessions: list[Session] = []
        self._tokens: list[dict[str, list[str]]] = []
        self._ids: set[str] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._ids

    def index(self, session: Session) -> bool:
        if session.status != SessionStatus.COMPLETE:
            raise ValueError(f"Only complete sessions can be indexed (session {session.id} is active)")
        with self._lock:
            if session.id in self._ids:
                return False
            frozen = session.snapshot()
            self._sessions.append(frozen)
            self._tokens.append(field_tokens(frozen))
            self._ids.add(frozen.id)
        log_service.log_event(
            event_type="recall_indexed",
            message="Session added to recall index",
            session_id=session.id,
            title=session.title,
        )
        return True

    def index_many(self, sessions: Iterable[Session]) -> int:
        return sum(
            1 for s in sessions if s.status == SessionStatus.COMPLETE and self.index(s)
        )

    def search(self, terms: Iterable[str] | str) -> RecallResult:
        if isinstance(terms, str):
            query = tokenize(terms)
        else:
            query = [t for term in terms for t in tokenize(term)]
        query = list(dict.fromkeys(query))

        with self._lock:
            sessions = list(self._sessions)
            tokens = list(self._tokens)

        if not query or not sessions:
            return RecallResult(status=RecallStatus.NO_MATCH)

        total_weight = sum(self.weights.values()) or 1.0
        combined = np.zeros(len(sessions))
        for name in FIELDS:
            corpus = [t[name] for t in tokens]
            combined += self.weights.get(name, 0.0) * _field_scores(corpus, query)
        combined /= total_weight

        query_set = set(query)
        matches = [
            RecallMatch(
                session_id=session.id,
                title=session.title or "",
                summary=session.summary or "",
                key_topics=tuple(session.key_topics),
                updated_at=session.updated_at,
                score=float(score),
            )
            for session, token_fields, score in zip(sessions, tokens, combined)
            if any(query_set.intersection(values) for values in token_fields.values())
        ]
        if not matches:
            return RecallResult(status=RecallStatus.NO_MATCH)

        matches.sort(key=lambda m: (-m.score, -m.updated_at.timestamp(), m.session_id))
        matches = matches[: self.max_results]
        status = RecallStatus.MATCH
        if len(matches) > 1 and matches[0].score - matches[1].score <= self.close_match_margin:
            status = RecallStatus.MULTIPLE
        return RecallResult(status=status, matches=tuple(matches))
