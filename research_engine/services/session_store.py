"""Session persistence: one JSON document per session, upserted by id."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from research_engine.config import settings
from research_engine.errors import SessionPersistenceFailure
from research_engine.models.session import Session, SessionStatus
from research_engine.services import logger as log_service


@dataclass(frozen=True, slots=True)
class SessionFilter:
    ids: tuple[str, ...] = ()
    updated_after: datetime | None = None
    limit: int | None = None


class SessionStore(Protocol):
    def save(self, session: Session) -> None: ...

    def load_active(self) -> Session | None: ...

    def load_complete(self, session_filter: SessionFilter | None = None) -> list[Session]: ...


def _apply_filter(sessions: list[Session], session_filter: SessionFilter | None) -> list[Session]:
    sessions = sorted(sessions, key=lambda s: s.updated_at, reverse=True)
    if session_filter is None:
        return sessions
    if session_filter.ids:
        wanted = set(session_filter.ids)
        sessions = [s for s in sessions if s.id in wanted]
    if session_filter.updated_after is not None:
        sessions = [s for s in sessions if s.updated_at > session_filter.updated_after]
    if session_filter.limit is not None:
        sessions = sessions[: session_filter.limit]
    return sessions


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def save(self, session: Session) -> None:
        self._sessions[session.id] = session.snapshot()

    def load_active(self) -> Session | None:
        active = [s for s in self._sessions.values() if s.status == SessionStatus.ACTIVE]
        if not active:
            return None
        return max(active, key=lambda s: s.updated_at).snapshot()

    def load_complete(self, session_filter: SessionFilter | None = None) -> list[Session]:
        complete = [s.snapshot() for s in self._sessions.values() if s.status == SessionStatus.COMPLETE]
        return _apply_filter(complete, session_filter)


class FileSessionStore:
    """Local persistence for sessions under ``base_dir``.

    Writes go to a temporary file that replaces the target, so a crash mid-write
    leaves the previous version intact.
    """

    def __init__(self, *, base_dir: str | None = None):
        self.base_dir = Path(base_dir or settings.session_store_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"{session_id}.json"

    def save(self, session: Session) -> None:
        path = self._path(session.id)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(session.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as e:
            raise SessionPersistenceFailure(str(e), session_id=session.id) from e

    def _load_all(self) -> list[Session]:
        sessions = []
        for path in sorted(self.base_dir.glob("*.json")):
            try:
                sessions.append(Session.model_validate_json(path.read_text(encoding="utf-8")))
            except (OSError, ValidationError, json.JSONDecodeError) as e:
                log_service.log_failure(
                    "SESSION_LOAD_FAILED",
                    str(e)[:300],
                    path=str(path),
                )
        return sessions

    def load_active(self) -> Session | None:
        active = [s for s in self._load_all() if s.status == SessionStatus.ACTIVE]
        if not active:
            return None
        return max(active, key=lambda s: s.updated_at)

    def load_complete(self, session_filter: SessionFilter | None = None) -> list[Session]:
        complete = [s for s in self._load_all() if s.status == SessionStatus.COMPLETE]
        return _apply_filter(complete, session_filter)


def get_session_store(base_dir: str | None = None) -> SessionStore:
    return FileSessionStore(base_dir=base_dir)
