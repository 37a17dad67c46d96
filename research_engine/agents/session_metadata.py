"""Title, summary and key topics for a finished session."""
from __future__ import annotations

from dataclasses import dataclass

from research_engine.agents.base import LLMAgent
from research_engine.models.session import MessageRole, Session
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt
from research_engine.services.text import keywords, tokenize

MAX_TITLE_CHARS = 60
MAX_TOPICS = 5
DEFAULT_TITLE = "Research session"


@dataclass(frozen=True, slots=True)
class SessionMetadata:
    title: str
    summary: str
    key_topics: list[str]


def fallback_title(session: Session) -> str:
    first = next((m.content.strip() for m in session.user_messages() if m.content.strip()), "")
    if not first:
        return DEFAULT_TITLE
    first = " ".join(first.split())
    if len(first) > MAX_TITLE_CHARS:
        return f"{first[:MAX_TITLE_CHARS]}..."
    return first


def fallback_summary(session: Session) -> str:
    count = len(session.user_messages())
    summary = f"{count} question{'s' if count != 1 else ''} asked and answered."
    answer = next(
        (m.content for m in session.messages if m.role == MessageRole.ASSISTANT and m.content.strip()),
        "",
    )
    if answer:
        excerpt = " ".join(answer.split())[:200]
        summary = f"{summary} {excerpt}"
    return summary


def fallback_topics(session: Session) -> list[str]:
    text = " ".join(m.content for m in session.user_messages())
    topics = keywords(text, min_length=6, limit=MAX_TOPICS)
    if not topics:
        topics = keywords(text, min_length=3, limit=MAX_TOPICS)
    if not topics:
        topics = tokenize(fallback_title(session))[:MAX_TOPICS]
    return topics or [DEFAULT_TITLE.lower()]


def fallback_metadata(session: Session) -> SessionMetadata:
    return SessionMetadata(
        title=fallback_title(session),
        summary=fallback_summary(session),
        key_topics=fallback_topics(session),
    )


class SessionMetadataGenerator(LLMAgent):
    name = "session_metadata"
    role = "metadata"

    async def generate(self, session: Session, *, cost: CostTracker | None = None) -> SessionMetadata:
        """One model call for all three fields; any missing field uses its heuristic."""
        fallback = fallback_metadata(session)
        if not session.messages:
            return fallback

        conversation = "\n\n".join(
            f"{m.role.value}: {m.content[:800]}" for m in session.messages[-20:]
        )
        try:
            payload = await self._create_json(
                system=render_prompt("metadata.system"),
                messages=[
                    {
                        "role": "user",
                        "content": render_prompt("metadata.user", conversation=conversation),
                    }
                ],
                max_tokens=400,
                temperature=0.2,
                cost=cost,
            )
        except Exception as e:
            log_service.log_failure("METADATA_FAILED", str(e), session_id=session.id)
            return fallback

        title = " ".join(str(payload.get("title") or "").split())[:MAX_TITLE_CHARS]
        summary = " ".join(str(payload.get("summary") or "").split())
        raw_topics = payload.get("key_topics")
        topics = []
        if isinstance(raw_topics, list):
            topics = [" ".join(str(t).split()) for t in raw_topics if str(t).strip()][:MAX_TOPICS]
        return SessionMetadata(
            title=title or fallback.title,
            summary=summary or fallback.summary,
            key_topics=topics or fallback.key_topics,
        )
