from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from conftest import json_response, mock_llm_client

from research_engine.agents.session_metadata import (
    SessionMetadataGenerator,
    fallback_metadata,
    fallback_title,
)
from research_engine.errors import SessionPersistenceFailure
from research_engine.models.session import Message, MessageRole, Session, SessionStatus
from research_engine.services.recall_repository import RecallRepository, RecallStatus
from research_engine.services.session_manager import (
    EndReason,
    SessionManager,
    is_new_topic_request,
    is_satisfaction,
    topic_overlap,
)
from research_engine.services.session_store import (
    FileSessionStore,
    InMemorySessionStore,
    SessionFilter,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FlakyStore(InMemorySessionStore):
    def __init__(self, failures: int = 0):
        super().__init__()
        self.failures = failures
        self.saves = 0

    def save(self, session: Session) -> None:
        if self.failures:
            self.failures -= 1
            raise SessionPersistenceFailure("disk full", session_id=session.id)
        self.saves += 1
        super().save(session)


def make_manager(store=None, **kwargs) -> tuple[SessionManager, FlakyStore, RecallRepository, FakeClock]:
    store = store if store is not None else FlakyStore()
    recall = RecallRepository()
    clock = FakeClock()
    options = {"autosave_every": 4, "inactivity_seconds": 1800, "topic_overlap_threshold": 0.2}
    options.update(kwargs)
    manager = SessionManager(store, recall, clock=clock, **options)
    return manager, store, recall, clock


def _session(*contents: str, status: SessionStatus = SessionStatus.ACTIVE, minutes: int = 0) -> Session:
    stamp = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=minutes)
    roles = [MessageRole.USER, MessageRole.ASSISTANT]
    return Session(
        status=status,
        messages=[
            Message(role=roles[i % 2], content=c, timestamp=stamp + timedelta(seconds=i))
            for i, c in enumerate(contents)
        ],
        created_at=stamp,
        updated_at=stamp + timedelta(seconds=len(contents)),
        title="Metformin" if status == SessionStatus.COMPLETE else None,
    )


class TestFileSessionStore:
    def test_save_is_an_upsert(self, tmp_path):
        store = FileSessionStore(base_dir=str(tmp_path))
        session = _session("What is metformin?")
        store.save(session)
        session.messages.append(Message(role=MessageRole.ASSISTANT, content="A biguanide."))
        store.save(session)

        assert len(list(tmp_path.glob("*.json"))) == 1
        loaded = store.load_active()
        assert loaded.id == session.id
        assert [m.content for m in loaded.messages] == ["What is metformin?", "A biguanide."]

    def test_load_complete_filters_and_orders(self, tmp_path):
        store = FileSessionStore(base_dir=str(tmp_path))
        older = _session("a", status=SessionStatus.COMPLETE, minutes=1)
        newer = _session("b", status=SessionStatus.COMPLETE, minutes=5)
        store.save(older)
        store.save(newer)
        store.save(_session("still going"))

        assert [s.id for s in store.load_complete()] == [newer.id, older.id]
        assert [s.id for s in store.load_complete(SessionFilter(ids=(older.id,)))] == [older.id]
        assert [s.id for s in store.load_complete(SessionFilter(limit=1))] == [newer.id]
        after = datetime(2026, 3, 1, 9, 3, tzinfo=timezone.utc)
        assert [s.id for s in store.load_complete(SessionFilter(updated_after=after))] == [newer.id]

    def test_unreadable_files_are_skipped(self, tmp_path):
        store = FileSessionStore(base_dir=str(tmp_path))
        store.save(_session("a", status=SessionStatus.COMPLETE))
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        assert len(store.load_complete()) == 1

    def test_write_failure_raises_persistence_failure(self, tmp_path):
        store = FileSessionStore(base_dir=str(tmp_path))

        with patch(
            "research_engine.services.session_store.os.replace",
            side_effect=OSError("No space left on device"),
        ):
            with pytest.raises(SessionPersistenceFailure) as exc_info:
                store.save(_session("a"))

        assert exc_info.value.code == "SESSION_PERSISTENCE_FAILURE"


class TestPhrases:
    @pytest.mark.parametrize("text", ["Teşekkürler!", "tamam anladım", "Thanks, that's all", "Got it."])
    def test_satisfaction(self, text):
        assert is_satisfaction(text)

    @pytest.mark.parametrize("text", ["Thanksgiving meal carbs?", "Metformin dose?"])
    def test_not_satisfaction(self, text):
        assert not is_satisfaction(text)

    def test_new_topic(self):
        assert is_new_topic_request("Yeni konu: insülin pompası")
        assert is_new_topic_request("Let's try something else")
        assert not is_new_topic_request("Another metformin question")

    def test_topic_overlap(self):
        session = _session("Metformin kidney function dosage", "Answer.")
        assert topic_overlap("Metformin dosage in elderly patients", session) == pytest.approx(2 / 4)
        assert topic_overlap("Which telescope observes exoplanets?", session) == 0.0
        assert topic_overlap("Why?", session) is None


class TestSessionManager:
    def test_appends_keep_strict_order_with_a_frozen_clock(self):
        manager, *_ = make_manager()

        manager.append_user("What is metformin?")
        manager.append_assistant("A biguanide.")
        manager.append_user("Is it safe?")

        stamps = [m.timestamp for m in manager.active.messages]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == 3

    def test_active_is_a_snapshot(self):
        manager, *_ = make_manager()
        manager.append_user("What is metformin?")

        snapshot = manager.active
        snapshot.messages.append(Message(role=MessageRole.USER, content="injected"))

        assert len(manager.active.messages) == 1

    def test_autosave_every_n_messages(self):
        manager, store, *_ = make_manager()

        for i in range(3):
            manager.append_user(f"question {i}")
        assert store.saves == 0

        manager.append_assistant("answer")
        assert store.saves == 1
        assert store.load_active().messages[-1].content == "answer"

    def test_failed_autosave_is_retried_on_next_append(self):
        manager, store, *_ = make_manager(FlakyStore(failures=1))

        for i in range(4):
            manager.append_user(f"question {i}")
        assert store.saves == 0
        assert len(manager.active.messages) == 4

        manager.append_assistant("answer")
        assert store.saves == 1

    def test_no_transition_without_history(self):
        manager, *_ = make_manager()
        assert manager.end_reason_before_turn("Anything at all") is None

    def test_inactivity_ends_before_the_turn(self):
        manager, _, _, clock = make_manager()
        manager.append_user("Metformin kidney function")
        clock.advance(minutes=31)

        assert manager.is_inactive()
        assert manager.end_reason_before_turn("Metformin kidney dosage") == EndReason.INACTIVITY

    def test_topic_change(self):
        manager, *_ = make_manager()
        manager.append_user("Metformin kidney function dosage")
        manager.append_assistant("Adjust below eGFR 45.")

        assert manager.end_reason_before_turn("Yeni konu: insülin pompası") == EndReason.TOPIC_CHANGE
        assert manager.end_reason_before_turn("Which telescope observes exoplanets?") == EndReason.TOPIC_CHANGE
        assert manager.end_reason_before_turn("Metformin dosage for elderly?") is None
        assert manager.end_reason_before_turn("Why?") is None

    def test_recall_and_thanks_are_not_topic_changes(self):
        manager, *_ = make_manager()
        manager.append_user("Metformin kidney function dosage")

        assert manager.end_reason_before_turn("What did we find about telescopes?", recall_intent=True) is None
        assert manager.end_reason_before_turn("Thanks, very helpful") is None

    def test_satisfaction_ends_after_the_turn(self):
        manager, *_ = make_manager()
        manager.append_user("Metformin kidney function")

        assert manager.end_reason_after_turn("Teşekkürler") == EndReason.SATISFACTION
        assert manager.end_reason_after_turn("And the dosage?") is None

    def test_token_ceiling(self):
        manager, *_ = make_manager(token_ceiling=50)
        manager.append_user("x" * 400)

        assert manager.end_reason_after_turn("more please") == EndReason.TOKEN_CEILING

    def test_unknown_token_policy_is_rejected(self):
        with pytest.raises(ValueError):
            make_manager(token_policy="drop_oldest")

    @pytest.mark.asyncio
    async def test_satisfaction_completes_into_recall(self):
        manager, store, recall, _ = make_manager()
        manager.append_user("Metformin ve böbrek fonksiyonu hakkında bilgi verir misin?")
        manager.append_assistant("Metformin eGFR 30 altında kullanılmaz.")
        manager.append_user("Teşekkürler")

        completed = await manager.end_session(EndReason.SATISFACTION)

        assert completed.status == SessionStatus.COMPLETE
        assert completed.completion_reason == "satisfaction"
        assert completed.title.startswith("Metformin ve böbrek")
        assert manager.active is None
        assert completed.id in recall
        assert [s.id for s in store.load_complete()] == [completed.id]
        assert recall.search(["metformin", "böbrek"]).status == RecallStatus.MATCH

    @pytest.mark.asyncio
    async def test_metadata_generator_is_used(self):
        generator = SessionMetadataGenerator(
            model="test-model",
            client=mock_llm_client(
                json_response(
                    {"title": "Metformin and kidneys", "summary": "Dose by eGFR.", "key_topics": ["metformin", "egfr"]}
                )
            ),
        )
        manager, *_ = make_manager(metadata=generator)
        manager.append_user("Metformin kidney function")

        completed = await manager.end_session(EndReason.USER_REQUEST)

        assert completed.title == "Metformin and kidneys"
        assert completed.key_topics == ["metformin", "egfr"]

    @pytest.mark.asyncio
    async def test_failed_final_save_keeps_session_active(self):
        manager, store, recall, _ = make_manager(FlakyStore(failures=1), autosave_every=100)
        manager.append_user("Metformin kidney function")

        with pytest.raises(SessionPersistenceFailure):
            await manager.end_session(EndReason.SATISFACTION)

        assert manager.active is not None
        assert manager.active.status == SessionStatus.ACTIVE
        assert len(recall) == 0

        completed = await manager.end_session(EndReason.SATISFACTION)
        assert completed is not None
        assert len(recall) == 1

    @pytest.mark.asyncio
    async def test_token_ceiling_summarizes_and_continues(self):
        manager, *_ = make_manager(token_ceiling=50, token_policy="summarize_and_continue")
        manager.append_user("x" * 400)

        completed = await manager.end_session(EndReason.TOKEN_CEILING)

        assert manager.active is not None
        assert manager.active.messages == []
        assert manager.active.carried_summary == completed.summary

    @pytest.mark.asyncio
    async def test_token_ceiling_force_end(self):
        manager, *_ = make_manager(token_ceiling=50, token_policy="force_end")
        manager.append_user("x" * 400)

        await manager.end_session(EndReason.TOKEN_CEILING)

        assert manager.active is None

    @pytest.mark.asyncio
    async def test_empty_session_is_dropped_not_completed(self):
        manager, store, recall, _ = make_manager()
        manager.ensure_active()

        assert await manager.end_session(EndReason.USER_REQUEST) is None
        assert manager.active is None
        assert len(recall) == 0

    @pytest.mark.asyncio
    async def test_expire_if_inactive(self):
        manager, _, recall, clock = make_manager()
        manager.append_user("Metformin kidney function")

        assert await manager.expire_if_inactive() is None
        clock.advance(hours=1)
        completed = await manager.expire_if_inactive()

        assert completed.completion_reason == EndReason.INACTIVITY
        assert len(recall) == 1

    def test_restore_reloads_active_and_indexes_completed(self):
        store = InMemorySessionStore()
        active = _session("Metformin kidney function")
        store.save(active)
        store.save(_session("Insulin pump basics", status=SessionStatus.COMPLETE))
        manager, _, recall, _ = make_manager(store)

        restored = manager.restore()

        assert restored.id == active.id
        assert len(recall) == 1


class TestSessionMetadata:
    def test_fallback_title_truncates(self):
        session = _session("a" * 80)
        assert fallback_title(session) == "a" * 60 + "..."
        assert fallback_title(Session()) == "Research session"

    def test_fallback_metadata(self):
        meta = fallback_metadata(_session("Metformin kidney function metformin", "Adjust below eGFR 45."))

        assert meta.summary.startswith("1 question asked and answered.")
        assert "Adjust below eGFR 45." in meta.summary
        assert meta.key_topics[0] == "metformin"

    @pytest.mark.asyncio
    async def test_missing_fields_use_fallbacks(self):
        generator = SessionMetadataGenerator(
            model="test-model", client=mock_llm_client(json_response({"summary": "Kidney dosing."}))
        )
        session = _session("Metformin kidney function", "Adjust below eGFR 45.")

        meta = await generator.generate(session)

        assert meta.summary == "Kidney dosing."
        assert meta.title == "Metformin kidney function"
        assert meta.key_topics

    @pytest.mark.asyncio
    async def test_model_failure_uses_fallback(self):
        generator = SessionMetadataGenerator(model="test-model", client=mock_llm_client(RuntimeError("down")))
        session = _session("Metformin kidney function")

        assert await generator.generate(session) == fallback_metadata(session)
