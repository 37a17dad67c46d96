"""End-to-end pipeline runs with canned providers and a scripted model stream."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import FakeStream, StaticProvider, make_source, stream_client
from test_recall import completed_session

from research_engine.agents.citation_verifier import CitationVerifier
from research_engine.agents.orchestrator import ResearchOrchestrator, split_count
from research_engine.agents.ranker import SourceRanker
from research_engine.agents.reflector import decide
from research_engine.agents.selector import SourceSelector
from research_engine.agents.stopping import StoppingEvaluator
from research_engine.agents.synthesizer import Synthesizer
from research_engine.config import settings
from research_engine.errors import PlanningFailure
from research_engine.models.events import StageEventType
from research_engine.models.research import (
    EnrichedQuery,
    GapDecision,
    ProviderName,
    ResearchPlan,
    RoutingDecision,
    Tier,
)
from research_engine.services.context import RequestContext
from research_engine.services.embeddings import HashingEmbeddingService
from research_engine.services.recall_repository import RecallRepository
from research_engine.services.streaming import StageEmitter
from research_engine.tools.registry import ProviderRegistry

QUESTION = "metformin cardiovascular outcomes"
ANSWER_TOKENS = ["Metformin ", "reduced ", "cardiovascular ", "events [1]."]


def provider_results(provider: ProviderName, count: int = 2):
    def results(query: str):
        slug = "-".join(query.split())
        return [
            make_source(
                f"{provider.value}-{slug}-{i}",
                provider=provider,
                title=f"{query} {provider.value} report {i}",
                content=f"Metformin reduced cardiovascular events in {provider.value} cohort {i}.",
                authors=[f"{provider.value}{i} A"],
            )
            for i in range(count)
        ]

    return results


def academic_providers(**overrides) -> list[StaticProvider]:
    providers = []
    for name in (ProviderName.PUBMED, ProviderName.PREPRINT, ProviderName.CLINICAL_TRIALS):
        options = overrides.get(name, {})
        providers.append(StaticProvider(name, provider_results(name), **options))
    return providers


def routing(tier: Tier, **kwargs) -> RoutingDecision:
    return RoutingDecision(tier=tier, confidence=0.9, **kwargs)


def build(
    providers: list[StaticProvider],
    decision: RoutingDecision,
    *streams: FakeStream,
    planner=None,
    reflector=None,
    recall: RecallRepository | None = None,
) -> ResearchOrchestrator:
    router = MagicMock()
    router.classify = AsyncMock(return_value=decision)
    enricher = MagicMock()
    enricher.enrich = AsyncMock(
        side_effect=lambda question, history=None, **kwargs: EnrichedQuery(text=question, language="en")
    )
    translator = MagicMock()
    translator.for_provider = AsyncMock(side_effect=lambda text, *args, **kwargs: text)
    embeddings = HashingEmbeddingService()
    return ResearchOrchestrator(
        ProviderRegistry(providers),
        recall=recall if recall is not None else RecallRepository(),
        router=router,
        enricher=enricher,
        translator=translator,
        planner=planner if planner is not None else MagicMock(),
        reflector=reflector if reflector is not None else MagicMock(),
        stopping=StoppingEvaluator(max_rounds_ceiling=4, max_cost_usd=10.0),
        ranker=SourceRanker(embeddings),
        selector=SourceSelector(min_relevance=0.0, unreviewed_min_relevance=0.0, near_duplicate_threshold=1.01),
        synthesizer=Synthesizer(model="test-model", client=stream_client(*streams)),
        verifier=CitationVerifier(embeddings),
    )


def types(emitter: StageEmitter) -> list[StageEventType]:
    return [event.type for event in emitter.history]


def events_of(emitter: StageEmitter, event_type: StageEventType):
    return [event for event in emitter.history if event.type == event_type]


def assert_well_formed(emitter: StageEmitter) -> None:
    sequences = [event.sequence for event in emitter.history]
    assert sequences == list(range(1, len(sequences) + 1))
    terminals = [event for event in emitter.history if event.is_terminal]
    assert len(terminals) == 1
    assert emitter.history[-1] is terminals[0]


def test_split_count():
    assert split_count(10, 3) == [4, 3, 3]
    assert split_count(2, 3) == [1, 1, 0]
    assert split_count(5, 0) == []


@pytest.mark.asyncio
async def test_single_pass_search():
    orchestrator = build(academic_providers(), routing(Tier.SEARCH), FakeStream(ANSWER_TOKENS))
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert_well_formed(emitter)
    assert outcome.succeeded
    assert StageEventType.PLANNING_STARTED not in types(emitter)
    assert StageEventType.ROUND_STARTED not in types(emitter)
    api_calls = events_of(emitter, StageEventType.API_CALL)
    assert len(api_calls) == 3
    assert all("round" not in event.data for event in api_calls)

    [complete] = events_of(emitter, StageEventType.COMPLETE)
    assert complete.data["tier"] == 2
    assert complete.data["stop_reason"] == "single_pass"
    assert complete.data["answer"] == "".join(ANSWER_TOKENS)
    assert len(complete.data["citations"]) == 6
    assert complete.data["verification"]["total"] == 1
    assert complete.data["cost"]["provider_calls"] == 3
    assert "".join(e.data["text"] for e in events_of(emitter, StageEventType.TOKEN)) == "".join(ANSWER_TOKENS)


@pytest.mark.asyncio
async def test_deep_research_runs_gap_fill_round():
    plan = ResearchPlan(
        distribution={ProviderName.PUBMED: 10, ProviderName.PREPRINT: 5, ProviderName.CLINICAL_TRIALS: 5},
        min_rounds=1,
        max_rounds=3,
        sub_queries=(QUESTION,),
    )
    planner = MagicMock()
    planner.plan = AsyncMock(return_value=plan)
    reflector = MagicMock()
    reflector.assess = AsyncMock(
        side_effect=[
            decide(QUESTION, 0.6, ("glycemic control",), (), ("long-term safety",), "Short follow-up only.",
                   round_number=1, threshold=0.85),
            decide(QUESTION, 0.9, ("glycemic control", "long-term safety"), (), (), "Covered.",
                   round_number=2, threshold=0.85),
        ]
    )
    orchestrator = build(
        academic_providers(),
        routing(Tier.DEEP, explicit_deep_request=True),
        FakeStream(ANSWER_TOKENS),
        planner=planner,
        reflector=reflector,
    )
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert_well_formed(emitter)
    stages = [t for t in types(emitter) if t not in (StageEventType.API_CALL, StageEventType.TOKEN)]
    assert stages == [
        StageEventType.ROUTING,
        StageEventType.PLANNING_STARTED,
        StageEventType.PLANNING_COMPLETE,
        StageEventType.ROUND_STARTED,
        StageEventType.ROUND_COMPLETE,
        StageEventType.GAP_DETECTED,
        StageEventType.ROUND_STARTED,
        StageEventType.ROUND_COMPLETE,
        StageEventType.GAP_DETECTED,
        StageEventType.SYNTHESIS_STARTED,
        StageEventType.COMPLETE,
    ]

    first_round, second_round = events_of(emitter, StageEventType.ROUND_STARTED)
    assert first_round.data["purpose"] == "initial"
    assert first_round.data["target_sources"] == 20
    assert second_round.data["purpose"] == "gap_fill"
    assert second_round.data["queries"] == [f"{QUESTION} long-term safety"]

    first_gap, second_gap = events_of(emitter, StageEventType.GAP_DETECTED)
    assert first_gap.data["decision"] == "continue"
    assert "long-term safety" in first_gap.data["uncovered"]
    assert second_gap.data["gap_score"] >= 0.85

    round_complete = events_of(emitter, StageEventType.ROUND_COMPLETE)
    assert [e.data["new_sources"] for e in round_complete] == [6, 6]
    assert {e.data["round"] for e in events_of(emitter, StageEventType.API_CALL)} == {1, 2}

    [complete] = events_of(emitter, StageEventType.COMPLETE)
    assert complete.data["tier"] == 3
    assert complete.data["rounds"] == 2
    assert complete.data["stop_reason"] == "coverage_accepted"
    assert [a.decision for a in outcome.assessments] == [GapDecision.CONTINUE, GapDecision.STOP]


@pytest.mark.asyncio
async def test_stop_after_first_round_runs_no_second_round():
    plan = ResearchPlan(
        distribution={ProviderName.PUBMED: 10},
        min_rounds=1,
        max_rounds=4,
        sub_queries=(QUESTION,),
    )
    planner = MagicMock()
    planner.plan = AsyncMock(return_value=plan)
    reflector = MagicMock()
    reflector.assess = AsyncMock(
        return_value=decide(QUESTION, 0.95, ("all",), (), (), "Done.", round_number=1, threshold=0.85)
    )
    orchestrator = build(
        academic_providers(), routing(Tier.DEEP), FakeStream(ANSWER_TOKENS), planner=planner, reflector=reflector
    )
    emitter = StageEmitter()

    await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert len(events_of(emitter, StageEventType.ROUND_STARTED)) == 1
    assert reflector.assess.await_count == 1


@pytest.mark.asyncio
async def test_planning_failure_degrades_to_single_pass():
    planner = MagicMock()
    planner.plan = AsyncMock(side_effect=PlanningFailure("full: bad; simplified: bad"))
    orchestrator = build(
        academic_providers(), routing(Tier.DEEP), FakeStream(ANSWER_TOKENS), planner=planner
    )
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert_well_formed(emitter)
    assert outcome.tier == Tier.SEARCH
    assert StageEventType.PLANNING_COMPLETE not in types(emitter)
    [complete] = events_of(emitter, StageEventType.COMPLETE)
    assert complete.data["tier"] == 2
    assert "planning_failed" in complete.data["degraded"]


@pytest.mark.asyncio
async def test_provider_timeout_is_partial():
    providers = academic_providers(**{ProviderName.CLINICAL_TRIALS: {"delay": 5, "timeout": 0.05}})
    orchestrator = build(providers, routing(Tier.SEARCH), FakeStream(ANSWER_TOKENS))
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert outcome.succeeded
    statuses = {e.data["provider"]: e.data["status"] for e in events_of(emitter, StageEventType.API_CALL)}
    assert statuses == {"pubmed": "success", "preprint": "success", "clinical_trials": "timeout"}
    [complete] = events_of(emitter, StageEventType.COMPLETE)
    assert {c["provider"] for c in complete.data["citations"]} == {"pubmed", "preprint"}


@pytest.mark.asyncio
async def test_synthesis_failure_after_ten_tokens():
    tokens = [f"word{i} " for i in range(20)]
    orchestrator = build(academic_providers(), routing(Tier.SEARCH), FakeStream(tokens, error_after=10))
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert_well_formed(emitter)
    assert len(events_of(emitter, StageEventType.TOKEN)) == 10
    assert StageEventType.COMPLETE not in types(emitter)
    [error] = events_of(emitter, StageEventType.ERROR)
    assert error.data["code"] == "SYNTHESIS_FAILURE"
    assert error.data["truncated"] is True
    assert error.data["tokens_emitted"] == 10
    assert outcome.answer == "".join(tokens[:10])


@pytest.mark.asyncio
async def test_no_evidence_when_deadline_passes_before_any_source():
    providers = [
        StaticProvider(ProviderName.PUBMED, provider_results(ProviderName.PUBMED), delay=5, timeout=10),
    ]
    orchestrator = build(providers, routing(Tier.SEARCH), FakeStream(ANSWER_TOKENS))
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION, timeout_seconds=0.1), emitter)

    assert_well_formed(emitter)
    assert outcome.error_code == "NO_EVIDENCE"
    assert types(emitter) == [StageEventType.ROUTING, StageEventType.ERROR]


@pytest.mark.asyncio
async def test_deadline_mid_research_synthesizes_gathered_sources():
    plan = ResearchPlan(
        distribution={ProviderName.PUBMED: 10},
        min_rounds=2,
        max_rounds=4,
        sub_queries=(QUESTION,),
    )
    planner = MagicMock()
    planner.plan = AsyncMock(return_value=plan)

    async def slow_assessment(*args, **kwargs):
        await asyncio.sleep(5)

    reflector = MagicMock()
    reflector.assess = AsyncMock(side_effect=slow_assessment)
    orchestrator = build(
        academic_providers(), routing(Tier.DEEP), FakeStream(ANSWER_TOKENS), planner=planner, reflector=reflector
    )
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION, timeout_seconds=0.3), emitter)

    assert_well_formed(emitter)
    assert outcome.succeeded
    [complete] = events_of(emitter, StageEventType.COMPLETE)
    assert complete.data["stop_reason"] == "time_budget"
    assert complete.data["citations"]


@pytest.mark.asyncio
async def test_stalled_answer_stream_ends_at_the_deadline(monkeypatch):
    monkeypatch.setattr(settings, "synthesis_min_seconds", 0.05)
    stream = FakeStream(ANSWER_TOKENS, stall_before_stop=10.0)
    orchestrator = build(academic_providers(), routing(Tier.SEARCH), stream)
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION, timeout_seconds=0.3), emitter)

    assert_well_formed(emitter)
    assert not outcome.succeeded
    assert outcome.answer == "".join(ANSWER_TOKENS)
    [error] = events_of(emitter, StageEventType.ERROR)
    assert error.data["code"] == "SYNTHESIS_FAILURE"
    assert error.data["tokens_emitted"] == len(ANSWER_TOKENS)


@pytest.mark.asyncio
async def test_cancellation_ends_with_cancelled_error():
    providers = [
        StaticProvider(ProviderName.PUBMED, provider_results(ProviderName.PUBMED), delay=5, timeout=10),
    ]
    orchestrator = build(providers, routing(Tier.SEARCH), FakeStream(ANSWER_TOKENS))
    emitter = StageEmitter()
    context = RequestContext(question=QUESTION)
    asyncio.get_running_loop().call_later(0.05, context.cancel_token.cancel)

    outcome = await orchestrator.run(context, emitter)

    assert outcome.error_code == "CANCELLED"
    assert emitter.history[-1].data["code"] == "CANCELLED"
    assert_well_formed(emitter)


@pytest.mark.asyncio
async def test_direct_answer_uses_no_providers():
    provider = StaticProvider(ProviderName.PUBMED, provider_results(ProviderName.PUBMED))
    orchestrator = build([provider], routing(Tier.DIRECT), FakeStream(["HbA1c is a blood marker."]))
    emitter = StageEmitter()

    await orchestrator.run(RequestContext(question="What is HbA1c?"), emitter)

    assert types(emitter) == [
        StageEventType.ROUTING,
        StageEventType.SYNTHESIS_STARTED,
        StageEventType.TOKEN,
        StageEventType.COMPLETE,
    ]
    assert provider.queries == []
    complete = emitter.history[-1]
    assert complete.data["citations"] == []
    assert complete.data["verification"] is None


@pytest.mark.asyncio
async def test_recall_answers_from_completed_session():
    recall = RecallRepository()
    recall.index(
        completed_session(
            "Metformin ve böbrek",
            ["metformin", "böbrek"],
            "eGFR 30 altında metformin kullanılmaz.",
            session_id="s-1",
        )
    )
    decision = routing(Tier.RECALL, recall_terms=("metformin", "böbrek"))
    orchestrator = build(academic_providers(), decision, recall=recall)
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question="Metformin böbrek neydi?", locale="tr"), emitter)

    assert types(emitter) == [
        StageEventType.ROUTING,
        StageEventType.RECALL_RESULT,
        StageEventType.COMPLETE,
    ]
    recall_event = events_of(emitter, StageEventType.RECALL_RESULT)[0]
    assert recall_event.data["status"] == "match"
    assert recall_event.data["sessions"][0]["session_id"] == "s-1"
    assert outcome.answer.startswith("Daha önceki \"Metformin ve böbrek\"")
    assert emitter.history[-1].data["tier"] == 0


@pytest.mark.asyncio
async def test_unexpected_error_still_ends_the_stream():
    orchestrator = build(academic_providers(), routing(Tier.SEARCH))
    orchestrator.router.classify.side_effect = KeyError("boom")
    emitter = StageEmitter()

    outcome = await orchestrator.run(RequestContext(question=QUESTION), emitter)

    assert outcome.error_code == "INTERNAL_ERROR"
    assert types(emitter) == [StageEventType.ERROR]
