from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from research_engine.agents.citation_verifier import CitationVerifier
from research_engine.agents.deduplicator import Deduplicator
from research_engine.agents.enricher import QueryEnricher, QueryTranslator
from research_engine.agents.fetcher import ParallelFetcher
from research_engine.agents.planner import ResearchPlanner
from research_engine.agents.query_analyzer import allocate_counts, categorize, single_pass_distribution
from research_engine.agents.ranker import SourceRanker
from research_engine.agents.reflector import Reflector
from research_engine.agents.router import QueryRouter
from research_engine.agents.selector import SourceSelector
from research_engine.agents.stopping import StoppingEvaluator
from research_engine.agents.synthesizer import Synthesizer
from research_engine.config import settings
from research_engine.errors import (
    ErrorCode,
    NoEvidence,
    PipelineCancelled,
    PlanningFailure,
    SynthesisFailure,
    VerificationFailure,
)
from research_engine.models.research import (
    ExclusionReport,
    GapAssessment,
    ProviderCall,
    ProviderCallResult,
    ProviderName,
    Query,
    ResearchPlan,
    Round,
    RoundPurpose,
    SearchFilters,
    Source,
    Tier,
    VerificationReport,
)
from research_engine.services import logger as log_service
from research_engine.services import streaming
from research_engine.services.context import RequestContext
from research_engine.services.recall_repository import RecallRepository, RecallResult, RecallStatus
from research_engine.services.streaming import EventDraft, StageEmitter
from research_engine.tools.registry import ProviderRegistry

RECALL_MESSAGES = {
    "en": {
        RecallStatus.MATCH: "From your earlier research \"{title}\": {summary}",
        RecallStatus.MULTIPLE: "Several earlier sessions match. Which one did you mean?\n{titles}",
        RecallStatus.NO_MATCH: "I could not find an earlier research session about that.",
    },
    "tr": {
        RecallStatus.MATCH: "Daha önceki \"{title}\" araştırmanızdan: {summary}",
        RecallStatus.MULTIPLE: "Birden fazla önceki oturum eşleşiyor. Hangisini kastettiniz?\n{titles}",
        RecallStatus.NO_MATCH: "Bununla ilgili önceki bir araştırma oturumu bulamadım.",
    },
}


@dataclass
class RunState:
    """What a request has gathered so far; survives a pipeline timeout."""

    sources: list[Source] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    assessments: list[GapAssessment] = field(default_factory=list)
    plan: ResearchPlan | None = None
    stop_reason: str | None = None
    degraded: list[str] = field(default_factory=list)


@dataclass
class PipelineOutcome:
    tier: Tier
    answer: str = ""
    sources: list[Source] = field(default_factory=list)
    rounds: list[Round] = field(default_factory=list)
    assessments: list[GapAssessment] = field(default_factory=list)
    exclusions: ExclusionReport | None = None
    verification: VerificationReport | None = None
    stop_reason: str | None = None
    error_code: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error_code is None


def split_count(total: int, parts: int) -> list[int]:
    if parts <= 0:
        return []
    base, extra = divmod(total, parts)
    return [base + (1 if i < extra else 0) for i in range(parts)]


class ResearchOrchestrator:
    """Runs one request through the tiered pipeline.

    Flow:
      0. recall: search completed sessions, answer from the best match
      1. direct: synthesize without sources
      2. single pass: fetch once from every provider, rank, select, synthesize
      3. deep: plan, then fetch/dedup/reflect rounds until the stopping
         evaluator says stop, then rank, select, synthesize, verify

    Every stage reports through the request's StageEmitter; exactly one
    ``complete`` or ``error`` event ends the stream.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        *,
        recall: RecallRepository | None = None,
        router: QueryRouter | None = None,
        enricher: QueryEnricher | None = None,
        translator: QueryTranslator | None = None,
        planner: ResearchPlanner | None = None,
        reflector: Reflector | None = None,
        stopping: StoppingEvaluator | None = None,
        deduplicator: Deduplicator | None = None,
        ranker: SourceRanker | None = None,
        selector: SourceSelector | None = None,
        synthesizer: Synthesizer | None = None,
        verifier: CitationVerifier | None = None,
    ):
        self.registry = registry
        self.recall = recall if recall is not None else RecallRepository()
        self.router = router if router is not None else QueryRouter()
        self.enricher = enricher if enricher is not None else QueryEnricher()
        self.translator = translator
        self.planner = planner if planner is not None else ResearchPlanner()
        self.reflector = reflector if reflector is not None else Reflector()
        self.stopping = stopping if stopping is not None else StoppingEvaluator()
        self.deduplicator = deduplicator if deduplicator is not None else Deduplicator()
        self.fetcher = ParallelFetcher(registry)
        self.ranker = ranker if ranker is not None else SourceRanker()
        self.selector = selector if selector is not None else SourceSelector()
        self.synthesizer = synthesizer if synthesizer is not None else Synthesizer()
        self.verifier = verifier if verifier is not None else CitationVerifier(self.ranker.embeddings)

    # --- Entry point ---

    async def run(self, context: RequestContext, emitter: StageEmitter) -> PipelineOutcome:
        outcome = PipelineOutcome(tier=Tier.SEARCH)
        log_service.log_research_step(
            context.request_id, "pipeline", "started", {"question": context.question[:200]}
        )
        try:
            outcome = await self._run(context, emitter, outcome)
        except PipelineCancelled as e:
            outcome.error_code = e.code
            log_service.log_event(
                event_type="pipeline_cancelled",
                message=e.message,
                request_id=context.request_id,
            )
            self._finish(emitter, streaming.error(e.code, e.message))
        except NoEvidence as e:
            outcome.error_code = e.code
            self._finish(emitter, streaming.error(e.code, e.message, **e.context))
        except SynthesisFailure as e:
            outcome.error_code = e.code
            outcome.answer = e.partial_text
            log_service.log_research_step(
                context.request_id,
                "synthesis",
                "failed",
                {"error": e.message, "tokens_emitted": e.tokens_emitted},
            )
            self._finish(
                emitter,
                streaming.error(
                    e.code,
                    e.message,
                    truncated=True,
                    tokens_emitted=e.tokens_emitted,
                    truncation_marker=settings.truncation_marker,
                ),
            )
        except Exception as e:
            outcome.error_code = ErrorCode.INTERNAL_ERROR
            log_service.logger.exception(f"Unhandled pipeline error for request {context.request_id}")
            self._finish(emitter, streaming.error(ErrorCode.INTERNAL_ERROR, str(e) or type(e).__name__))

        log_service.log_research_step(
            context.request_id,
            "pipeline",
            "failed" if outcome.error_code else "completed",
            {
                "tier": int(outcome.tier),
                "rounds": len(outcome.rounds),
                "sources": len(outcome.sources),
                "stop_reason": outcome.stop_reason,
                "error_code": outcome.error_code,
                "cost_usd": round(context.cost.total_usd, 6),
                "elapsed_ms": int(context.elapsed() * 1000),
            },
        )
        return outcome

    @staticmethod
    def _finish(emitter: StageEmitter, draft: EventDraft) -> None:
        if not emitter.closed:
            emitter.emit(draft)

    @staticmethod
    def _check_cancelled(context: RequestContext, stage: str) -> None:
        if context.cancelled:
            raise PipelineCancelled(context.cancel_token.reason or "cancelled", stage=stage)

    async def _run(
        self,
        context: RequestContext,
        emitter: StageEmitter,
        outcome: PipelineOutcome,
    ) -> PipelineOutcome:
        history = context.history()
        decision = await self.router.classify(context.question, history, cost=context.cost)
        emitter.emit(streaming.routing(decision))
        outcome.tier = decision.tier
        self._check_cancelled(context, "routing")

        if decision.tier == Tier.RECALL:
            return self._answer_from_recall(decision.recall_terms, context, emitter, outcome)

        enrichment = await self.enricher.enrich(
            context.question, history, locale=context.locale, cost=context.cost
        )
        query = Query(
            text=context.question,
            language=enrichment.language,
            routing=decision,
            enrichment=enrichment,
            category=categorize(enrichment.text),
        )
        self._check_cancelled(context, "enrichment")

        state = RunState()
        selection_target: int | None = None
        if query.tier in (Tier.SEARCH, Tier.DEEP):
            try:
                await asyncio.wait_for(
                    self._gather(query, context, emitter, state, outcome),
                    timeout=context.remaining(),
                )
            except asyncio.TimeoutError:
                state.stop_reason = "time_budget"
                log_service.log_failure(
                    "PIPELINE_TIMEOUT",
                    "Overall deadline reached; synthesizing with gathered sources",
                    request_id=context.request_id,
                    sources=len(state.sources),
                    rounds=len(state.rounds),
                )
                if not state.sources:
                    raise NoEvidence(
                        "Pipeline deadline reached before any source was gathered",
                        timeout_seconds=context.timeout_seconds,
                    )
            if outcome.tier == Tier.SEARCH:
                selection_target = settings.single_pass_target_sources

        outcome.rounds = list(state.rounds)
        outcome.assessments = list(state.assessments)
        outcome.stop_reason = state.stop_reason
        self._check_cancelled(context, "gathering")

        selected: list[Source] = []
        if state.sources:
            ranked = await self.ranker.rank(query.search_text, state.sources, category=query.category)
            selection = self.selector.select(ranked, target=selection_target)
            selected = selection.selected
            outcome.exclusions = selection.report
        outcome.sources = selected

        emitter.emit(streaming.synthesis_started(len(selected), outcome.exclusions))
        result = await self.synthesizer.synthesize(
            context.question,
            selected,
            on_token=lambda text: emitter.emit(streaming.token(text)),
            language=query.language,
            history=history,
            carried_summary=context.session.carried_summary if context.session else None,
            cost=context.cost,
            cancel_token=context.cancel_token,
            deadline_seconds=max(context.remaining(), settings.synthesis_min_seconds),
        )
        outcome.answer = result.text

        if selected and result.text:
            try:
                outcome.verification = await self.verifier.verify(result.text, selected)
            except VerificationFailure as e:
                log_service.log_failure(e.code, e.message, request_id=context.request_id, **e.context)

        cost = context.cost.snapshot()
        emitter.emit(
            streaming.complete(
                answer=result.text,
                tier=int(outcome.tier),
                citations=[s.citation_dict(i) for i, s in enumerate(selected, start=1)],
                verification=outcome.verification,
                request_id=context.request_id,
                rounds=len(outcome.rounds),
                stop_reason=outcome.stop_reason,
                degraded=state.degraded,
                finish_reason=result.stop_reason,
                cost={
                    "model_calls": cost.model_calls,
                    "provider_calls": cost.provider_calls,
                    "input_tokens": cost.input_tokens,
                    "output_tokens": cost.output_tokens,
                    "total_usd": round(cost.total_usd, 6),
                },
                elapsed_ms=int(context.elapsed() * 1000),
            )
        )
        return outcome

    # --- Recall ---

    def _answer_from_recall(
        self,
        terms: tuple[str, ...],
        context: RequestContext,
        emitter: StageEmitter,
        outcome: PipelineOutcome,
    ) -> PipelineOutcome:
        result: RecallResult = self.recall.search(terms)
        emitter.emit(
            streaming.recall_result(result.status, [m.to_dict() for m in result.matches])
        )
        messages = RECALL_MESSAGES["tr" if context.locale.lower().startswith("tr") else "en"]
        if result.status == RecallStatus.MATCH and result.best is not None:
            answer = messages[RecallStatus.MATCH].format(
                title=result.best.title, summary=result.best.summary
            )
        elif result.status == RecallStatus.MULTIPLE:
            titles = "\n".join(f"- {m.title}" for m in result.matches)
            answer = messages[RecallStatus.MULTIPLE].format(titles=titles)
        else:
            answer = messages[RecallStatus.NO_MATCH]
        outcome.answer = answer
        emitter.emit(
            streaming.complete(
                answer=answer,
                tier=int(Tier.RECALL),
                citations=[],
                verification=None,
                request_id=context.request_id,
                recall_status=result.status,
                recall_terms=list(terms),
            )
        )
        return outcome

    # --- Evidence gathering ---

    async def _gather(
        self,
        query: Query,
        context: RequestContext,
        emitter: StageEmitter,
        state: RunState,
        outcome: PipelineOutcome,
    ) -> None:
        if query.tier == Tier.DEEP:
            try:
                await self._deep_research(query, context, emitter, state)
                return
            except PlanningFailure as e:
                log_service.log_failure(
                    e.code,
                    "Planning failed twice; degrading to single-pass search",
                    request_id=context.request_id,
                    query=query.search_text[:200],
                )
                state.degraded.append("planning_failed")
                outcome.tier = Tier.SEARCH
        await self._single_pass(query, context, emitter, state)

    async def _build_calls(
        self,
        queries: list[str],
        distribution: dict[ProviderName, int],
        language: str,
        translator: QueryTranslator,
        context: RequestContext,
    ) -> list[ProviderCall]:
        filters = SearchFilters(
            min_year=datetime.now(timezone.utc).year - settings.selector_max_age_years
        )
        pairs = [
            (provider, text, count)
            for provider, total in distribution.items()
            for text, count in zip(queries, split_count(total, len(queries)))
            if count > 0
        ]
        translated = await asyncio.gather(
            *(
                translator.for_provider(
                    text,
                    language,
                    self.registry.corpus_language(provider),
                    cost=context.cost,
                )
                for provider, text, _ in pairs
            )
        )
        return [
            ProviderCall(provider=provider, query=search_text, max_results=count, filters=filters)
            for (provider, _, count), search_text in zip(pairs, translated)
        ]

    async def _fetch(
        self,
        calls: list[ProviderCall],
        round_number: int | None,
        context: RequestContext,
        emitter: StageEmitter,
    ) -> tuple[list[ProviderCallResult], int]:
        def on_result(result: ProviderCallResult) -> None:
            emitter.emit(streaming.api_call(round_number, result))

        return await self.fetcher.fetch_round(
            calls,
            round_number=round_number,
            cost=context.cost,
            cancel_token=context.cancel_token,
            on_result=on_result,
        )

    async def _single_pass(
        self,
        query: Query,
        context: RequestContext,
        emitter: StageEmitter,
        state: RunState,
    ) -> None:
        distribution = single_pass_distribution(
            query.category, settings.single_pass_target_sources, self.registry.names
        )
        translator = self.translator or QueryTranslator()
        calls = await self._build_calls(
            [query.search_text], distribution, query.language, translator, context
        )
        results, duration_ms = await self._fetch(calls, None, context, emitter)
        single = Round(
            number=1,
            purpose=RoundPurpose.INITIAL,
            calls=tuple(results),
            duration_ms=duration_ms,
        )
        state.rounds.append(single)
        state.sources = self.deduplicator.deduplicate(single.sources)
        state.stop_reason = "single_pass"

    async def _deep_research(
        self,
        query: Query,
        context: RequestContext,
        emitter: StageEmitter,
        state: RunState,
    ) -> None:
        providers = self.registry.names
        emitter.emit(streaming.planning_started(query.search_text))
        plan = await self.planner.plan(
            query.search_text, providers, category=query.category, cost=context.cost
        )
        state.plan = plan
        emitter.emit(streaming.planning_complete(plan))
        if plan.simplified:
            state.degraded.append("simplified_plan")

        translator = self.translator or QueryTranslator()
        queries = list(plan.sub_queries)
        round_number = 1
        purpose = RoundPurpose.INITIAL

        while True:
            self._check_cancelled(context, f"round_{round_number}")
            if round_number == 1:
                target = plan.total_target
                distribution = dict(plan.distribution)
            else:
                target = settings.later_round_target_sources
                distribution = allocate_counts(plan.distribution, target, providers)

            emitter.emit(streaming.round_started(round_number, purpose, queries, target))
            calls = await self._build_calls(queries, distribution, query.language, translator, context)
            results, duration_ms = await self._fetch(calls, round_number, context, emitter)
            completed = Round(
                number=round_number,
                purpose=purpose,
                calls=tuple(results),
                duration_ms=duration_ms,
            )
            state.rounds.append(completed)

            before = len(state.sources)
            state.sources = self.deduplicator.deduplicate(state.sources + completed.sources)
            new_sources = len(state.sources) - before
            emitter.emit(streaming.round_complete(completed, new_sources, len(state.sources)))
            log_service.log_research_step(
                context.request_id,
                f"round_{round_number}",
                completed.status,
                {"new_sources": new_sources, "total_sources": len(state.sources)},
            )

            assessment: GapAssessment | None = None
            if self.stopping.hard_stop_reason(round_number, plan, context) is None:
                assessment = await self.reflector.assess(
                    query.search_text,
                    state.sources,
                    round_number=round_number,
                    available_providers=len(providers),
                    cost=context.cost,
                )

            evaluation = self.stopping.evaluate(
                assessment,
                round_number=round_number,
                plan=plan,
                context=context,
                base_query=query.search_text,
                new_sources=new_sources,
            )
            if evaluation.assessment is not None:
                state.assessments.append(evaluation.assessment)
                emitter.emit(streaming.gap_detected(evaluation.assessment))

            if evaluation.decision.stop:
                state.stop_reason = evaluation.decision.reason
                return

            queries = list(evaluation.decision.refined_queries)
            round_number += 1
            purpose = RoundPurpose.GAP_FILL

    def describe(self) -> dict[str, Any]:
        return {
            "providers": [p.value for p in self.registry.names],
            "embedding_backend": type(self.ranker.embeddings).__name__,
            "synthesis_model": self.synthesizer.model,
        }
