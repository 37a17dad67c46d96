"""Stopping-condition evaluator and gap-driven query refinement."""
from __future__ import annotations

from dataclasses import dataclass, replace

from research_engine.config import settings
from research_engine.models.research import GapAssessment, GapDecision, ResearchPlan, StopDecision
from research_engine.services.context import RequestContext

MAX_QUERY_CHARS = 200


def refine_queries(base_query: str, assessment: GapAssessment, limit: int) -> tuple[str, ...]:
    """Next-round sub-queries aimed at the named gaps, uncovered topics first."""
    queries: list[str] = []
    seen: set[str] = set()
    for topic in (*assessment.uncovered, *assessment.partially_covered):
        if topic.strip().lower() == base_query.strip().lower():
            query = base_query
        elif base_query.lower() in topic.lower():
            query = topic
        else:
            query = f"{base_query} {topic}"
        query = " ".join(query.split())
        if len(query) > MAX_QUERY_CHARS:
            query = query[: MAX_QUERY_CHARS - 3].rstrip() + "..."
        if query.lower() in seen:
            continue
        seen.add(query.lower())
        queries.append(query)
        if len(queries) >= limit:
            break
    return tuple(queries) or (base_query,)


@dataclass(frozen=True, slots=True)
class Evaluation:
    decision: StopDecision
    assessment: GapAssessment | None


class StoppingEvaluator:
    """Single authority on whether another round runs.

    Hard ceilings (round budget, elapsed time, cost, cancellation) always win.
    The minimum-round floor can only overturn a stop after round 1.
    """

    def __init__(
        self,
        *,
        max_rounds_ceiling: int | None = None,
        max_cost_usd: float | None = None,
        max_refined_queries: int | None = None,
    ):
        self.max_rounds_ceiling = max_rounds_ceiling or settings.max_rounds_ceiling
        self.max_cost_usd = settings.max_cost_usd if max_cost_usd is None else max_cost_usd
        self.max_refined_queries = max_refined_queries or settings.max_refined_queries

    def round_budget(self, plan: ResearchPlan) -> int:
        return max(1, min(plan.max_rounds, self.max_rounds_ceiling))

    def hard_stop_reason(self, round_number: int, plan: ResearchPlan, context: RequestContext) -> str | None:
        if context.cancelled:
            return "cancelled"
        if round_number >= self.round_budget(plan):
            return "max_rounds"
        if context.timed_out:
            return "time_budget"
        if context.cost.total_usd >= self.max_cost_usd:
            return "cost_budget"
        return None

    def evaluate(
        self,
        assessment: GapAssessment | None,
        *,
        round_number: int,
        plan: ResearchPlan,
        context: RequestContext,
        base_query: str,
        new_sources: int,
    ) -> Evaluation:
        hard_reason = self.hard_stop_reason(round_number, plan, context)
        if hard_reason is not None:
            effective = assessment
            if assessment is not None and assessment.decision == GapDecision.CONTINUE:
                effective = replace(
                    assessment,
                    decision=GapDecision.STOP,
                    rationale=f"{assessment.rationale} Stopped: {hard_reason}.".strip(),
                )
            return Evaluation(StopDecision(stop=True, reason=hard_reason), effective)

        if assessment is None:
            return Evaluation(StopDecision(stop=True, reason="no_assessment"), None)

        floor_applies = round_number == 1 and plan.min_rounds > 1
        wants_stop = assessment.decision == GapDecision.STOP or new_sources == 0

        if wants_stop and not floor_applies:
            reason = "coverage_accepted" if assessment.decision == GapDecision.STOP else "no_new_sources"
            effective = assessment
            if assessment.decision == GapDecision.CONTINUE:
                effective = replace(
                    assessment,
                    decision=GapDecision.STOP,
                    rationale=f"{assessment.rationale} Stopped: {reason}.".strip(),
                )
            return Evaluation(StopDecision(stop=True, reason=reason), effective)

        effective = assessment
        reason = "coverage_gap"
        if wants_stop:
            reason = "min_rounds_floor"
            uncovered = assessment.uncovered or assessment.partially_covered or (base_query,)
            effective = replace(
                assessment,
                decision=GapDecision.CONTINUE,
                uncovered=uncovered,
                rationale=(
                    f"{assessment.rationale} Minimum of {plan.min_rounds} rounds applies; "
                    f"continuing on: {', '.join(uncovered)}."
                ).strip(),
            )
        refined = refine_queries(base_query, effective, self.max_refined_queries)
        return Evaluation(StopDecision(stop=False, reason=reason, refined_queries=refined), effective)
