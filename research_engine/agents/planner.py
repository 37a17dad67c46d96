"""Research planner for deep-research requests."""
from __future__ import annotations

from typing import Any, Iterable

from research_engine.agents.base import LLMAgent
from research_engine.agents.query_analyzer import allocate_counts, categorize, default_distribution
from research_engine.config import settings
from research_engine.errors import PlanningFailure
from research_engine.models.research import ProviderName, QueryCategory, ResearchPlan
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt

MAX_SUB_QUERIES = 5


class ResearchPlanner(LLMAgent):
    name = "planner"
    role = "planner"

    def __init__(self, model: str | None = None, client: Any | None = None):
        super().__init__(model=model, client=client)
        self.thinking_budget = settings.planner_thinking_budget
        self.target_sources = settings.first_round_target_sources

    async def plan(
        self,
        query: str,
        providers: Iterable[ProviderName],
        *,
        category: QueryCategory | None = None,
        cost: CostTracker | None = None,
    ) -> ResearchPlan:
        """Plan with extended thinking; on failure retry once with a simplified prompt.

        Raises PlanningFailure when both attempts fail.
        """
        providers = list(providers)
        category = category or categorize(query)
        errors: list[str] = []

        for simplified in (False, True):
            try:
                payload = await self._request_plan(query, providers, category, simplified, cost)
                return self.build_plan(payload, query, providers, category, simplified=simplified)
            except Exception as e:
                errors.append(f"{'simplified' if simplified else 'full'}: {e}")
                log_service.log_failure(
                    "PLANNING_FAILURE",
                    str(e),
                    attempt="simplified" if simplified else "full",
                    query=query[:200],
                )
        raise PlanningFailure("; ".join(errors), query=query[:200])

    async def _request_plan(
        self,
        query: str,
        providers: list[ProviderName],
        category: QueryCategory,
        simplified: bool,
        cost: CostTracker | None,
    ) -> dict[str, Any]:
        values = {
            "query": query,
            "category": category.value,
            "providers": ", ".join(p.value for p in providers),
            "target_sources": self.target_sources,
            "max_rounds": settings.max_rounds_ceiling,
        }
        if simplified:
            return await self._create_json(
                system=render_prompt("planner.simplified_system"),
                messages=[{"role": "user", "content": render_prompt("planner.user", **values)}],
                max_tokens=800,
                temperature=0.2,
                cost=cost,
                caller="planner_simplified",
            )
        return await self._create_json(
            system=render_prompt("planner.system"),
            messages=[{"role": "user", "content": render_prompt("planner.user", **values)}],
            max_tokens=self.thinking_budget + 2048,
            thinking={"type": "enabled", "budget_tokens": self.thinking_budget},
            cost=cost,
        )

    def build_plan(
        self,
        payload: dict[str, Any],
        query: str,
        providers: list[ProviderName],
        category: QueryCategory,
        *,
        simplified: bool = False,
    ) -> ResearchPlan:
        try:
            category = QueryCategory(payload.get("category", category))
        except ValueError:
            pass

        weights: dict[ProviderName, float] = {}
        raw = payload.get("distribution") or {}
        if not isinstance(raw, dict):
            raise ValueError("plan distribution must be an object")
        for key, value in raw.items():
            try:
                provider = ProviderName(key)
                weights[provider] = float(value)
            except (TypeError, ValueError):
                continue

        if sum(max(weights.get(p, 0.0), 0.0) for p in providers) > 0:
            distribution = allocate_counts(weights, self.target_sources, providers)
        else:
            # zero-total plans are replaced with the category default
            distribution = default_distribution(category, self.target_sources, providers)
        if not distribution:
            raise ValueError("no provider available for the plan")

        ceiling = settings.max_rounds_ceiling
        min_rounds = _clamp(payload.get("min_rounds"), settings.default_min_rounds, 1, ceiling)
        max_rounds = _clamp(payload.get("max_rounds"), settings.default_max_rounds, min_rounds, ceiling)

        sub_queries: list[str] = []
        for item in payload.get("sub_queries") or []:
            text = " ".join(str(item).split())
            if text and text.lower() not in {q.lower() for q in sub_queries}:
                sub_queries.append(text)
        if not sub_queries:
            sub_queries = [query]

        return ResearchPlan(
            distribution=distribution,
            min_rounds=min_rounds,
            max_rounds=max_rounds,
            sub_queries=tuple(sub_queries[:MAX_SUB_QUERIES]),
            rationale=str(payload.get("rationale", "")).strip(),
            category=category,
            simplified=simplified,
        )


def _clamp(value: Any, default: int, low: int, high: int) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    return max(low, min(high, number))
