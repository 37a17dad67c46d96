"""Reflector: scores how well the gathered evidence covers the question."""
from __future__ import annotations

from typing import Any

from research_engine.agents.base import LLMAgent
from research_engine.config import settings
from research_engine.models.research import GapAssessment, GapDecision, Source
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt

MAX_SOURCES_IN_PROMPT = 40


def _topics(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(dict.fromkeys(" ".join(str(v).split()) for v in value if str(v).strip()))


def decide(
    question: str,
    gap_score: float,
    well_covered: tuple[str, ...],
    partially_covered: tuple[str, ...],
    uncovered: tuple[str, ...],
    rationale: str,
    *,
    round_number: int,
    threshold: float,
    heuristic: bool = False,
) -> GapAssessment:
    """Apply the acceptance threshold and make a continue rationale name its gaps."""
    gap_score = max(0.0, min(1.0, gap_score))
    if gap_score >= threshold:
        decision = GapDecision.STOP
    else:
        decision = GapDecision.CONTINUE
        if not uncovered and partially_covered:
            uncovered, partially_covered = partially_covered, ()
        elif not uncovered:
            uncovered = (question,)
        named = ", ".join(uncovered)
        if not all(topic in rationale for topic in uncovered):
            rationale = f"{rationale} Uncovered: {named}.".strip()
    return GapAssessment(
        well_covered=well_covered,
        partially_covered=partially_covered,
        uncovered=uncovered,
        gap_score=gap_score,
        decision=decision,
        rationale=rationale,
        round_number=round_number,
        heuristic=heuristic,
    )


class Reflector(LLMAgent):
    name = "reflector"
    role = "reflector"

    def __init__(self, model: str | None = None, client: Any | None = None):
        super().__init__(model=model, client=client)
        self.threshold = settings.gap_acceptance_threshold

    async def assess(
        self,
        question: str,
        sources: list[Source],
        *,
        round_number: int,
        available_providers: int = 1,
        cost: CostTracker | None = None,
    ) -> GapAssessment:
        try:
            payload = await self._create_json(
                system=render_prompt("reflector.system"),
                messages=[
                    {
                        "role": "user",
                        "content": render_prompt(
                            "reflector.user",
                            question=question,
                            round_number=round_number,
                            sources=_format_sources(sources),
                            threshold=self.threshold,
                        ),
                    }
                ],
                max_tokens=800,
                temperature=0.2,
                cost=cost,
            )
            return decide(
                question,
                float(payload["gap_score"]),
                _topics(payload.get("well_covered")),
                _topics(payload.get("partially_covered")),
                _topics(payload.get("uncovered")),
                str(payload.get("rationale", "")).strip(),
                round_number=round_number,
                threshold=self.threshold,
            )
        except Exception as e:
            log_service.log_failure(
                "REFLECTION_FAILED",
                str(e),
                round=round_number,
                question=question[:200],
            )
            return self.heuristic_assessment(
                question, sources, round_number=round_number, available_providers=available_providers
            )

    def heuristic_assessment(
        self,
        question: str,
        sources: list[Source],
        *,
        round_number: int,
        available_providers: int = 1,
    ) -> GapAssessment:
        """Coverage from volume and provider diversity when the model is unavailable."""
        volume = min(len(sources) / max(settings.heuristic_min_sources, 1), 1.0)
        providers = {s.provider for s in sources}
        diversity = min(len(providers) / max(available_providers, 1), 1.0)
        score = 0.6 * volume + 0.4 * diversity
        return decide(
            question,
            score,
            (),
            (),
            () if score >= self.threshold else (question,),
            f"Heuristic assessment: {len(sources)} sources from {len(providers)} providers.",
            round_number=round_number,
            threshold=self.threshold,
            heuristic=True,
        )


def _format_sources(sources: list[Source]) -> str:
    lines = []
    for index, source in enumerate(sources[:MAX_SOURCES_IN_PROMPT], start=1):
        excerpt = source.content[:240]
        lines.append(
            f"[{index}] ({source.provider.value}, {source.year or 'n.d.'}) {source.title} :: {excerpt}"
        )
    if len(sources) > MAX_SOURCES_IN_PROMPT:
        lines.append(f"... and {len(sources) - MAX_SOURCES_IN_PROMPT} more")
    return "\n".join(lines) or "(no sources yet)"
