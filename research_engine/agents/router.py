"""Query classifier: recall detection first, then tier classification."""
from __future__ import annotations

import re
from typing import Any

from research_engine.agents.base import LLMAgent
from research_engine.config import settings
from research_engine.errors import ClassificationFailure
from research_engine.models.research import RoutingDecision, Tier
from research_engine.models.session import Message
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt
from research_engine.services.text import tokenize

RECALL_PATTERNS = [
    # past tense
    r"\bneydi\b", r"ne\s+konuşmuştuk", r"ne\s+araştırmıştık", r"ne\s+bulmuştuk",
    r"ne\s+öğrenmiştik", r"ne\s+demiştik", r"ne\s+çıkmıştı", r"\bnasıldı\b",
    r"what\s+did\s+(?:we|you)\s+(?:find|discuss|talk\s+about|research|learn|say|conclude)",
    r"what\s+was\s+(?:that|the)\s+(?:thing|study|research|answer)",
    # memory phrases
    r"hatırlıyor\s+musun", r"\bhatırla", r"hatırlat\s+bana", r"daha\s+önce\s+(?:konuş|araştır|bak)",
    r"geçen\s+sefer", r"geçenlerde", r"\bdo\s+you\s+remember\b", r"\bremind\s+me\b",
    r"\blast\s+time\b", r"\bearlier\s+(?:we|you)\b", r"\bwe\s+(?:previously|already)\s+(?:discussed|researched|looked)",
    # reference phrases
    r"\bo\s+şey\b", r"şu\s+konu", r"o\s+araştırma", r"o\s+bilgi", r"\bthat\s+research\b",
    r"\bthe\s+research\s+we\s+did\b",
]

FILLER_PHRASES = [
    r"hatırlıyor\s+musun", r"hatırlat\s+bana", r"\bhatırla\w*", r"\bo\s+şey\b", r"\bşu\b",
    r"\bneydi\b", r"\bnasıldı\b", r"daha\s+önce", r"geçen\s+sefer", r"\bgeçen\b", r"o\s+zaman",
    r"ne\s+\w+(?:mıştık|miştik|muştuk|müştük|mıştı|mişti)",
    r"do\s+you\s+remember", r"remind\s+me(?:\s+(?:of|about))?", r"last\s+time", r"that\s+research",
    r"what\s+did\s+(?:we|you)\s+(?:find|discuss|talk\s+about|research|learn|say|conclude)(?:\s+about)?",
    r"what\s+was\s+(?:that|the)\s+(?:thing|study|research|answer)(?:\s+about)?",
    r"\bearlier\b", r"\bpreviously\b",
]

EXPLICIT_DEPTH_PATTERNS = [
    r"derinlemesine\s+(?:bir\s+)?araştır", r"derinlemesine\s+.*araştırma", r"dikkatlice\s+araştır",
    r"kapsamlı\s+(?:bir\s+)?araştır", r"kapsamlı\s+.*araştırma", r"detaylı\s+(?:bir\s+)?araştır",
    r"detaylı\s+.*araştırma", r"thoroughly\s+research", r"comprehensive\s+research",
    r"in-depth\s+research", r"in\s+depth\s+research", r"\bdeep\s+research\b", r"\bdeep\s+dive\b",
    r"research\s+(?:this\s+)?(?:thoroughly|in\s+depth|comprehensively)",
]

_RECALL_RE = [re.compile(p, re.IGNORECASE) for p in RECALL_PATTERNS]
_FILLER_RE = [re.compile(p, re.IGNORECASE) for p in FILLER_PHRASES]
_DEPTH_RE = [re.compile(p, re.IGNORECASE) for p in EXPLICIT_DEPTH_PATTERNS]


def detect_recall_intent(question: str) -> bool:
    return any(pattern.search(question) for pattern in _RECALL_RE)


def extract_search_terms(question: str) -> tuple[str, ...]:
    cleaned = question
    for pattern in _FILLER_RE:
        cleaned = pattern.sub(" ", cleaned)
    return tuple(dict.fromkeys(tokenize(cleaned)))


def has_explicit_depth(question: str) -> bool:
    return any(pattern.search(question) for pattern in _DEPTH_RE)


def resolve_tier(scores: dict[Tier, float], explicit_depth: bool, margin: float) -> tuple[Tier, float]:
    """Pick the winning tier; near-ties go to the lower tier unless depth was asked for."""
    best = max(scores.values())
    contenders = sorted(t for t, s in scores.items() if best - s <= margin)
    if explicit_depth and Tier.DEEP in contenders:
        chosen = Tier.DEEP
    else:
        chosen = contenders[0]
    return chosen, scores[chosen]


class QueryRouter(LLMAgent):
    name = "router"
    role = "router"

    def __init__(self, model: str | None = None, client: Any | None = None):
        super().__init__(model=model, client=client)
        self.tie_margin = settings.router_tie_margin

    async def classify(
        self,
        question: str,
        history: list[Message] | None = None,
        *,
        cost: CostTracker | None = None,
    ) -> RoutingDecision:
        if detect_recall_intent(question):
            terms = extract_search_terms(question)
            return RoutingDecision(
                tier=Tier.RECALL,
                confidence=1.0,
                recall_terms=terms or tuple(tokenize(question)),
                reasoning="question refers to a previous research session",
            )

        explicit_depth = has_explicit_depth(question)
        try:
            scores, reasoning = await self._score_tiers(question, history or [], cost)
        except Exception as e:
            failure = ClassificationFailure(str(e), question=question[:200])
            log_service.log_failure(failure.code, failure.message, stage=self.name, question=question[:200])
            return RoutingDecision(
                tier=Tier.SEARCH,
                confidence=0.5,
                explicit_deep_request=explicit_depth,
                reasoning="classification failed; defaulting to single-pass search",
                fallback=True,
            )

        tier, confidence = resolve_tier(scores, explicit_depth, self.tie_margin)
        if tier == Tier.DEEP and not explicit_depth:
            tier = Tier.SEARCH
            confidence = scores.get(Tier.SEARCH, confidence)
            reasoning = f"{reasoning} (deep research needs an explicit request; using single-pass search)"

        return RoutingDecision(
            tier=tier,
            confidence=max(0.0, min(1.0, confidence)),
            explicit_deep_request=explicit_depth,
            reasoning=reasoning,
        )

    async def _score_tiers(
        self,
        question: str,
        history: list[Message],
        cost: CostTracker | None,
    ) -> tuple[dict[Tier, float], str]:
        previous = next((m.content for m in reversed(history) if m.role == "user"), "")
        payload = await self._create_json(
            system=render_prompt("router.system"),
            messages=[
                {
                    "role": "user",
                    "content": render_prompt(
                        "router.user",
                        question=question,
                        previous_question=previous or "-",
                    ),
                }
            ],
            max_tokens=256,
            temperature=0.1,
            cost=cost,
        )
        return parse_tier_scores(payload), str(payload.get("reasoning", "")).strip()


def parse_tier_scores(payload: dict[str, Any]) -> dict[Tier, float]:
    """Accepts ``{"scores": {"1": .., "2": .., "3": ..}}`` or a bare ``{"tier": n, "confidence": c}``."""
    raw_scores = payload.get("scores")
    scores: dict[Tier, float] = {}
    if isinstance(raw_scores, dict):
        for key, value in raw_scores.items():
            try:
                tier = Tier(int(key))
                scores[tier] = float(value)
            except (TypeError, ValueError):
                continue
        scores.pop(Tier.RECALL, None)
    if not scores:
        tier = Tier(int(payload["tier"]))
        if tier == Tier.RECALL:
            raise ValueError("recall tier is decided by pattern matching only")
        scores = {tier: float(payload.get("confidence", 0.7))}
    return scores
