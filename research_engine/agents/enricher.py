"""Query enrichment and per-provider translation."""
from __future__ import annotations

import asyncio
from typing import Any

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

from research_engine.agents.base import LLMAgent
from research_engine.models.research import EnrichedQuery
from research_engine.models.session import Message
from research_engine.services import logger as log_service
from research_engine.services.cost_tracker import CostTracker
from research_engine.services.prompt_store import render_prompt
from research_engine.services.text import tokenize

DetectorFactory.seed = 0

# Pronouns and demonstratives that make a question depend on earlier turns
CONTEXT_DEPENDENT_WORDS = frozenset(
    {
        "it", "its", "this", "that", "they", "them", "those", "these", "he", "she",
        "o", "onu", "onun", "bu", "bunu", "bunun", "şu", "şunu", "onlar", "onları",
        "aynı", "same", "also", "too", "peki", "ya",
    }
)

MIN_INTENT_OVERLAP = 0.5

# Shorter questions are mostly drug names and abbreviations; langdetect guesses
MIN_DETECTION_WORDS = 6
MIN_DETECTION_PROBABILITY = 0.9


def detect_language(text: str, fallback: str = "en") -> str:
    """Detected language of ``text``, or ``fallback`` when the guess is weak."""
    words = [w for w in text.split() if any(c.isalpha() for c in w)]
    if len(words) < MIN_DETECTION_WORDS:
        return fallback
    try:
        candidates = detect_langs(text)
    except LangDetectException:
        return fallback
    if not candidates or candidates[0].prob < MIN_DETECTION_PROBABILITY:
        return fallback
    return candidates[0].lang.split("-")[0]


def needs_context(question: str) -> bool:
    words = question.lower().replace("?", " ").split()
    return len(words) <= 4 or any(w.strip(".,!") in CONTEXT_DEPENDENT_WORDS for w in words)


def preserves_intent(original: str, enriched: str) -> bool:
    """The enriched text must keep most of the original's content words."""
    original_terms = set(tokenize(original))
    if not original_terms:
        return True
    kept = original_terms & set(tokenize(enriched))
    return len(kept) / len(original_terms) >= MIN_INTENT_OVERLAP


class QueryEnricher(LLMAgent):
    name = "enricher"
    role = "enricher"

    async def enrich(
        self,
        question: str,
        history: list[Message] | None = None,
        *,
        locale: str = "en",
        cost: CostTracker | None = None,
    ) -> EnrichedQuery:
        language = detect_language(question, fallback=locale)
        history = history or []
        if not history or not needs_context(question):
            return EnrichedQuery(text=question, language=language, rationale="self-contained")

        transcript = "\n".join(f"{m.role.value}: {m.content[:400]}" for m in history)
        try:
            payload = await self._create_json(
                system=render_prompt("enricher.system"),
                messages=[
                    {
                        "role": "user",
                        "content": render_prompt(
                            "enricher.user", question=question, history=transcript
                        ),
                    }
                ],
                max_tokens=400,
                temperature=0.2,
                cost=cost,
            )
        except Exception as e:
            log_service.log_failure("ENRICHMENT_FAILED", str(e), question=question[:200])
            return EnrichedQuery(text=question, language=language, rationale="enrichment unavailable")

        enriched = " ".join(str(payload.get("enriched", "")).split())
        if not enriched:
            return EnrichedQuery(text=question, language=language, rationale="no enrichment returned")
        if not preserves_intent(question, enriched):
            log_service.log_event(
                event_type="enrichment_rejected",
                message="Enriched query dropped too many original terms",
                question=question[:200],
                enriched=enriched[:200],
            )
            return EnrichedQuery(text=question, language=language, rationale="enrichment changed intent")

        fragments = payload.get("context_used") or []
        return EnrichedQuery(
            text=enriched,
            language=language,
            context_used=tuple(str(f) for f in fragments if str(f).strip()),
            rationale=str(payload.get("rationale", "")),
        )


class QueryTranslator(LLMAgent):
    """Translates search strings into a provider's corpus language.

    Translations are cached per instance, in flight included, so concurrent
    requests for the same pair share one model call. Create one per request.
    """

    name = "translator"
    role = "enricher"

    def __init__(self, model: str | None = None, client: Any | None = None):
        super().__init__(model=model, client=client)
        self._cache: dict[tuple[str, str], asyncio.Task[str]] = {}

    async def for_provider(
        self,
        text: str,
        source_language: str,
        corpus_language: str | None,
        *,
        cost: CostTracker | None = None,
    ) -> str:
        if corpus_language is None or corpus_language == source_language:
            return text
        key = (text, corpus_language)
        task = self._cache.get(key)
        if task is None:
            task = asyncio.create_task(self._translate(text, corpus_language, cost))
            self._cache[key] = task
        return await asyncio.shield(task)

    async def _translate(self, text: str, corpus_language: str, cost: CostTracker | None) -> str:
        try:
            response = await self._create(
                system=render_prompt("translator.system"),
                messages=[
                    {
                        "role": "user",
                        "content": render_prompt(
                            "translator.user", text=text, target_language=corpus_language
                        ),
                    }
                ],
                max_tokens=200,
                temperature=0.0,
                cost=cost,
            )
            translated = " ".join(self._extract_response_text(response).split()).strip('"')
        except Exception as e:
            log_service.log_failure(
                "TRANSLATION_FAILED",
                str(e),
                text=text[:200],
                target_language=corpus_language,
            )
            self._cache.pop((text, corpus_language), None)
            return text
        return translated or text
