"""Deterministic top-N selection with per-rule exclusion accounting."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from research_engine.config import settings
from research_engine.models.research import ExclusionReason, ExclusionReport, ProviderName, Source
from research_engine.services.text import estimate_tokens, jaccard, word_set


@dataclass(frozen=True, slots=True)
class SelectionResult:
    selected: list[Source]
    report: ExclusionReport
    excluded: list[tuple[Source, ExclusionReason]] = field(default_factory=list)


def quality_flags(source: Source, high_quality_threshold: float) -> list[str]:
    flags = ["peer_reviewed" if source.peer_reviewed else "not_peer_reviewed"]
    if source.provider == ProviderName.PREPRINT:
        flags.append("preprint")
    if source.provider == ProviderName.CLINICAL_TRIALS:
        flags.append("registry_record")
    if (source.relevance or 0.0) >= high_quality_threshold:
        flags.append("high_relevance")
    if len(source.provenance) > 1:
        flags.append("corroborated")
    return flags


class SourceSelector:
    def __init__(
        self,
        *,
        min_relevance: float | None = None,
        unreviewed_min_relevance: float | None = None,
        max_age_years: int | None = None,
        base_limit: int | None = None,
        extended_limit: int | None = None,
        high_quality_threshold: float | None = None,
        token_budget: int | None = None,
        near_duplicate_threshold: float | None = None,
    ):
        self.min_relevance = settings.selector_min_relevance if min_relevance is None else min_relevance
        self.unreviewed_min_relevance = (
            settings.selector_unreviewed_min_relevance
            if unreviewed_min_relevance is None
            else unreviewed_min_relevance
        )
        self.max_age_years = settings.selector_max_age_years if max_age_years is None else max_age_years
        self.base_limit = settings.selector_base_limit if base_limit is None else base_limit
        self.extended_limit = (
            settings.selector_extended_limit if extended_limit is None else extended_limit
        )
        self.high_quality_threshold = (
            settings.selector_high_quality_threshold
            if high_quality_threshold is None
            else high_quality_threshold
        )
        self.token_budget = settings.selector_token_budget if token_budget is None else token_budget
        self.near_duplicate_threshold = (
            settings.selector_near_duplicate_threshold
            if near_duplicate_threshold is None
            else near_duplicate_threshold
        )

    def _limit(self, candidates: list[Source], target: int | None) -> int:
        limit = self.base_limit if target is None else target
        high_quality = sum(
            1 for s in candidates if (s.relevance or 0.0) >= self.high_quality_threshold
        )
        if limit and high_quality > limit:
            limit = min(max(self.extended_limit, limit), high_quality)
        return limit

    def _quality_exclusion(
        self,
        source: Source,
        accepted_words: list[set[str]],
        reference_year: int,
    ) -> ExclusionReason | None:
        relevance = source.relevance or 0.0
        if relevance < self.min_relevance:
            return ExclusionReason.BELOW_RELEVANCE
        if source.year is not None and reference_year - source.year > self.max_age_years:
            return ExclusionReason.STALE
        if not source.peer_reviewed and relevance < self.unreviewed_min_relevance:
            return ExclusionReason.MISSING_PEER_REVIEW
        words = word_set(f"{source.title} {source.content}")
        if any(jaccard(words, other) >= self.near_duplicate_threshold for other in accepted_words):
            return ExclusionReason.NEAR_DUPLICATE
        return None

    def select(
        self,
        ranked: list[Source],
        *,
        target: int | None = None,
        reference_year: int | None = None,
    ) -> SelectionResult:
        reference_year = reference_year or datetime.now(timezone.utc).year
        excluded: list[tuple[Source, ExclusionReason]] = []
        candidates: list[Source] = []
        accepted_words: list[set[str]] = []

        for source in ranked:
            reason = self._quality_exclusion(source, accepted_words, reference_year)
            if reason is not None:
                excluded.append((source, reason))
                continue
            candidates.append(source)
            accepted_words.append(word_set(f"{source.title} {source.content}"))

        limit = self._limit(candidates, target)
        selected: list[Source] = []
        tokens_used = 0
        for source in candidates:
            if len(selected) >= limit:
                excluded.append((source, ExclusionReason.RANK_CUTOFF))
                continue
            cost = estimate_tokens(f"{source.title}\n{source.content}")
            if tokens_used + cost > self.token_budget:
                excluded.append((source, ExclusionReason.TOKEN_BUDGET))
                continue
            tokens_used += cost
            selected.append(
                replace(source, quality_flags=quality_flags(source, self.high_quality_threshold))
            )

        counts = {reason.value: 0 for reason in ExclusionReason}
        for _, reason in excluded:
            counts[reason.value] += 1
        report = ExclusionReport(total_evaluated=len(ranked), selected=len(selected), counts=counts)
        return SelectionResult(selected=selected, report=report, excluded=excluded)
