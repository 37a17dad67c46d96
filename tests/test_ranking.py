from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import make_source

from research_engine.agents.ranker import SourceRanker, blend_scores
from research_engine.agents.selector import SourceSelector
from research_engine.models.research import ExclusionReason, Provenance, ProviderName, QueryCategory
from research_engine.services.embeddings import HashingEmbeddingService

TOPICS = [
    ("Metformin lowers hepatic glucose output", "Hepatic gluconeogenesis suppression measured in clamp studies."),
    ("Empagliflozin reduces heart failure admissions", "Sodium glucose cotransporter blockade in randomized cohorts."),
    ("Semaglutide weekly injections and weight", "Body mass reductions among obese adults across sixty-eight weeks."),
    ("Continuous glucose monitors in adolescents", "Sensor wear adherence and time in range for teenagers."),
    ("Bariatric surgery remission durability", "Gastric bypass remission rates after ten years of follow-up."),
    ("Retinopathy screening with fundus photography", "Automated grading of retinal images in primary care."),
    ("Foot ulcer offloading devices", "Total contact casts compared with removable walkers."),
]


def _distinct(index: int, **kwargs):
    title, content = TOPICS[index]
    return make_source(str(index), title=title, content=content, **kwargs)


class TestRanker:
    @pytest.mark.asyncio
    async def test_most_similar_source_ranks_first(self, sources):
        ranker = SourceRanker(HashingEmbeddingService())

        ranked = await ranker.rank("metformin cardiovascular outcomes type 2 diabetes", sources)

        assert ranked[0].external_id == "1"
        assert all(0.0 <= s.relevance <= 1.0 for s in ranked)
        assert [s.relevance for s in ranked] == sorted((s.relevance for s in ranked), reverse=True)

    @pytest.mark.asyncio
    async def test_ranking_is_deterministic(self, sources):
        ranker = SourceRanker(HashingEmbeddingService())

        first = await ranker.rank("metformin heart failure", sources)
        second = await ranker.rank("metformin heart failure", list(reversed(sources)))

        assert [(s.key, s.relevance) for s in first] == [(s.key, s.relevance) for s in second]

    @pytest.mark.asyncio
    async def test_ties_break_on_recency_then_source_priority(self):
        older = make_source("a", year=2015)
        newer = make_source("b", year=2023)
        preprint = make_source("c", provider=ProviderName.PREPRINT, year=2023)
        ranker = SourceRanker(HashingEmbeddingService())

        ranked = await ranker.rank(
            "metformin", [older, preprint, newer], category=QueryCategory.NEW_RESEARCH
        )

        assert [s.external_id for s in ranked] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_hashing(self, sources):
        broken = MagicMock()
        broken.embed_texts = AsyncMock(side_effect=RuntimeError("model not loaded"))

        ranked = await SourceRanker(broken).rank("metformin", sources)

        assert len(ranked) == len(sources)
        assert all(s.relevance is not None for s in ranked)

    @pytest.mark.asyncio
    async def test_does_not_annotate_inputs(self, sources):
        await SourceRanker(HashingEmbeddingService()).rank("metformin", sources)
        assert all(s.relevance is None for s in sources)


def test_blend_scores_puts_best_match_at_top():
    import numpy as np

    blended = blend_scores(np.array([0.5, 0.25, -0.2]))

    assert blended[0] == pytest.approx(0.7 + 0.3 * 0.5)
    assert blended[1] == pytest.approx(0.35 + 0.3 * 0.25)
    assert blended[2] == 0.0


class TestSelector:
    def test_every_evaluated_source_is_accounted_for(self):
        a = _distinct(0, relevance=0.9)
        near_duplicate = make_source("dup", title=a.title, content=a.content, relevance=0.85)
        ranked = [
            a,
            near_duplicate,
            _distinct(1, relevance=0.3),
            _distinct(2, relevance=0.8, year=2001),
            _distinct(3, relevance=0.5, peer_reviewed=False),
            _distinct(4, relevance=0.75),
            _distinct(5, relevance=0.72),
        ]
        selector = SourceSelector(base_limit=2, extended_limit=2, high_quality_threshold=0.95)

        result = selector.select(ranked, reference_year=2026)

        assert [s.external_id for s in result.selected] == ["0", "4"]
        counts = result.report.counts
        assert counts[ExclusionReason.NEAR_DUPLICATE.value] == 1
        assert counts[ExclusionReason.BELOW_RELEVANCE.value] == 1
        assert counts[ExclusionReason.STALE.value] == 1
        assert counts[ExclusionReason.MISSING_PEER_REVIEW.value] == 1
        assert counts[ExclusionReason.RANK_CUTOFF.value] == 1
        assert counts[ExclusionReason.TOKEN_BUDGET.value] == 0
        assert result.report.total_evaluated == result.report.selected + sum(counts.values())

    def test_limit_extends_for_many_high_quality_sources(self):
        ranked = [_distinct(i, relevance=0.9 - i * 0.01) for i in range(5)]
        selector = SourceSelector(base_limit=2, extended_limit=4, high_quality_threshold=0.7)

        result = selector.select(ranked, reference_year=2026)

        assert len(result.selected) == 4
        assert result.report.counts[ExclusionReason.RANK_CUTOFF.value] == 1

    def test_token_budget(self):
        ranked = [_distinct(i, relevance=0.9) for i in range(3)]
        selector = SourceSelector(token_budget=30)

        result = selector.select(ranked, reference_year=2026)

        assert len(result.selected) == 1
        assert result.report.counts[ExclusionReason.TOKEN_BUDGET.value] == 2

    def test_explicit_target_overrides_base_limit(self):
        ranked = [_distinct(i, relevance=0.6) for i in range(5)]
        result = SourceSelector(base_limit=25).select(ranked, target=3, reference_year=2026)
        assert len(result.selected) == 3

    def test_zero_target_selects_nothing(self):
        ranked = [_distinct(i, relevance=0.9) for i in range(4)]
        result = SourceSelector(base_limit=25).select(ranked, target=0, reference_year=2026)
        assert result.selected == []
        assert result.report.counts[ExclusionReason.RANK_CUTOFF.value] == 4

    def test_selection_is_deterministic(self):
        ranked = [_distinct(i, relevance=0.8) for i in range(6)]
        selector = SourceSelector(base_limit=3)

        first = selector.select(ranked, reference_year=2026)
        second = selector.select(ranked, reference_year=2026)

        assert [s.key for s in first.selected] == [s.key for s in second.selected]
        assert first.report == second.report

    def test_quality_flags(self):
        preprint = make_source(
            "p",
            provider=ProviderName.PREPRINT,
            peer_reviewed=False,
            relevance=0.9,
            provenance={Provenance(ProviderName.PREPRINT, 1), Provenance(ProviderName.PUBMED, 2)},
        )

        [selected] = SourceSelector().select([preprint], reference_year=2026).selected

        assert selected.quality_flags == ["not_peer_reviewed", "preprint", "high_relevance", "corroborated"]
