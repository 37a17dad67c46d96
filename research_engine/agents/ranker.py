"""Similarity-based source ranking: one embedding call per request, no model calls."""
from __future__ import annotations

from dataclasses import replace

import numpy as np

from research_engine.agents.query_analyzer import priority_rank
from research_engine.models.research import QueryCategory, Source
from research_engine.services import logger as log_service
from research_engine.services.embeddings import (
    EmbeddingService,
    HashingEmbeddingService,
    cosine_scores,
    get_embedding_service,
)

RELATIVE_WEIGHT = 0.7
ABSOLUTE_WEIGHT = 0.3


def source_text(source: Source) -> str:
    return f"{source.title}. {source.content}".strip()


def blend_scores(cosines: np.ndarray) -> np.ndarray:
    """Relevance in [0, 1]: mostly relative to the best match, partly absolute."""
    absolute = np.clip(cosines, 0.0, 1.0)
    best = float(absolute.max()) if absolute.size else 0.0
    relative = absolute / best if best > 0 else np.zeros_like(absolute)
    return RELATIVE_WEIGHT * relative + ABSOLUTE_WEIGHT * absolute


class SourceRanker:
    def __init__(self, embeddings: EmbeddingService | None = None):
        self.embeddings = embeddings or get_embedding_service()

    async def rank(
        self,
        question: str,
        sources: list[Source],
        *,
        category: QueryCategory = QueryCategory.GENERAL,
    ) -> list[Source]:
        """Return copies annotated with ``relevance``, best first.

        Ties break on recency, then on the source-type priority for the
        category, then on title and identity so the order is total.
        """
        if not sources:
            return []

        texts = [question] + [source_text(s) for s in sources]
        try:
            matrix = await self.embeddings.embed_texts(texts)
        except Exception as e:
            log_service.log_failure("EMBEDDING_FAILED", str(e), stage="ranker", sources=len(sources))
            matrix = HashingEmbeddingService().embed_sync(texts)

        matrix = np.asarray(matrix, dtype=np.float64)
        relevance = blend_scores(cosine_scores(matrix[0], matrix[1:]))

        scored = [
            replace(source, relevance=round(float(score), 6))
            for source, score in zip(sources, relevance)
        ]
        scored.sort(
            key=lambda s: (
                -s.relevance,
                -(s.year or 0),
                priority_rank(category, s.provider),
                s.title.lower(),
                s.key,
            )
        )
        return scored
