"""Post-hoc check of inline citations against the selected sources."""
from __future__ import annotations

import re

import numpy as np

from research_engine.config import settings
from research_engine.errors import VerificationFailure
from research_engine.models.research import CitationCheck, CitationVerdict, Source, VerificationReport
from research_engine.services import logger as log_service
from research_engine.services.embeddings import EmbeddingService, get_embedding_service
from research_engine.services.stream_parser import CITATION_MARKER_RE
from research_engine.services.text import estimate_tokens, split_sentences, tokenize

# Long enough for a full structured abstract
MAX_EXCERPT_TOKENS_PER_SOURCE = 1500

CERTAINTY_TERMS = (
    # en
    "proves", "proven", "proof", "always", "never", "cures", "cure", "guarantees",
    "guaranteed", "definitely", "certainly", "undoubtedly", "conclusively",
    "eliminates", "completely", "100%",
    # tr
    "kesinlikle", "kanıtlıyor", "kanıtlanmış", "kanıtlamıştır", "her zaman", "asla",
    "tedavi eder", "garanti", "şüphesiz", "tamamen",
)


def certainty_terms(text: str) -> set[str]:
    lowered = f" {(text or '').lower()} "
    return {term for term in CERTAINTY_TERMS if re.search(rf"(?<!\w){re.escape(term)}(?!\w)", lowered)}


def cited_indices(sentence: str) -> tuple[int, ...]:
    indices: list[int] = []
    for match in CITATION_MARKER_RE.finditer(sentence):
        for part in match.group(1).split(","):
            value = int(part.strip())
            if value not in indices:
                indices.append(value)
    return tuple(indices)


def strip_markers(sentence: str) -> str:
    return " ".join(CITATION_MARKER_RE.sub(" ", sentence).split())


def lexical_support(claim: str, excerpt: str) -> float:
    """Share of the claim's content words that appear in the excerpt."""
    claim_tokens = set(tokenize(claim))
    if not claim_tokens:
        return 0.0
    return len(claim_tokens & set(tokenize(excerpt))) / len(claim_tokens)


def excerpts_for(source: Source) -> list[str]:
    """Title and content sentences, in order, up to the per-source token budget."""
    excerpts: list[str] = []
    used = 0
    for part in [source.title] + split_sentences(source.content):
        if not part.strip():
            continue
        cost = estimate_tokens(part)
        if excerpts and used + cost > MAX_EXCERPT_TOKENS_PER_SOURCE:
            break
        excerpts.append(part)
        used += cost
    return excerpts


class CitationVerifier:
    name = "citation_verifier"

    def __init__(
        self,
        embeddings: EmbeddingService | None = None,
        *,
        accurate_threshold: float | None = None,
        nuance_threshold: float | None = None,
    ):
        self.embeddings = embeddings or get_embedding_service()
        self.accurate_threshold = (
            settings.citation_accurate_threshold if accurate_threshold is None else accurate_threshold
        )
        self.nuance_threshold = (
            settings.citation_nuance_threshold if nuance_threshold is None else nuance_threshold
        )

    async def verify(self, answer: str, sources: list[Source]) -> VerificationReport:
        """Classify every cited sentence of ``answer``.

        Marker ``[n]`` refers to ``sources[n - 1]``. Raises VerificationFailure
        on any internal error; the caller treats that as "no metadata".
        """
        try:
            return await self._verify(answer, sources)
        except VerificationFailure:
            raise
        except Exception as e:
            raise VerificationFailure(str(e) or type(e).__name__, sources=len(sources)) from e

    async def _verify(self, answer: str, sources: list[Source]) -> VerificationReport:
        cited = [
            (sentence, cited_indices(sentence))
            for sentence in split_sentences(answer)
            if CITATION_MARKER_RE.search(sentence)
        ]
        if not cited:
            return VerificationReport(checks=(), authenticity_score=0.0)

        excerpts: list[str] = []
        spans: list[tuple[int, int]] = []
        for source in sources:
            chunk = excerpts_for(source)
            spans.append((len(excerpts), len(excerpts) + len(chunk)))
            excerpts.extend(chunk)

        claims = [strip_markers(sentence) for sentence, _ in cited]
        matrix = np.asarray(await self.embeddings.embed_texts(claims + excerpts), dtype=np.float64)
        claim_vectors = matrix[: len(claims)]
        excerpt_vectors = matrix[len(claims):]

        checks = []
        for row, ((sentence, indices), claim) in enumerate(zip(cited, claims)):
            checks.append(
                self._check(
                    sentence,
                    claim,
                    indices,
                    claim_vectors[row],
                    excerpt_vectors,
                    excerpts,
                    spans,
                    sources,
                )
            )

        accurate = sum(1 for c in checks if c.verdict == CitationVerdict.ACCURATE)
        report = VerificationReport(checks=tuple(checks), authenticity_score=accurate / len(checks))
        log_service.log_event(
            event_type="citation_verification",
            message="Citations checked",
            total=len(checks),
            accurate=accurate,
            authenticity_score=round(report.authenticity_score, 4),
        )
        return report

    def _check(
        self,
        sentence: str,
        claim: str,
        indices: tuple[int, ...],
        claim_vector: np.ndarray,
        excerpt_vectors: np.ndarray,
        excerpts: list[str],
        spans: list[tuple[int, int]],
        sources: list[Source],
    ) -> CitationCheck:
        invalid = [i for i in indices if i < 1 or i > len(sources)]
        if invalid:
            return CitationCheck(
                sentence=sentence,
                source_indices=indices,
                similarity=0.0,
                verdict=CitationVerdict.INACCURATE,
                note=f"Unknown source index: {', '.join(str(i) for i in invalid)}",
            )

        best_score = 0.0
        best_excerpt = ""
        best_source: Source | None = None
        for index in indices:
            start, end = spans[index - 1]
            for position in range(start, end):
                semantic = float(excerpt_vectors[position] @ claim_vector)
                score = max(semantic, lexical_support(claim, excerpts[position]))
                if score > best_score:
                    best_score = score
                    best_excerpt = excerpts[position]
                    best_source = sources[index - 1]
        best_score = max(0.0, min(1.0, best_score))

        if best_score < self.nuance_threshold:
            return CitationCheck(
                sentence=sentence,
                source_indices=indices,
                similarity=best_score,
                verdict=CitationVerdict.INACCURATE,
                note="No supporting passage found in the cited source",
            )

        overstated = certainty_terms(claim) - certainty_terms(best_source.content if best_source else "")
        if overstated:
            return CitationCheck(
                sentence=sentence,
                source_indices=indices,
                similarity=best_score,
                verdict=CitationVerdict.NUANCE_LOST,
                note=f"Claim is more certain than the source ({', '.join(sorted(overstated))})",
            )
        if best_score < self.accurate_threshold:
            return CitationCheck(
                sentence=sentence,
                source_indices=indices,
                similarity=best_score,
                verdict=CitationVerdict.NUANCE_LOST,
                note=f"Partial support: {best_excerpt[:160]}",
            )
        return CitationCheck(
            sentence=sentence,
            source_indices=indices,
            similarity=best_score,
            verdict=CitationVerdict.ACCURATE,
        )
