from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any


class Tier(IntEnum):
    RECALL = 0
    DIRECT = 1
    SEARCH = 2
    DEEP = 3


class ProviderName(str, Enum):
    PUBMED = "pubmed"
    PREPRINT = "preprint"
    CLINICAL_TRIALS = "clinical_trials"
    WEB = "web"


class QueryCategory(str, Enum):
    DRUG_SAFETY = "drug_safety"
    NEW_RESEARCH = "new_research"
    TREATMENT = "treatment"
    NUTRITION = "nutrition"
    GENERAL = "general"


class CallStatus(str, Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"


class RoundPurpose(str, Enum):
    INITIAL = "initial"
    GAP_FILL = "gap_fill"


class GapDecision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class CitationVerdict(str, Enum):
    ACCURATE = "accurate"
    NUANCE_LOST = "nuance-lost"
    INACCURATE = "inaccurate"


class ExclusionReason(str, Enum):
    BELOW_RELEVANCE = "below_relevance"
    STALE = "stale"
    MISSING_PEER_REVIEW = "missing_peer_review"
    NEAR_DUPLICATE = "near_duplicate"
    RANK_CUTOFF = "rank_cutoff"
    TOKEN_BUDGET = "token_budget"


# --- Query ---


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    tier: Tier
    confidence: float
    explicit_deep_request: bool = False
    recall_terms: tuple[str, ...] = ()
    reasoning: str = ""
    fallback: bool = False


@dataclass(frozen=True, slots=True)
class EnrichedQuery:
    text: str
    language: str
    context_used: tuple[str, ...] = ()
    rationale: str = ""


@dataclass(frozen=True, slots=True)
class Query:
    """A classified user question. Superseded, never edited, on topic change."""

    text: str
    language: str
    routing: RoutingDecision
    enrichment: EnrichedQuery | None = None
    category: QueryCategory = QueryCategory.GENERAL

    @property
    def tier(self) -> Tier:
        return self.routing.tier

    @property
    def confidence(self) -> float:
        return self.routing.confidence

    @property
    def explicit_deep_request(self) -> bool:
        return self.routing.explicit_deep_request

    @property
    def search_text(self) -> str:
        return self.enrichment.text if self.enrichment else self.text

    def with_enrichment(self, enrichment: EnrichedQuery) -> Query:
        return replace(self, enrichment=enrichment)


# --- Plan ---


@dataclass(frozen=True, slots=True)
class ResearchPlan:
    distribution: dict[ProviderName, int]
    min_rounds: int
    max_rounds: int
    sub_queries: tuple[str, ...]
    rationale: str = ""
    category: QueryCategory = QueryCategory.GENERAL
    simplified: bool = False

    @property
    def total_target(self) -> int:
        return sum(self.distribution.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "distribution": {p.value: n for p, n in self.distribution.items()},
            "min_rounds": self.min_rounds,
            "max_rounds": self.max_rounds,
            "sub_queries": list(self.sub_queries),
            "rationale": self.rationale,
            "category": self.category.value,
            "total_target": self.total_target,
            "simplified": self.simplified,
        }


# --- Sources ---


@dataclass(frozen=True, slots=True)
class Provenance:
    provider: ProviderName
    round_number: int


@dataclass(slots=True)
class Source:
    provider: ProviderName
    external_id: str
    title: str
    url: str = ""
    authors: list[str] = field(default_factory=list)
    venue: str = ""
    year: int | None = None
    doi: str = ""
    content: str = ""
    peer_reviewed: bool = False
    provenance: set[Provenance] = field(default_factory=set)
    relevance: float | None = None
    quality_flags: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        if self.doi:
            return f"doi:{self.doi.lower()}"
        return f"{self.provider.value}:{self.external_id}".lower()

    def citation_dict(self, index: int) -> dict[str, Any]:
        return {
            "index": index,
            "provider": self.provider.value,
            "external_id": self.external_id,
            "title": self.title,
            "url": self.url,
            "authors": self.authors[:5],
            "venue": self.venue,
            "year": self.year,
            "relevance": round(self.relevance, 4) if self.relevance is not None else None,
            "quality_flags": list(self.quality_flags),
        }


# --- Rounds ---


@dataclass(frozen=True, slots=True)
class SearchFilters:
    min_year: int | None = None
    max_year: int | None = None
    include_domains: tuple[str, ...] = ()
    exclude_domains: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ProviderCall:
    provider: ProviderName
    query: str
    max_results: int
    filters: SearchFilters = SearchFilters()


@dataclass(frozen=True, slots=True)
class ProviderCallResult:
    call: ProviderCall
    status: CallStatus
    latency_ms: int
    results: tuple[Source, ...] = ()
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Round:
    number: int
    purpose: RoundPurpose
    calls: tuple[ProviderCallResult, ...]
    duration_ms: int

    @property
    def sources(self) -> list[Source]:
        return [source for call in self.calls for source in call.results]

    @property
    def status(self) -> str:
        succeeded = sum(1 for c in self.calls if c.status == CallStatus.SUCCESS)
        if self.calls and succeeded == len(self.calls):
            return "success"
        if succeeded:
            return "partial"
        return "failed"

    def summary(self) -> dict[str, Any]:
        return {
            "round": self.number,
            "purpose": self.purpose.value,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "sources_count": len(self.sources),
            "calls": [
                {
                    "provider": c.call.provider.value,
                    "query": c.call.query,
                    "status": c.status.value,
                    "latency_ms": c.latency_ms,
                    "results_count": len(c.results),
                }
                for c in self.calls
            ],
        }


# --- Reflection / stopping ---


@dataclass(frozen=True, slots=True)
class GapAssessment:
    well_covered: tuple[str, ...]
    partially_covered: tuple[str, ...]
    uncovered: tuple[str, ...]
    gap_score: float
    decision: GapDecision
    rationale: str
    round_number: int = 0
    heuristic: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "round": self.round_number,
            "gap_score": round(self.gap_score, 4),
            "decision": self.decision.value,
            "well_covered": list(self.well_covered),
            "partially_covered": list(self.partially_covered),
            "uncovered": list(self.uncovered),
            "rationale": self.rationale,
        }


@dataclass(frozen=True, slots=True)
class StopDecision:
    stop: bool
    reason: str
    refined_queries: tuple[str, ...] = ()


# --- Selection / verification ---


@dataclass(frozen=True, slots=True)
class ExclusionReport:
    total_evaluated: int
    selected: int
    counts: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_evaluated": self.total_evaluated,
            "selected": self.selected,
            "excluded": dict(self.counts),
        }


@dataclass(frozen=True, slots=True)
class CitationCheck:
    sentence: str
    source_indices: tuple[int, ...]
    similarity: float
    verdict: CitationVerdict
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "sentence": self.sentence,
            "sources": list(self.source_indices),
            "similarity": round(self.similarity, 4),
            "verdict": self.verdict.value,
            "note": self.note,
        }


@dataclass(frozen=True, slots=True)
class VerificationReport:
    checks: tuple[CitationCheck, ...]
    authenticity_score: float

    def to_dict(self) -> dict[str, Any]:
        counts = {verdict.value: 0 for verdict in CitationVerdict}
        for check in self.checks:
            counts[check.verdict.value] += 1
        return {
            "authenticity_score": round(self.authenticity_score, 4),
            "total": len(self.checks),
            "counts": counts,
            "checks": [check.to_dict() for check in self.checks],
        }
