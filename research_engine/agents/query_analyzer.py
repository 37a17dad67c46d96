"""Query categories and the provider distributions that go with them."""
from __future__ import annotations

import math
import re
from typing import Iterable, Mapping

from research_engine.models.research import ProviderName, QueryCategory

CATEGORY_PATTERNS: list[tuple[QueryCategory, re.Pattern[str]]] = [
    (
        QueryCategory.DRUG_SAFETY,
        re.compile(r"yan etki|etkileş|güvenli mi|side effect|adverse|interaction|contraindic|\bdoz|\bdos(e|ing)\b|safe to", re.I),
    ),
    (
        QueryCategory.NEW_RESEARCH,
        re.compile(r"latest|\byeni\b|güncel|20[2-3]\d|breakthrough|recent|clinical trial|klinik (deneme|çalışma)|son gelişme", re.I),
    ),
    (
        QueryCategory.NUTRITION,
        re.compile(r"beslenme|nutrition|\bdiet|food|yemek|tarif|recipe|\bcarb|karbonhidrat|protein|glycemic|glisemik", re.I),
    ),
    (
        QueryCategory.TREATMENT,
        re.compile(r"tedavi|treatment|therapy|terapi|guideline|kılavuz|protocol|protokol|hedef|target", re.I),
    ),
]

CATEGORY_RATIOS: dict[QueryCategory, dict[ProviderName, float]] = {
    QueryCategory.DRUG_SAFETY: {
        ProviderName.PUBMED: 0.7,
        ProviderName.PREPRINT: 0.1,
        ProviderName.CLINICAL_TRIALS: 0.2,
    },
    QueryCategory.NEW_RESEARCH: {
        ProviderName.PUBMED: 0.5,
        ProviderName.PREPRINT: 0.3,
        ProviderName.CLINICAL_TRIALS: 0.2,
    },
    QueryCategory.NUTRITION: {
        ProviderName.PUBMED: 0.8,
        ProviderName.PREPRINT: 0.15,
        ProviderName.CLINICAL_TRIALS: 0.05,
    },
    QueryCategory.TREATMENT: {
        ProviderName.PUBMED: 0.65,
        ProviderName.PREPRINT: 0.1,
        ProviderName.CLINICAL_TRIALS: 0.25,
    },
    QueryCategory.GENERAL: {
        ProviderName.PUBMED: 0.55,
        ProviderName.PREPRINT: 0.2,
        ProviderName.CLINICAL_TRIALS: 0.25,
    },
}

# Ranking tiebreak: lower index wins
SOURCE_PRIORITY: dict[QueryCategory, list[ProviderName]] = {
    QueryCategory.DRUG_SAFETY: [ProviderName.PUBMED, ProviderName.CLINICAL_TRIALS, ProviderName.PREPRINT, ProviderName.WEB],
    QueryCategory.NEW_RESEARCH: [ProviderName.PREPRINT, ProviderName.CLINICAL_TRIALS, ProviderName.PUBMED, ProviderName.WEB],
    QueryCategory.NUTRITION: [ProviderName.PUBMED, ProviderName.PREPRINT, ProviderName.WEB, ProviderName.CLINICAL_TRIALS],
    QueryCategory.TREATMENT: [ProviderName.PUBMED, ProviderName.CLINICAL_TRIALS, ProviderName.PREPRINT, ProviderName.WEB],
    QueryCategory.GENERAL: [ProviderName.PUBMED, ProviderName.CLINICAL_TRIALS, ProviderName.PREPRINT, ProviderName.WEB],
}

SINGLE_PASS_WEB_SHARE = 0.4


def categorize(question: str) -> QueryCategory:
    for category, pattern in CATEGORY_PATTERNS:
        if pattern.search(question):
            return category
    return QueryCategory.GENERAL


def priority_rank(category: QueryCategory, provider: ProviderName) -> int:
    order = SOURCE_PRIORITY.get(category, SOURCE_PRIORITY[QueryCategory.GENERAL])
    return order.index(provider) if provider in order else len(order)


def allocate_counts(
    ratios: Mapping[ProviderName, float],
    target: int,
    available: Iterable[ProviderName],
) -> dict[ProviderName, int]:
    """Largest-remainder split of ``target`` across available providers.

    Counts always sum to ``target`` (when ``target > 0`` and any provider is
    available). Ratios are renormalised over the available providers; if none
    of them carries weight, the target is spread evenly.
    """
    available = list(dict.fromkeys(available))
    if target <= 0 or not available:
        return {}

    weights = {p: max(float(ratios.get(p, 0.0)), 0.0) for p in available}
    total = sum(weights.values())
    if total <= 0:
        weights = {p: 1.0 for p in available}
        total = float(len(available))

    exact = {p: target * w / total for p, w in weights.items()}
    counts = {p: math.floor(v) for p, v in exact.items()}
    remaining = target - sum(counts.values())
    order = sorted(available, key=lambda p: (-(exact[p] - counts[p]), -weights[p], available.index(p)))
    for provider in order[:remaining]:
        counts[provider] += 1
    return {p: n for p, n in counts.items() if n > 0}


def default_distribution(
    category: QueryCategory,
    target: int,
    available: Iterable[ProviderName],
) -> dict[ProviderName, int]:
    return allocate_counts(CATEGORY_RATIOS[category], target, available)


def single_pass_distribution(
    category: QueryCategory,
    target: int,
    available: Iterable[ProviderName],
) -> dict[ProviderName, int]:
    available = list(available)
    ratios = {p: r * (1 - SINGLE_PASS_WEB_SHARE) for p, r in CATEGORY_RATIOS[category].items()}
    if ProviderName.WEB in available:
        ratios[ProviderName.WEB] = SINGLE_PASS_WEB_SHARE
    return allocate_counts(ratios, target, available)
