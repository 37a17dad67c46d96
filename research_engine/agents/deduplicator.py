"""Cross-provider, cross-round source deduplication."""
from __future__ import annotations

from dataclasses import replace

from research_engine.config import settings
from research_engine.models.research import Source
from research_engine.services.text import normalize_title, title_similarity


def _identity_keys(source: Source) -> set[str]:
    keys = {f"{source.provider.value}:{source.external_id}".lower()}
    if source.doi:
        keys.add(f"doi:{source.doi.lower().strip()}")
    if source.url:
        keys.add(f"url:{source.url.lower().rstrip('/')}")
    return keys


def _first_author(source: Source) -> str:
    name = normalize_title(source.authors[0]) if source.authors else ""
    return name.split(" ")[0] if name else ""


def _richness(source: Source) -> tuple:
    return (
        source.peer_reviewed,
        len(source.content),
        bool(source.doi),
        len(source.authors),
        source.year is not None,
    )


class Deduplicator:
    """Merges duplicate sources; running it on its own output changes nothing."""

    def __init__(self, title_threshold: float | None = None):
        self.title_threshold = (
            settings.dedup_title_similarity_threshold if title_threshold is None else title_threshold
        )

    def is_duplicate(self, a: Source, b: Source) -> bool:
        if _identity_keys(a) & _identity_keys(b):
            return True
        author_a, author_b = _first_author(a), _first_author(b)
        if author_a and author_b and author_a != author_b:
            return False
        return title_similarity(a.title, b.title) >= self.title_threshold

    @staticmethod
    def merge(a: Source, b: Source) -> Source:
        primary, secondary = (a, b) if _richness(a) >= _richness(b) else (b, a)
        return replace(
            primary,
            url=primary.url or secondary.url,
            authors=list(primary.authors if len(primary.authors) >= len(secondary.authors) else secondary.authors),
            venue=primary.venue or secondary.venue,
            year=primary.year if primary.year is not None else secondary.year,
            doi=primary.doi or secondary.doi,
            content=primary.content if len(primary.content) >= len(secondary.content) else secondary.content,
            peer_reviewed=primary.peer_reviewed or secondary.peer_reviewed,
            provenance=set(primary.provenance) | set(secondary.provenance),
            quality_flags=list(primary.quality_flags),
        )

    def _single_pass(self, sources: list[Source]) -> list[Source]:
        merged: list[Source] = []
        for source in sources:
            for index, existing in enumerate(merged):
                if self.is_duplicate(existing, source):
                    merged[index] = self.merge(existing, source)
                    break
            else:
                merged.append(replace(source, provenance=set(source.provenance), authors=list(source.authors)))
        return merged

    def deduplicate(self, sources: list[Source]) -> list[Source]:
        current = self._single_pass(list(sources))
        # merges can make earlier survivors match each other; repeat to a fixpoint
        while True:
            again = self._single_pass(current)
            if len(again) == len(current):
                return again
            current = again
