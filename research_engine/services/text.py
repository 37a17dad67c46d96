"""Small text helpers shared by ranking, recall and session policies."""
from __future__ import annotations

import re
from collections import Counter
from difflib import SequenceMatcher

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+(?=[A-ZÇĞİÖŞÜ0-9\"'(\[])")

STOPWORDS = frozenset(
    {
        # en
        "the", "and", "for", "with", "that", "this", "from", "are", "was", "were",
        "what", "which", "have", "has", "had", "been", "does", "into", "than", "then",
        "about", "their", "there", "these", "those", "will", "would", "could", "should",
        "can", "how", "why", "when", "where", "who", "you", "your", "our", "but", "not",
        "any", "all", "its", "also", "some", "more", "most", "such", "very", "just",
        # tr
        "bir", "ve", "ile", "için", "bu", "şu", "mi", "mı", "mu", "mü", "ne", "nasıl",
        "olan", "gibi", "daha", "çok", "var", "yok", "ama", "veya", "de", "da", "ki",
        "ben", "sen", "biz", "siz", "onlar", "benim", "bana", "hakkında", "neden",
        "kadar", "sonra", "önce", "olarak", "olur", "oluyor", "midir", "mıdır",
    }
)


def tokenize(text: str) -> list[str]:
    return [
        token
        for token in _TOKEN_RE.findall((text or "").lower())
        if len(token) > 1 and token not in STOPWORDS
    ]


def keywords(text: str, *, min_length: int = 5, limit: int | None = None) -> list[str]:
    """Most frequent content words, ties in first-seen order."""
    counts = Counter(t for t in tokenize(text) if len(t) >= min_length and not t.isdigit())
    ranked = sorted(counts, key=lambda t: -counts[t])
    return ranked[:limit] if limit is not None else ranked


def word_set(text: str, *, min_length: int = 4) -> set[str]:
    return {t for t in _TOKEN_RE.findall((text or "").lower()) if len(t) >= min_length}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def normalize_title(title: str) -> str:
    title = re.sub(r"<[^>]+>|\[.*?\]", " ", (title or "").lower())
    title = re.sub(r"[^\w\s]", " ", title)
    return " ".join(title.split())


def title_similarity(a: str, b: str) -> float:
    """Blend of token Jaccard and character sequence ratio, in [0, 1]."""
    norm_a, norm_b = normalize_title(a), normalize_title(b)
    if not norm_a or not norm_b:
        return 0.0
    token_score = jaccard(set(norm_a.split()), set(norm_b.split()))
    sequence_score = SequenceMatcher(None, norm_a, norm_b).ratio()
    return 0.4 * token_score + 0.6 * sequence_score


def split_sentences(text: str) -> list[str]:
    parts = []
    for paragraph in (text or "").split("\n"):
        paragraph = paragraph.strip()
        if paragraph:
            parts.extend(s.strip() for s in _SENTENCE_RE.split(paragraph) if s.strip())
    return parts


def estimate_tokens(text: str) -> int:
    return (len(text or "") + 3) // 4
