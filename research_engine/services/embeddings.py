from __future__ import annotations

import asyncio
import hashlib
import time
from typing import Any, Protocol

import numpy as np

from research_engine.config import settings
from research_engine.services.text import tokenize


class EmbeddingService(Protocol):
    async def embed_texts(self, texts: list[str]) -> np.ndarray: ...


class HashingEmbeddingService:
    """Deterministic feature-hashed bag of words.

    Each token lands in one of ``dimension`` buckets chosen by a stable digest,
    with a digest-derived sign; rows are L2-normalised so a dot product is the
    cosine similarity.
    """

    def __init__(self, dimension: int | None = None):
        self.dimension = dimension or settings.embedding_dimension

    def _bucket(self, token: str) -> tuple[int, float]:
        digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
        value = int.from_bytes(digest, "big")
        sign = 1.0 if value & 1 else -1.0
        return (value >> 1) % self.dimension, sign

    def embed_sync(self, texts: list[str]) -> np.ndarray:
        matrix = np.zeros((len(texts), self.dimension), dtype=np.float64)
        for row, text in enumerate(texts):
            counts: dict[str, int] = {}
            for token in tokenize(text):
                counts[token] = counts.get(token, 0) + 1
            for token, count in counts.items():
                index, sign = self._bucket(token)
                matrix[row, index] += sign * (1.0 + np.log(count))
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return matrix / norms

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        return self.embed_sync(texts)


class LocalEmbeddingService:
    """sentence-transformers model loaded on first use, run off the event loop."""

    def __init__(self, model_name: str | None = None, batch_size: int = 32):
        self.model_name = model_name or settings.local_embed_model
        self.batch_size = batch_size
        self._model: Any | None = None
        self._lock = asyncio.Lock()

    async def embed_texts(self, texts: list[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, 0))
        async with self._lock:
            if self._model is None:
                self._model = await asyncio.to_thread(self._load_model)
        return await asyncio.to_thread(self._embed_sync, texts)

    def _load_model(self) -> Any:
        from sentence_transformers import SentenceTransformer

        return SentenceTransformer(self.model_name)

    def _embed_sync(self, texts: list[str]) -> np.ndarray:
        retries = 3
        for attempt in range(retries):
            try:
                vectors = self._model.encode(
                    texts,
                    batch_size=self.batch_size,
                    normalize_embeddings=True,
                    show_progress_bar=False,
                )
                return np.asarray(vectors, dtype=np.float64)
            except RuntimeError:
                if attempt == retries - 1:
                    raise
                time.sleep(0.2 * (attempt + 1))
        raise RuntimeError("unreachable")


def cosine_scores(query_vector: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    if matrix.size == 0:
        return np.zeros(0)
    query_norm = np.linalg.norm(query_vector) or 1.0
    row_norms = np.linalg.norm(matrix, axis=1)
    row_norms[row_norms == 0] = 1.0
    return (matrix @ query_vector) / (row_norms * query_norm)


def get_embedding_service(backend: str | None = None) -> EmbeddingService:
    backend = (backend or settings.embedding_backend).lower().strip()
    if backend == "hashing":
        return HashingEmbeddingService()
    if backend == "local":
        return LocalEmbeddingService()
    raise ValueError(f"Unsupported EMBEDDING_BACKEND: {backend}")
