from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from .embeddings import EmbeddingProvider
from .models import Chunk, RetrievalResult
from .store import JsonChunkStore

_log = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.3


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector shapes differ: {va.shape} vs {vb.shape}")

    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / denom, -1.0, 1.0))


def _score_matrix(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Cosine similarity of one query vector against each row of `matrix`."""
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0.0)
    return np.clip(scores, -1.0, 1.0)


@dataclass
class RetrievalEngine:
    """
    Brute-force cosine search over every stored chunk.

    Cost is O(n * dim) per query. Only chunks embedded by the same provider as
    the query vector are scored; others are skipped and reported.
    """

    store: JsonChunkStore
    provider: EmbeddingProvider
    min_score: float = DEFAULT_MIN_SCORE

    async def retrieve(self, query: str, k: int = 3) -> List[RetrievalResult]:
        """Return at most `k` chunks scoring above the relevance floor, best first."""
        if k <= 0 or not query.strip():
            return []

        chunks = await self.store.scan_all_chunks()
        if not chunks:
            _log.info("No stored chunks, nothing to retrieve")
            return []

        query_vec = await self.provider.embed(query)

        candidates: list[Chunk] = []
        mismatched = 0
        for chunk in chunks:
            if chunk.embedding_provider != query_vec.provider or len(chunk.embedding) != query_vec.dim:
                mismatched += 1
                continue
            candidates.append(chunk)

        if mismatched:
            _log.warning(
                "Skipped %d chunks embedded by a different provider than the query (%s)",
                mismatched,
                query_vec.provider,
            )
        if not candidates:
            return []

        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float64)
        scores = _score_matrix(np.asarray(query_vec.values, dtype=np.float64), matrix)

        ranked = sorted(
            (
                (float(score), chunk)
                for score, chunk in zip(scores, candidates)
                if score > self.min_score
            ),
            key=lambda item: item[0],
            reverse=True,
        )
        results = [RetrievalResult(chunk=chunk, score=score) for score, chunk in ranked[:k]]

        _log.info("Found %d relevant chunks for: %r", len(results), query[:50])
        return results


__all__ = ["DEFAULT_MIN_SCORE", "RetrievalEngine", "cosine_similarity"]
