"""
Two-Phase Search
================
Phase 1 scans compact, in-memory Matryoshka vectors (default 256 dims) to
build a candidate pool; phase 2 reranks only that pool with full-precision
embeddings (default 768 dims) fetched through an async provider.

The provider is asked for exactly the candidate ids. A candidate whose full
embedding is missing, or whose dimension does not match the query, keeps its
phase-1 score.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set

import numpy as np
from loguru import logger

from vectorlake.core.cold_search import SearchResult, combine_tiered_results
from vectorlake.core.exceptions import DimensionMismatchError
from vectorlake.core.vector_math import (
    EMBEDDINGGEMMA_DIMENSIONS,
    VectorLike,
    as_vector,
    cosine_scores,
    normalize_vector,
    truncate_and_normalize,
    truncate_embedding,
)

FullEmbeddingProvider = Callable[[List[str]], Awaitable[Mapping[str, Optional[VectorLike]]]]


@dataclass
class HotIndexEntry:
    id: str
    embedding: np.ndarray
    metadata: Dict[str, Any] = field(default_factory=dict)


class TwoPhaseSearch:
    def __init__(
        self,
        hot_dimension: int = 256,
        full_dimension: int = EMBEDDINGGEMMA_DIMENSIONS,
        candidate_pool_size: int = 50,
    ):
        self.hot_dimension = hot_dimension
        self.full_dimension = full_dimension
        self.candidate_pool_size = candidate_pool_size

        self._entries: Dict[str, HotIndexEntry] = {}
        self._ids: List[str] = []
        self._matrix: Optional[np.ndarray] = None
        self._provider: Optional[FullEmbeddingProvider] = None
        self._cold_ids: Set[str] = set()

        self._total_searches = 0
        self._phase1_ms = 0.0
        self._phase2_ms = 0.0

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    def add_to_hot_index(self, id: str, embedding: VectorLike, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Index a vector; full embeddings are truncated and re-normalized first."""
        v = as_vector(embedding, dtype=np.float32)
        if v.shape[0] == self.hot_dimension:
            compact = normalize_vector(v)
        else:
            compact = truncate_and_normalize(v, self.hot_dimension)
        self._entries[id] = HotIndexEntry(id=id, embedding=compact, metadata=dict(metadata or {}))
        self._matrix = None

    def remove_from_hot_index(self, id: str) -> bool:
        if self._entries.pop(id, None) is None:
            return False
        self._cold_ids.discard(id)
        self._matrix = None
        return True

    def clear(self) -> None:
        self._entries.clear()
        self._cold_ids.clear()
        self._matrix = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, id: str) -> bool:
        return id in self._entries

    def set_full_embedding_provider(self, provider: Optional[FullEmbeddingProvider]) -> None:
        self._provider = provider

    def _hot_matrix(self) -> np.ndarray:
        if self._matrix is None:
            self._ids = list(self._entries)
            if self._ids:
                self._matrix = np.vstack([self._entries[i].embedding for i in self._ids])
            else:
                self._matrix = np.zeros((0, self.hot_dimension), dtype=np.float32)
        return self._matrix

    def _phase1_query(self, query: np.ndarray) -> np.ndarray:
        if query.shape[0] == self.hot_dimension:
            return query
        if query.shape[0] < self.hot_dimension:
            raise DimensionMismatchError(self.hot_dimension, query.shape[0], "two_phase_search")
        return truncate_embedding(query, self.hot_dimension)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: VectorLike,
        top_k: int = 10,
        candidate_pool_size: Optional[int] = None,
        namespace: Optional[str] = None,
        type: Optional[str] = None,
        merge_mode: bool = False,
    ) -> List[SearchResult]:
        """
        Return up to ``top_k`` results, best first.

        With ``merge_mode`` the phase-1 and phase-2 result sets are combined
        through combine_tiered_results, so every result is tagged ``hot``
        (approximate score) or ``cold`` (full-precision score).
        """
        if top_k <= 0 or not self._entries:
            return []

        q = as_vector(query, dtype=np.float32)
        phase1_start = time.perf_counter()
        matrix = self._hot_matrix()
        scores = cosine_scores(self._phase1_query(q), matrix)

        eligible = np.arange(len(self._ids))
        if namespace is not None or type is not None:
            eligible = np.array([
                i for i, item_id in enumerate(self._ids)
                if (namespace is None or self._entries[item_id].metadata.get("ns") == namespace)
                and (type is None or self._entries[item_id].metadata.get("type") == type)
            ], dtype=np.int64)
        if eligible.size == 0:
            self._record_timing(time.perf_counter() - phase1_start, 0.0)
            return []

        pool_size = max(top_k, candidate_pool_size if candidate_pool_size is not None else self.candidate_pool_size)
        pool_size = min(pool_size, eligible.size)
        ranked = eligible[np.argsort(-scores[eligible], kind="stable")][:pool_size]
        phase1 = [
            SearchResult(
                id=self._ids[i],
                score=float(scores[i]),
                metadata=dict(self._entries[self._ids[i]].metadata),
            )
            for i in ranked
        ]
        phase1_elapsed = time.perf_counter() - phase1_start

        phase2_start = time.perf_counter()
        reranked: List[SearchResult] = []
        if self._provider is not None and q.shape[0] != self.hot_dimension:
            reranked = await self._rerank(q, phase1)
        phase2_elapsed = time.perf_counter() - phase2_start if self._provider is not None else 0.0
        self._record_timing(phase1_elapsed, phase2_elapsed)

        if merge_mode:
            return combine_tiered_results(phase1, reranked, top_k, prefer_cold_similarity=True)

        if not reranked:
            return phase1[:top_k]
        precise = {r.id: r for r in reranked}
        final = [precise.get(r.id, r) for r in phase1]
        final.sort(key=lambda r: r.score, reverse=True)
        return final[:top_k]

    async def _rerank(self, query: np.ndarray, candidates: Sequence[SearchResult]) -> List[SearchResult]:
        ids = [c.id for c in candidates]
        full = await self._provider(ids)
        reranked: List[SearchResult] = []
        for candidate in candidates:
            embedding = full.get(candidate.id)
            if embedding is None:
                continue
            vec = as_vector(embedding, dtype=np.float32)
            if vec.shape[0] != query.shape[0]:
                logger.debug(
                    f"Full embedding for {candidate.id} has {vec.shape[0]} dims, query has {query.shape[0]}; "
                    f"keeping phase-1 score"
                )
                continue
            self._cold_ids.add(candidate.id)
            score = float(cosine_scores(query, vec[None, :])[0])
            reranked.append(SearchResult(candidate.id, score, candidate.metadata))
        return reranked

    def _record_timing(self, phase1_s: float, phase2_s: float) -> None:
        self._total_searches += 1
        self._phase1_ms += phase1_s * 1000
        self._phase2_ms += phase2_s * 1000

    def get_stats(self) -> Dict[str, Any]:
        searches = self._total_searches
        return {
            "hot_index_size": len(self._entries),
            "cold_index_size": len(self._cold_ids),
            "average_phase1_time_ms": self._phase1_ms / searches if searches else 0.0,
            "average_phase2_time_ms": self._phase2_ms / searches if searches else 0.0,
            "total_searches": searches,
        }


__all__ = ["FullEmbeddingProvider", "HotIndexEntry", "TwoPhaseSearch"]
