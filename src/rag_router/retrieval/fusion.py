"""Rank fusion, diversity selection and token-budget packing."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from rag_router.retrieval.lexical import tokenize
from rag_router.retrieval.vector_store import cosine_similarity
from rag_router.types import Chunk


class Reranker(ABC):
    """Optional reordering hook applied to fused candidates."""

    @abstractmethod
    async def rerank(self, query: str, candidates: list[Chunk]) -> list[Chunk]:
        """Return candidates in the final ranking order."""


class KeywordOverlapReranker(Reranker):
    """Lightweight reranker blending fused score with query-term overlap."""

    def __init__(self, overlap_weight: float = 0.2) -> None:
        if not 0.0 <= overlap_weight <= 1.0:
            raise ValueError("overlap_weight must be within [0, 1]")
        self.overlap_weight = overlap_weight

    async def rerank(self, query: str, candidates: list[Chunk]) -> list[Chunk]:
        query_terms = set(tokenize(query))
        top = max((chunk.score or 0.0 for chunk in candidates), default=0.0) or 1.0
        rescored: list[Chunk] = []
        for chunk in candidates:
            overlap = len(query_terms & set(tokenize(chunk.content))) / max(1, len(query_terms))
            blended = (chunk.score or 0.0) / top * (1 - self.overlap_weight) + overlap * self.overlap_weight
            rescored.append(chunk.with_score(blended))
        return sorted(rescored, key=lambda chunk: chunk.score or 0.0, reverse=True)


def rrf_fuse(ranked_lists: Sequence[tuple[Sequence[Chunk], float]], k: int = 60) -> list[Chunk]:
    """Reciprocal rank fusion of weighted ranked lists.

    Each chunk gains `weight / (k + rank + 1)` from every list it appears in
    (`rank` is 0-based). Chunks are merged by id and returned by fused score,
    ties in first-seen order. When the same id appears with and without an
    embedding, the embedded copy is kept so diversity can compare it.
    """
    scores: dict[str, float] = {}
    instances: dict[str, Chunk] = {}
    for chunks, weight in ranked_lists:
        for rank, chunk in enumerate(chunks):
            scores[chunk.id] = scores.get(chunk.id, 0.0) + weight / (k + rank + 1)
            current = instances.get(chunk.id)
            if current is None or (current.embedding is None and chunk.embedding is not None):
                instances[chunk.id] = chunk

    fused = [instances[chunk_id].with_score(score) for chunk_id, score in scores.items()]
    fused.sort(key=lambda chunk: chunk.score or 0.0, reverse=True)
    return fused


def maximal_marginal_relevance(candidates: Sequence[Chunk], lambda_: float, top_k: int) -> list[Chunk]:
    """Greedy MMR selection.

    Relevance is each candidate's score divided by the best score, so it is
    comparable with cosine similarity. The first pick is always the top
    candidate; each next pick maximises
    `lambda_ * relevance - (1 - lambda_) * max_similarity_to_selected`.
    """
    if not candidates or top_k <= 0:
        return []
    best = max(chunk.score or 0.0 for chunk in candidates)
    relevance = {chunk.id: ((chunk.score or 0.0) / best if best > 0 else 0.0) for chunk in candidates}

    selected: list[Chunk] = [candidates[0]]
    remaining = list(candidates[1:])
    while remaining and len(selected) < top_k:
        best_index = 0
        best_value = float("-inf")
        for index, candidate in enumerate(remaining):
            redundancy = max(_similarity(candidate, chosen) for chosen in selected)
            value = lambda_ * relevance[candidate.id] - (1 - lambda_) * redundancy
            if value > best_value:
                best_value = value
                best_index = index
        selected.append(remaining.pop(best_index))
    return selected


def fit_to_token_budget(chunks: Sequence[Chunk], max_tokens: int) -> tuple[list[Chunk], int]:
    """Keep the longest prefix of `chunks` whose estimated tokens fit `max_tokens`."""
    packed: list[Chunk] = []
    total = 0
    for chunk in chunks:
        cost = chunk.token_count
        if total + cost > max_tokens:
            break
        packed.append(chunk)
        total += cost
    return packed, total


def _similarity(a: Chunk, b: Chunk) -> float:
    if a.embedding is None or b.embedding is None:
        return 0.0
    return cosine_similarity(a.embedding, b.embedding)
