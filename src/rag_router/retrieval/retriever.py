"""Hybrid vector + keyword retriever."""

from __future__ import annotations

import asyncio
import logging

from rag_router.config import RetrievalConfig, RetrievalOptions
from rag_router.errors import RetrievalError
from rag_router.ingest.embedder import Embedder
from rag_router.retrieval.fusion import (
    Reranker,
    fit_to_token_budget,
    maximal_marginal_relevance,
    rrf_fuse,
)
from rag_router.retrieval.lexical import LexicalIndex
from rag_router.retrieval.vector_store import VectorIndex
from rag_router.types import Chunk, RetrievalMetrics, RetrievalResult

logger = logging.getLogger(__name__)


class HybridRetriever:
    """Combines vector similarity and BM25 with RRF, then diversifies and packs.

    In hybrid mode each route is oversampled to `2 * top_k` candidates before
    fusion so chunks ranked moderately by both routes can still surface.
    """

    def __init__(
        self,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
        embedder: Embedder,
        config: RetrievalConfig | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self.vector_index = vector_index
        self.lexical_index = lexical_index
        self.embedder = embedder
        self.config = config or RetrievalConfig()
        self.reranker = reranker

    async def retrieve(self, query: str, options: RetrievalOptions | None = None) -> RetrievalResult:
        options = options or self.config.default_options()
        metrics = RetrievalMetrics()

        if options.hybrid_search:
            candidate_k = options.top_k * 2
            vector_hits, lexical_hits = await asyncio.gather(
                self._vector_search(query, candidate_k, options),
                asyncio.to_thread(self.lexical_index.retrieve, query, candidate_k, options.filters or None),
            )
            metrics.vector_count = len(vector_hits)
            metrics.lexical_count = len(lexical_hits)
            candidates = rrf_fuse(
                [(vector_hits, options.vector_weight), (lexical_hits, options.keyword_weight)],
                k=self.config.rrf_k,
            )
        else:
            candidates = await self._vector_search(query, options.top_k, options)
            metrics.vector_count = len(candidates)

        if options.rerank and self.reranker is not None and candidates:
            candidates = await self.reranker.rerank(query, candidates)
            metrics.reranked = True

        if 0.0 < options.diversity_penalty < 1.0:
            selected = maximal_marginal_relevance(candidates, options.diversity_penalty, options.top_k)
            metrics.diversity_applied = True
        else:
            selected = candidates[: options.top_k]

        packed, total_tokens = fit_to_token_budget(selected, options.max_tokens)
        logger.debug(
            "Retrieved %s chunks (%s tokens) from %s vector / %s lexical candidates",
            len(packed),
            total_tokens,
            metrics.vector_count,
            metrics.lexical_count,
        )
        return RetrievalResult(chunks=packed, total_estimated_tokens=total_tokens, metrics=metrics)

    async def _vector_search(self, query: str, top_k: int, options: RetrievalOptions) -> list[Chunk]:
        try:
            vector = await self.embedder.aembed_query(query)
        except Exception as exc:
            raise RetrievalError(f"Embedding failed: {exc}") from exc
        try:
            return await self.vector_index.query(vector, top_k, options.filters or None)
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc
