"""Vector index contract and an in-memory reference implementation."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from math import sqrt
from typing import Any, Protocol

from rag_router.types import Chunk, metadata_matches


class VectorIndex(Protocol):
    """Minimal vector index contract used by retrieval.

    Production deployments back this with an external vector database;
    `query` must return chunks ranked best-first with `score` set.
    """

    async def upsert(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> None:
        """Insert or replace chunk vectors by chunk id."""

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        """Return the `top_k` nearest chunks."""

    def all_chunks(self, filters: dict[str, Any] | None = None) -> list[Chunk]:
        """Return every stored chunk matching `filters`."""


class InMemoryVectorIndex:
    """Brute-force cosine index for tests and local prototyping."""

    def __init__(self) -> None:
        self._store: dict[str, Chunk] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._store)

    async def upsert(self, chunks: Sequence[Chunk], vectors: Sequence[Sequence[float]]) -> None:
        if len(chunks) != len(vectors):
            raise ValueError("chunks and vectors must have the same length")
        with self._lock:
            for chunk, vector in zip(chunks, vectors, strict=True):
                self._store[chunk.id] = chunk.with_embedding(vector)

    async def query(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        if top_k <= 0:
            return []
        candidates = self.all_chunks(filters)
        scored = [
            chunk.with_score(cosine_similarity(vector, chunk.embedding or ()))
            for chunk in candidates
        ]
        scored.sort(key=lambda chunk: chunk.score or 0.0, reverse=True)
        return scored[:top_k]

    def all_chunks(self, filters: dict[str, Any] | None = None) -> list[Chunk]:
        with self._lock:
            stored = list(self._store.values())
        return [chunk for chunk in stored if metadata_matches(chunk.metadata, filters)]

    def remove(self, chunk_ids: Sequence[str]) -> int:
        with self._lock:
            removed = [self._store.pop(chunk_id) for chunk_id in chunk_ids if chunk_id in self._store]
        return len(removed)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between `a` and `b`; 0.0 for empty or mismatched vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0
    numerator = sum(x * y for x, y in zip(a, b, strict=True))
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return numerator / (norm_a * norm_b)
