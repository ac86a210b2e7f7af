"""Shared domain models."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from rag_router.tokens import estimate_tokens


class TaskType(str, Enum):
    """Kinds of generation work a caller can route."""

    CODE_GENERATION = "code-generation"
    REFACTORING = "refactoring"
    TESTING = "testing"
    DEBUGGING = "debugging"
    DOCUMENTATION = "documentation"
    CODE_REVIEW = "code-review"
    COMPLEX_REASONING = "complex-reasoning"
    TRANSLATION = "translation"
    OPTIMIZATION = "optimization"


@dataclass(slots=True)
class ParsedDocument:
    """A parsed source document before chunking."""

    doc_id: str
    text: str
    source_path: str
    language: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ChunkMetadata:
    source_path: str
    language: str
    start_line: int
    end_line: int
    unit_type: str
    extra: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str) -> Any:
        if key in ("source_path", "language", "start_line", "end_line", "unit_type"):
            return getattr(self, key)
        return self.extra.get(key)


@dataclass(frozen=True, slots=True)
class Chunk:
    """A retrievable unit of text.

    Chunks are never mutated: scoring or attaching an embedding returns a
    copy, so one chunk can sit in several ranked lists at once.
    """

    id: str
    content: str
    metadata: ChunkMetadata
    embedding: tuple[float, ...] | None = None
    score: float | None = None

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.content)

    def with_score(self, score: float) -> Chunk:
        return replace(self, score=score)

    def with_embedding(self, embedding: Sequence[float]) -> Chunk:
        return replace(self, embedding=tuple(float(value) for value in embedding))


@dataclass(slots=True)
class RetrievalMetrics:
    vector_count: int = 0
    lexical_count: int = 0
    diversity_applied: bool = False
    reranked: bool = False


@dataclass(slots=True)
class RetrievalResult:
    """Ordered, budget-packed chunks for one query."""

    chunks: list[Chunk]
    total_estimated_tokens: int
    metrics: RetrievalMetrics = field(default_factory=RetrievalMetrics)

    @property
    def chunk_ids(self) -> list[str]:
        return [chunk.id for chunk in self.chunks]


@dataclass(frozen=True, slots=True)
class BackendDescriptor:
    """Static capability, cost and quota metadata for one generation backend."""

    id: str
    provider: str
    model_name: str
    max_output_tokens: int
    context_window_tokens: int
    cost_multiplier: float
    rate_limit_per_minute: int
    priority: int
    capabilities: frozenset[TaskType] = frozenset()

    def __post_init__(self) -> None:
        if self.rate_limit_per_minute < 1:
            raise ValueError(f"rate_limit_per_minute must be >= 1 for {self.id}")
        if self.max_output_tokens < 1 or self.context_window_tokens < 1:
            raise ValueError(f"token limits must be positive for {self.id}")


def metadata_matches(metadata: ChunkMetadata, filters: dict[str, Any] | None) -> bool:
    if not filters:
        return True
    for key, value in filters.items():
        if metadata.get(key) != value:
            return False
    return True
