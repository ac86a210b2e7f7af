"""Configuration models for retrieval and routing."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, model_validator

BOUNDARY_KINDS = ("function", "class", "export", "interface", "method")


class ChunkingConfig(BaseModel):
    """Configures fixed-window and boundary chunking."""

    max_chunk_size: int = Field(default=500, ge=1)
    overlap: int = Field(default=50, ge=0)
    boundary_kinds: tuple[str, ...] = ("function", "class", "export")

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        if self.overlap >= self.max_chunk_size:
            raise ValueError("overlap must be less than max_chunk_size")
        unknown = set(self.boundary_kinds) - set(BOUNDARY_KINDS)
        if unknown:
            raise ValueError(f"Unknown boundary kinds: {sorted(unknown)}")
        return self


class RetrievalOptions(BaseModel):
    """Per-query retrieval knobs."""

    top_k: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=4000, ge=0)
    hybrid_search: bool = True
    vector_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    diversity_penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    rerank: bool = False
    filters: dict[str, Any] = Field(default_factory=dict)


class RetrievalConfig(BaseModel):
    """Configures lexical scoring, fusion and default query options."""

    top_k: int = Field(default=10, ge=1)
    max_tokens: int = Field(default=4000, ge=0)
    hybrid_search: bool = True
    vector_weight: float = Field(default=0.7, ge=0.0)
    keyword_weight: float = Field(default=0.3, ge=0.0)
    diversity_penalty: float = Field(default=0.5, ge=0.0, le=1.0)
    rerank: bool = False
    rrf_k: int = Field(default=60, ge=1)
    bm25_k1: float = Field(default=1.5, gt=0.0)
    bm25_b: float = Field(default=0.75, ge=0.0, le=1.0)
    avg_doc_length: float | None = Field(default=None, gt=0.0)

    def default_options(self, **overrides: Any) -> RetrievalOptions:
        values = {
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
            "hybrid_search": self.hybrid_search,
            "vector_weight": self.vector_weight,
            "keyword_weight": self.keyword_weight,
            "diversity_penalty": self.diversity_penalty,
            "rerank": self.rerank,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return RetrievalOptions(**values)


class RouterConfig(BaseModel):
    """Configures circuit breaking, rate windows, caching and health probes."""

    failure_threshold: int = Field(default=5, ge=1)
    cooldown_seconds: float = Field(default=60.0, gt=0.0)
    rate_window_seconds: float = Field(default=60.0, gt=0.0)
    cache_enabled: bool = True
    cache_ttl_seconds: float = Field(default=3600.0, gt=0.0)
    cache_key_chars: int = Field(default=100, ge=1)
    attempt_timeout_seconds: float = Field(default=60.0, gt=0.0)
    health_check_interval_seconds: float = Field(default=30.0, gt=0.0)
    health_probe_timeout_seconds: float = Field(default=10.0, gt=0.0)
    degrade_on_retrieval_error: bool = False
