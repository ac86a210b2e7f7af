"""Hybrid context retrieval and resilient generation routing."""

from .config import ChunkingConfig, RetrievalConfig, RetrievalOptions, RouterConfig
from .errors import (
    AllBackendsExhausted,
    BackendError,
    BackendRejected,
    BackendTimeout,
    RequestCancelled,
    RequestValidationError,
    RetrievalError,
    RouterError,
)
from .tokens import estimate_tokens
from .types import BackendDescriptor, Chunk, ChunkMetadata, RetrievalResult, TaskType

__all__ = [
    "AllBackendsExhausted",
    "BackendDescriptor",
    "BackendError",
    "BackendRejected",
    "BackendTimeout",
    "Chunk",
    "ChunkMetadata",
    "ChunkingConfig",
    "RequestCancelled",
    "RequestValidationError",
    "RetrievalConfig",
    "RetrievalError",
    "RetrievalOptions",
    "RetrievalResult",
    "RouterConfig",
    "RouterError",
    "TaskType",
    "estimate_tokens",
]
