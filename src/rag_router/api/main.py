"""FastAPI entrypoint for ingest, retrieval and routed generation."""

from __future__ import annotations

import logging
import os
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, model_validator

from rag_router.config import ChunkingConfig, RetrievalConfig, RouterConfig
from rag_router.errors import AllBackendsExhausted, RequestValidationError, RetrievalError
from rag_router.ingest.chunker import DocumentChunker
from rag_router.ingest.embedder import Embedder, HashingEmbedder, LangChainEmbedder
from rag_router.ingest.parser import ParserRegistry
from rag_router.ingest.pipeline import IngestPipeline
from rag_router.obs.logger import request_id_context, setup_logger
from rag_router.obs.usage import InMemoryUsageRecorder
from rag_router.retrieval.lexical import LexicalIndex
from rag_router.retrieval.retriever import HybridRetriever
from rag_router.retrieval.vector_store import InMemoryVectorIndex
from rag_router.routing.adapters import ChatModelAdapter, DeterministicAdapter
from rag_router.routing.catalog import ModelCatalog
from rag_router.routing.models import RouterRequest
from rag_router.routing.router import ResilientRouter

logger = logging.getLogger(__name__)


def _create_embedder() -> Embedder:
    model = os.getenv("OPENAI_EMBEDDING_MODEL")
    if not os.getenv("OPENAI_API_KEY") or not model:
        return HashingEmbedder()

    from langchain_openai import OpenAIEmbeddings

    return LangChainEmbedder(OpenAIEmbeddings(model=model))


def _register_adapters(catalog: ModelCatalog) -> str:
    """Attach an adapter to every backend we hold credentials for.

    Without any provider key every backend gets the offline adapter so the
    service stays usable locally; with a key only matching providers are
    wired and the rest are skipped at routing time.
    """
    if not os.getenv("OPENAI_API_KEY"):
        for backend in catalog.backends:
            catalog.register_adapter(backend.id, DeterministicAdapter(backend.id))
        return "offline"

    from langchain_openai import ChatOpenAI

    model_override = os.getenv("OPENAI_MODEL")
    for backend in catalog.backends:
        if backend.provider != "openai":
            continue
        chat_model = ChatOpenAI(model=model_override or backend.model_name, max_retries=0)
        catalog.register_adapter(backend.id, ChatModelAdapter(backend.id, chat_model))
    return "openai"


class IngestRequest(BaseModel):
    path: str | None = None
    text: str | None = None
    source_path: str | None = None
    doc_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_source(self) -> "IngestRequest":
        if self.path is None and (self.text is None or self.source_path is None):
            raise ValueError("Provide either path, or text together with source_path")
        return self


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=1, le=100)
    max_tokens: int | None = Field(default=None, ge=0)
    hybrid_search: bool | None = None
    diversity_penalty: float | None = Field(default=None, ge=0.0, le=1.0)
    rerank: bool | None = None
    filters: dict[str, Any] = Field(default_factory=dict)


_retrieval_config = RetrievalConfig()
_parser_registry = ParserRegistry()
_chunker = DocumentChunker(ChunkingConfig())
_embedder = _create_embedder()
_vector_index = InMemoryVectorIndex()
_lexical_index = LexicalIndex(
    k1=_retrieval_config.bm25_k1,
    b=_retrieval_config.bm25_b,
    avg_doc_length=_retrieval_config.avg_doc_length,
)
_ingest_pipeline = IngestPipeline(_parser_registry, _chunker, _embedder, _vector_index, _lexical_index)
_retriever = HybridRetriever(_vector_index, _lexical_index, _embedder, _retrieval_config)

_catalog = ModelCatalog()
_adapter_mode = _register_adapters(_catalog)
_usage = InMemoryUsageRecorder()
_router = ResilientRouter(_catalog, retriever=_retriever, usage_recorder=_usage, config=RouterConfig())


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    setup_logger("rag_router", os.getenv("RAG_ROUTER_LOG_LEVEL", "INFO"), os.getenv("RAG_ROUTER_LOG_FILE"))
    logger.info("Starting rag-router (adapters=%s)", _adapter_mode)
    async with _router:
        yield


app = FastAPI(title="RAG Router", version="0.1.0", lifespan=lifespan)


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "status": "ok",
        "adapter_mode": _adapter_mode,
        "indexed_chunks": len(_lexical_index),
        "backends": {backend_id: asdict(record) for backend_id, record in _router.health.snapshot().items()},
    }


@app.post("/ingest")
async def ingest(request: IngestRequest) -> dict[str, Any]:
    try:
        if request.path is not None:
            chunks = await _ingest_pipeline.ingest_path(
                request.path,
                doc_id=request.doc_id,
                extra_metadata=request.metadata,
            )
        else:
            chunks = await _ingest_pipeline.ingest_text(
                request.text or "",
                source_path=request.source_path or "",
                doc_id=request.doc_id,
                extra_metadata=request.metadata,
            )
    except (OSError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "chunks_created": len(chunks),
        "chunk_ids": [chunk.id for chunk in chunks],
    }


@app.post("/retrieve")
async def retrieve(request: RetrieveRequest) -> dict[str, Any]:
    options = _retrieval_config.default_options(
        top_k=request.top_k,
        max_tokens=request.max_tokens,
        hybrid_search=request.hybrid_search,
        diversity_penalty=request.diversity_penalty,
        rerank=request.rerank,
        filters=request.filters,
    )
    try:
        result = await _retriever.retrieve(request.query, options)
    except RetrievalError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return {
        "total_estimated_tokens": result.total_estimated_tokens,
        "metrics": asdict(result.metrics),
        "items": [
            {
                "chunk_id": chunk.id,
                "score": chunk.score,
                "content": chunk.content,
                "source_path": chunk.metadata.source_path,
                "language": chunk.metadata.language,
                "start_line": chunk.metadata.start_line,
                "end_line": chunk.metadata.end_line,
                "unit_type": chunk.metadata.unit_type,
            }
            for chunk in result.chunks
        ],
    }


@app.post("/generate")
async def generate(request: RouterRequest) -> dict[str, Any]:
    request_id_context.set(str(uuid.uuid4()))
    try:
        response = await _router.route(request)
    except RequestValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except RetrievalError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except AllBackendsExhausted as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return asdict(response)


@app.get("/usage")
def usage(limit: int = 20, user_id: str | None = None, session_id: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "items": [asdict(record) for record in _usage.list_recent(limit=limit)],
        "summary": _usage.summary(),
    }
    if user_id and session_id:
        payload["session_total"] = _usage.session_total(user_id, session_id)
    return payload


@app.get("/metrics")
def metrics() -> dict[str, Any]:
    return _router.snapshot()
