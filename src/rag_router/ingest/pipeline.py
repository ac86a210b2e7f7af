"""End-to-end ingest pipeline: parse -> chunk -> embed -> index."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from rag_router.ingest.chunker import DocumentChunker
from rag_router.ingest.embedder import Embedder
from rag_router.ingest.parser import ParserRegistry
from rag_router.retrieval.lexical import LexicalIndex
from rag_router.retrieval.vector_store import VectorIndex
from rag_router.types import Chunk, ParsedDocument

logger = logging.getLogger(__name__)


class IngestPipeline:
    """Coordinates parser, chunker, embedder and both indexes.

    Every chunk lands in the vector index and the lexical index, so hybrid
    retrieval always sees the same corpus on both routes.
    """

    def __init__(
        self,
        parser_registry: ParserRegistry,
        chunker: DocumentChunker,
        embedder: Embedder,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
    ) -> None:
        self._parser_registry = parser_registry
        self._chunker = chunker
        self._embedder = embedder
        self._vector_index = vector_index
        self._lexical_index = lexical_index

    async def ingest_path(
        self,
        path: str | Path,
        *,
        doc_id: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        """Ingest a single source file and return created chunks."""
        parsed = self._parser_registry.parse_path(path, doc_id=doc_id)
        return await self._index_document(parsed, extra_metadata)

    async def ingest_text(
        self,
        text: str,
        *,
        source_path: str,
        doc_id: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> list[Chunk]:
        """Ingest in-memory source; `source_path` selects the parser."""
        parsed = self._parser_registry.parse_text(text, source_path=source_path, doc_id=doc_id)
        return await self._index_document(parsed, extra_metadata)

    async def ingest_many(self, paths: list[str | Path]) -> list[Chunk]:
        all_chunks: list[Chunk] = []
        for path in paths:
            all_chunks.extend(await self.ingest_path(path))
        return all_chunks

    async def _index_document(
        self, parsed: ParsedDocument, extra_metadata: dict[str, Any] | None
    ) -> list[Chunk]:
        parsed.metadata["doc_id"] = parsed.doc_id
        if extra_metadata:
            parsed.metadata.update(extra_metadata)

        chunks = self._chunker.chunk_document(parsed)
        if not chunks:
            logger.info("No content to index in %s", parsed.source_path)
            return []

        vectors = await self._embedder.aembed_documents([chunk.content for chunk in chunks])
        await self._vector_index.upsert(chunks, vectors)
        self._lexical_index.add(chunks)
        logger.info("Indexed %s chunks from %s (%s)", len(chunks), parsed.source_path, parsed.language)
        return chunks
