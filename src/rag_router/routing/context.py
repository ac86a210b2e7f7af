"""Rendering retrieved chunks into the generation prompt."""

from __future__ import annotations

from collections.abc import Sequence

from rag_router.types import Chunk


def _label(chunk: Chunk) -> str:
    meta = chunk.metadata
    source = meta.source_path or chunk.id
    return f"{source} (lines {meta.start_line + 1}-{meta.end_line + 1}, {meta.unit_type})"


def compose_prompt(prompt: str, chunks: Sequence[Chunk]) -> str:
    """Prepend retrieved chunks to `prompt` as fenced, source-labelled blocks.

    With no chunks the prompt is returned unchanged.
    """
    if not chunks:
        return prompt
    blocks = []
    for chunk in chunks:
        language = chunk.metadata.language if chunk.metadata.language not in ("text", "code") else ""
        blocks.append(f"Source: {_label(chunk)}\n```{language}\n{chunk.content}\n```")
    context = "\n\n".join(blocks)
    return f"Relevant context:\n\n{context}\n\nTask:\n{prompt}"
