"""Fixed-window and declaration-boundary chunking."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from rag_router.config import ChunkingConfig
from rag_router.types import Chunk, ChunkMetadata, ParsedDocument

CODE_LANGUAGES = frozenset({"python", "typescript", "javascript"})

_BOUNDARY_PATTERNS: dict[str, re.Pattern[str]] = {
    "export": re.compile(r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:function|class|const|interface)\b"),
    "class": re.compile(r"^\s*(?:abstract\s+)?class\s+\w+"),
    "interface": re.compile(r"^\s*interface\s+\w+"),
    "method": re.compile(
        r"^[ \t]+(?:async\s+)?def\s+\w+\s*\("
        r"|^[ \t]+(?!(?:if|for|while|switch|catch|return|function)\b)"
        r"(?:(?:public|private|protected|static|async|get|set)\s+)*\w+\s*\([^)]*\)\s*(?::\s*[^{]+)?\{\s*$"
    ),
    "function": re.compile(
        r"^\s*(?:async\s+)?(?:def|function\*?)\s+\w+\s*\("
        r"|^\s*(?:const|let|var)\s+\w+\s*[=(]"
    ),
}
_DECORATOR = re.compile(r"^\s*@[\w.]+")


@dataclass(slots=True)
class _Buffer:
    start_line: int
    unit_type: str
    lines: list[str] = field(default_factory=list)


class DocumentChunker:
    """Splits text into retrievable chunks.

    Two strategies are available. `chunk_fixed` slides a character window
    with overlap and works for any text. `chunk_by_boundary` cuts source code
    at declaration lines so each chunk holds one logical unit; it is a
    line-oriented heuristic, not a parser.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk_document(self, document: ParsedDocument) -> list[Chunk]:
        """Chunk a parsed document using the strategy suited to its language.

        Code is cut at declaration boundaries first; any unit longer than
        `max_chunk_size` characters is then re-windowed with the fixed
        strategy so every chunk respects the size bound.
        """
        if document.language not in CODE_LANGUAGES:
            return self.chunk_fixed(
                document.text,
                self.config.max_chunk_size,
                self.config.overlap,
                source_path=document.source_path,
                language=document.language,
                extra=document.metadata,
            )

        units = self.chunk_by_boundary(
            document.text,
            self.config.boundary_kinds,
            source_path=document.source_path,
            language=document.language,
            extra=document.metadata,
        )
        output: list[Chunk] = []
        for unit in units:
            if len(unit.content) <= self.config.max_chunk_size:
                output.append(unit)
                continue
            windows = self.chunk_fixed(
                unit.content,
                self.config.max_chunk_size,
                self.config.overlap,
                source_path=document.source_path,
                language=document.language,
                extra=document.metadata,
            )
            for window in windows:
                output.append(
                    Chunk(
                        id=window.id,
                        content=window.content,
                        metadata=ChunkMetadata(
                            source_path=document.source_path,
                            language=document.language,
                            start_line=unit.metadata.start_line + window.metadata.start_line,
                            end_line=unit.metadata.start_line + window.metadata.end_line,
                            unit_type=unit.metadata.unit_type,
                            extra=dict(document.metadata),
                        ),
                    )
                )
        return [
            Chunk(id=_chunk_id(document.source_path, index), content=chunk.content, metadata=chunk.metadata)
            for index, chunk in enumerate(output)
        ]

    def chunk_fixed(
        self,
        text: str,
        max_size: int,
        overlap: int,
        *,
        source_path: str = "",
        language: str = "text",
        extra: dict[str, object] | None = None,
    ) -> list[Chunk]:
        """Slide a `max_size` character window across `text`.

        Each window after the first starts `overlap` characters before the
        end of the previous one. The last window ends exactly at the end of
        the text.
        """
        if max_size < 1:
            raise ValueError("max_size must be positive")
        if overlap < 0 or overlap >= max_size:
            raise ValueError("overlap must be in [0, max_size)")
        if not text:
            return []

        chunks: list[Chunk] = []
        start = 0
        while True:
            end = min(start + max_size, len(text))
            chunks.append(
                Chunk(
                    id=_chunk_id(source_path, len(chunks)),
                    content=text[start:end],
                    metadata=ChunkMetadata(
                        source_path=source_path,
                        language=language,
                        start_line=text.count("\n", 0, start),
                        end_line=text.count("\n", 0, end - 1),
                        unit_type="window",
                        extra={**(extra or {}), "start_index": start, "end_index": end},
                    ),
                )
            )
            if end >= len(text):
                break
            start = end - overlap
        return chunks

    def chunk_by_boundary(
        self,
        text: str,
        boundary_kinds: tuple[str, ...] | list[str] = ("function", "class"),
        *,
        source_path: str = "",
        language: str = "text",
        extra: dict[str, object] | None = None,
    ) -> list[Chunk]:
        """Cut `text` at lines that open a declaration of one of `boundary_kinds`.

        Joining the chunk contents with newlines reproduces `text` exactly.
        Decorator lines directly above a declaration travel with it.
        """
        unknown = [kind for kind in boundary_kinds if kind not in _BOUNDARY_PATTERNS]
        if unknown:
            raise ValueError(f"Unknown boundary kinds: {unknown}")
        if not text:
            return []

        patterns = [(kind, _BOUNDARY_PATTERNS[kind]) for kind in _BOUNDARY_PATTERNS if kind in boundary_kinds]
        chunks: list[Chunk] = []
        buffer = _Buffer(start_line=0, unit_type="code")
        pending: list[str] = []

        for line in text.split("\n"):
            if _DECORATOR.match(line):
                pending.append(line)
                continue

            kind = next((name for name, pattern in patterns if pattern.match(line)), None)
            if kind is None:
                buffer.lines.extend(pending)
                buffer.lines.append(line)
                pending = []
                continue

            next_start = buffer.start_line + len(buffer.lines)
            if buffer.lines:
                chunks.append(self._flush(buffer, len(chunks), source_path, language, extra))
            buffer = _Buffer(start_line=next_start, unit_type=kind, lines=[*pending, line])
            pending = []

        buffer.lines.extend(pending)
        if buffer.lines:
            chunks.append(self._flush(buffer, len(chunks), source_path, language, extra))
        return chunks

    @staticmethod
    def _flush(
        buffer: _Buffer,
        index: int,
        source_path: str,
        language: str,
        extra: dict[str, object] | None,
    ) -> Chunk:
        return Chunk(
            id=_chunk_id(source_path, index),
            content="\n".join(buffer.lines),
            metadata=ChunkMetadata(
                source_path=source_path,
                language=language,
                start_line=buffer.start_line,
                end_line=buffer.start_line + len(buffer.lines) - 1,
                unit_type=buffer.unit_type,
                extra=dict(extra or {}),
            ),
        )


def _chunk_id(source_path: str, index: int) -> str:
    return f"{source_path or 'inline'}#chunk-{index:04d}"
