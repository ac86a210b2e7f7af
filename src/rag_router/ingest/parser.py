"""Source parsers with extension-based language detection."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from rag_router.types import ParsedDocument


class Parser(ABC):
    """Base parser interface used by the ingest pipeline."""

    extensions: tuple[str, ...] = ()
    language: str = "text"

    def parse(self, path: Path, *, doc_id: str | None = None) -> ParsedDocument:
        """Parse a file into normalized text + metadata."""
        return self.parse_text(path.read_text(encoding="utf-8"), source_path=str(path), doc_id=doc_id or path.stem)

    def language_for(self, source_path: str) -> str:
        return self.language

    @abstractmethod
    def parse_text(self, text: str, *, source_path: str, doc_id: str) -> ParsedDocument:
        """Normalize already-loaded text."""


class TextParser(Parser):
    extensions = (".txt", ".log", ".rst")

    def parse_text(self, text: str, *, source_path: str, doc_id: str) -> ParsedDocument:
        return ParsedDocument(
            doc_id=doc_id,
            text=text,
            source_path=source_path,
            language=self.language,
            metadata={"format": self.language},
        )


class MarkdownParser(TextParser):
    extensions = (".md", ".markdown")
    language = "markdown"


class SourceCodeParser(Parser):
    """Parser for source files; text is kept verbatim so line numbers hold."""

    _LANGUAGES = {
        ".py": "python",
        ".pyi": "python",
        ".ts": "typescript",
        ".tsx": "typescript",
        ".js": "javascript",
        ".jsx": "javascript",
        ".mjs": "javascript",
    }
    extensions = tuple(_LANGUAGES)
    language = "code"

    def language_for(self, source_path: str) -> str:
        return self._LANGUAGES.get(Path(source_path).suffix.lower(), self.language)

    def parse_text(self, text: str, *, source_path: str, doc_id: str) -> ParsedDocument:
        language = self.language_for(source_path)
        return ParsedDocument(
            doc_id=doc_id,
            text=text,
            source_path=source_path,
            language=language,
            metadata={"format": "code"},
        )


class JsonParser(Parser):
    """Parser for JSON documents with deterministic normalization."""

    extensions = (".json",)
    language = "json"

    def parse_text(self, text: str, *, source_path: str, doc_id: str) -> ParsedDocument:
        payload: Any = json.loads(text)
        if isinstance(payload, dict):
            normalized = json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2)
            metadata: dict[str, Any] = {"format": "json", "keys": sorted(payload.keys())}
        elif isinstance(payload, list):
            normalized = json.dumps(payload, ensure_ascii=False, indent=2)
            metadata = {"format": "json", "length": len(payload)}
        else:
            normalized = str(payload)
            metadata = {"format": "json"}
        return ParsedDocument(
            doc_id=doc_id,
            text=normalized,
            source_path=source_path,
            language=self.language,
            metadata=metadata,
        )


class ParserRegistry:
    """Maps file extension to parser implementation."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers or [TextParser(), MarkdownParser(), JsonParser(), SourceCodeParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def parser_for(self, source_path: str | Path) -> Parser:
        suffix = Path(source_path).suffix.lower()
        parser = self._parsers.get(suffix)
        if parser is None:
            raise ValueError(f"No parser registered for extension: {suffix}")
        return parser

    def detect_language(self, source_path: str | Path) -> str:
        return self.parser_for(source_path).language_for(str(source_path))

    def parse_path(self, path: str | Path, *, doc_id: str | None = None) -> ParsedDocument:
        file_path = Path(path)
        return self.parser_for(file_path).parse(file_path, doc_id=doc_id)

    def parse_text(self, text: str, *, source_path: str, doc_id: str | None = None) -> ParsedDocument:
        parser = self.parser_for(source_path)
        return parser.parse_text(text, source_path=source_path, doc_id=doc_id or Path(source_path).stem)
