"""Turns local files into text documents ready for chunking."""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from edge_agent.types import ParsedDocument

_FRONT_MATTER = re.compile(r"\A---\n.*?\n---\n", flags=re.DOTALL)


class Parser(ABC):
    """Base parser interface used by the retrieval pipeline."""

    extensions: tuple[str, ...] = ()

    @abstractmethod
    def parse(self, path: Path, *, doc_id: str | None = None) -> ParsedDocument:
        """Parse a file into normalized text + metadata."""


class PlainTextParser(Parser):
    extensions = (".txt", ".log")
    format_name = "text"

    def parse(self, path: Path, *, doc_id: str | None = None) -> ParsedDocument:
        return ParsedDocument(
            doc_id=doc_id or path.stem,
            text=self._clean(path.read_text(encoding="utf-8")),
            metadata={"source": str(path), "format": self.format_name},
        )

    def _clean(self, text: str) -> str:
        return text


class MarkdownParser(PlainTextParser):
    """Markdown is indexed as text with YAML front matter removed."""

    extensions = (".md", ".markdown")
    format_name = "markdown"

    def _clean(self, text: str) -> str:
        return _FRONT_MATTER.sub("", text, count=1)


class JsonParser(Parser):
    """Flattens JSON into ``path: value`` lines so leaf values embed well."""

    extensions = (".json",)

    def parse(self, path: Path, *, doc_id: str | None = None) -> ParsedDocument:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
        lines = [f"{key}: {value}" if key else str(value) for key, value in _flatten(payload)]
        return ParsedDocument(
            doc_id=doc_id or path.stem,
            text="\n".join(lines),
            metadata={"source": str(path), "format": "json"},
        )


class ParserRegistry:
    """Maps file extension to parser implementation."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers or [PlainTextParser(), MarkdownParser(), JsonParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def parse_path(self, path: str | Path, *, doc_id: str | None = None) -> ParsedDocument:
        file_path = Path(path)
        parser = self._parsers.get(file_path.suffix.lower())
        if parser is None:
            raise ValueError(f"No parser registered for extension: {file_path.suffix}")
        return parser.parse(file_path, doc_id=doc_id)


def _flatten(value: Any, prefix: str = "") -> list[tuple[str, Any]]:
    if isinstance(value, dict):
        items: list[tuple[str, Any]] = []
        for key in sorted(value):
            items.extend(_flatten(value[key], f"{prefix}.{key}" if prefix else str(key)))
        return items
    if isinstance(value, list):
        items = []
        for index, item in enumerate(value):
            items.extend(_flatten(item, f"{prefix}[{index}]"))
        return items
    return [(prefix, value)]
