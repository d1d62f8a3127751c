"""Fixed sliding-window chunking implementation."""

from __future__ import annotations

import re
from hashlib import sha1

from edge_agent.config import ChunkingConfig
from edge_agent.types import Chunk, ParsedDocument

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


class SlidingWindowChunker:
    """Cuts documents into overlapping token windows.

    Windows hold ``window_tokens`` tokens and advance by
    ``window_tokens - overlap_tokens``, so the last ``overlap_tokens`` tokens
    of a chunk are repeated at the start of the next one. A span that is
    relevant to a query is therefore never only available split across a
    boundary, as long as it fits in the overlap.

    Chunk text is the exact slice of the source between the first and the
    last token of the window, so whitespace and punctuation survive
    unchanged. The same text and configuration always produce the same
    chunks and ids.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk_document(self, document: ParsedDocument) -> list[Chunk]:
        spans = [match.span() for match in _TOKEN_PATTERN.finditer(document.text)]
        if not spans:
            return []

        window = self.config.window_tokens
        stride = window - self.config.overlap_tokens
        chunks: list[Chunk] = []
        start = 0

        while start < len(spans):
            window_spans = spans[start : start + window]
            text = document.text[window_spans[0][0] : window_spans[-1][1]]
            index = len(chunks)
            chunks.append(
                Chunk(
                    chunk_id=f"{document.doc_id}-chunk-{index:04d}",
                    doc_id=document.doc_id,
                    text=text,
                    token_count=len(window_spans),
                    metadata={
                        **document.metadata,
                        "doc_id": document.doc_id,
                        "chunk_index": index,
                        "window_start": start,
                        "window_end": start + len(window_spans),
                    },
                )
            )
            if start + window >= len(spans):
                break
            start += stride

        return chunks

    @staticmethod
    def tokenize(text: str) -> list[str]:
        return _TOKEN_PATTERN.findall(text)


def document_id_for(text: str) -> str:
    """Stable short id for a document without an explicit one."""
    return f"doc-{sha1(text.encode('utf-8')).hexdigest()[:12]}"
