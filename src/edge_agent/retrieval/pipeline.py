"""Ingest and query paths: chunk -> embed -> index, and query -> top-k."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from edge_agent.engine.handle import ModelHandle, ModelRegistry, ModelRole
from edge_agent.errors import EmbeddingError
from edge_agent.ingest.chunker import SlidingWindowChunker, document_id_for
from edge_agent.ingest.parser import ParserRegistry
from edge_agent.retrieval.index import EmbeddingIndex
from edge_agent.types import (
    ChunkFailure,
    EmbeddingRecord,
    IngestReport,
    ParsedDocument,
    ScoredChunk,
)

logger = structlog.get_logger(__name__)


class RetrievalPipeline:
    """Coordinates chunker, embedding model and index.

    Ingestion tolerates per-chunk embedding failures: the chunk is skipped
    and reported, the rest of the document is still indexed. At query time
    an embedding failure propagates as ``EmbeddingError``, whatever the
    engine raised.
    """

    def __init__(
        self,
        chunker: SlidingWindowChunker,
        models: ModelRegistry,
        index: EmbeddingIndex,
        parser_registry: ParserRegistry | None = None,
    ) -> None:
        self.chunker = chunker
        self.models = models
        self.index = index
        self._parser_registry = parser_registry or ParserRegistry()

    async def ingest(
        self,
        text: str,
        metadata: dict[str, Any] | None = None,
        *,
        doc_id: str | None = None,
    ) -> IngestReport:
        document = ParsedDocument(
            doc_id=doc_id or document_id_for(text),
            text=text,
            metadata=dict(metadata or {}),
        )
        return await self._ingest_document(document)

    async def ingest_path(
        self,
        path: str | Path,
        *,
        doc_id: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> IngestReport:
        """Parse a single source file and ingest its text."""

        parsed = self._parser_registry.parse_path(path, doc_id=doc_id)
        if extra_metadata:
            parsed.metadata.update(extra_metadata)
        return await self._ingest_document(parsed)

    async def retrieve(
        self,
        query: str,
        k: int,
        *,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        if k <= 0 or len(self.index) == 0:
            return []
        embedder = await self._embedder()
        vector = await embedder.embed(query)
        return await self.index.search(vector, k, metadata_filter=metadata_filter)

    async def _ingest_document(self, document: ParsedDocument) -> IngestReport:
        report = IngestReport()
        embedder = await self._embedder()
        for chunk in self.chunker.chunk_document(document):
            try:
                vector = await embedder.embed(chunk.text)
            except EmbeddingError as exc:
                logger.warning(
                    "chunk_embedding_failed", chunk_id=chunk.chunk_id, error=str(exc)
                )
                report.failures.append(ChunkFailure(chunk_id=chunk.chunk_id, error=str(exc)))
                continue
            await self.index.insert(EmbeddingRecord.from_chunk(chunk, vector))
            report.inserted_count += 1
            report.chunk_ids.append(chunk.chunk_id)

        logger.info(
            "document_ingested",
            doc_id=document.doc_id,
            inserted=report.inserted_count,
            failed=len(report.failures),
        )
        return report

    async def _embedder(self) -> ModelHandle:
        return await self.models.get(ModelRole.EMBEDDING)
