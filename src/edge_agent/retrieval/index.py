"""In-memory embedding index with exact nearest-neighbour search."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from math import sqrt
from typing import Any, Protocol

import structlog

from edge_agent.config import Metric
from edge_agent.errors import DimensionMismatchError
from edge_agent.retrieval.rwlock import AsyncReadWriteLock
from edge_agent.types import EmbeddingRecord, ScoredChunk

logger = structlog.get_logger(__name__)


class VectorBackend(Protocol):
    """Storage behind an index. Iteration must follow insertion order."""

    def add(self, record: EmbeddingRecord) -> None:
        """Append a new record."""

    def replace(self, record: EmbeddingRecord) -> None:
        """Swap the record with the same id, keeping its position."""

    def get(self, record_id: str) -> EmbeddingRecord | None:
        """Return a stored record by id."""

    def records(self) -> Iterator[EmbeddingRecord]:
        """Iterate records in insertion order."""

    def __len__(self) -> int:
        """Number of stored records."""


class InMemoryBackend:
    """Insertion-ordered dict storage."""

    def __init__(self) -> None:
        self._records: dict[str, EmbeddingRecord] = {}

    def add(self, record: EmbeddingRecord) -> None:
        self._records[record.record_id] = record

    def replace(self, record: EmbeddingRecord) -> None:
        self._records[record.record_id] = record

    def get(self, record_id: str) -> EmbeddingRecord | None:
        return self._records.get(record_id)

    def records(self) -> Iterator[EmbeddingRecord]:
        return iter(self._records.values())

    def __len__(self) -> int:
        return len(self._records)


class EmbeddingIndex:
    """Vector store keyed by record id.

    The first insert fixes the dimension; every later vector, stored or
    queried, must match it. Search is an exact scan ordered by score with
    ties resolved by insertion order, so results are stable across calls.
    Searches share the index, inserts are exclusive.
    """

    def __init__(
        self,
        metric: Metric | str = Metric.COSINE,
        backend: VectorBackend | None = None,
    ) -> None:
        self.metric = Metric(metric)
        self._backend = backend or InMemoryBackend()
        self._dimension: int | None = None
        self._lock = AsyncReadWriteLock()

    @property
    def dimension(self) -> int | None:
        return self._dimension

    def __len__(self) -> int:
        return len(self._backend)

    async def insert(self, record: EmbeddingRecord) -> None:
        async with self._lock.write():
            size = len(record.vector)
            if size == 0:
                raise DimensionMismatchError(self._dimension, 0)
            if self._dimension is None:
                self._dimension = size
                logger.debug("index_dimension_established", dimension=size)
            elif size != self._dimension:
                raise DimensionMismatchError(self._dimension, size)

            if self._backend.get(record.record_id) is None:
                self._backend.add(record)
            else:
                self._backend.replace(record)

    async def search(
        self,
        vector: Sequence[float],
        k: int,
        *,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        if k <= 0:
            return []
        async with self._lock.read():
            if self._dimension is None:
                return []
            if len(vector) != self._dimension:
                raise DimensionMismatchError(self._dimension, len(vector))

            score = _SCORERS[self.metric]
            scored = [
                (score(vector, record.vector), record)
                for record in self._backend.records()
                if _metadata_match(record.metadata, metadata_filter)
            ]

        # sorted() is stable under reverse=True: equal scores keep insertion order.
        ranked = sorted(scored, key=lambda item: item[0], reverse=True)
        return [
            ScoredChunk(chunk=record.chunk, score=value, rank=i + 1)
            for i, (value, record) in enumerate(ranked[:k])
        ]


def _metadata_match(
    metadata: dict[str, Any], metadata_filter: dict[str, Any] | None
) -> bool:
    if not metadata_filter:
        return True
    for key, value in metadata_filter.items():
        if metadata.get(key) != value:
            return False
    return True


def _dot(a: Sequence[float], b: Sequence[float]) -> float:
    return sum(x * y for x, y in zip(a, b, strict=True))


def _cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    norm_a = sqrt(sum(x * x for x in a))
    norm_b = sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return _dot(a, b) / (norm_a * norm_b)


def _negative_euclidean(a: Sequence[float], b: Sequence[float]) -> float:
    return -sqrt(sum((x - y) ** 2 for x, y in zip(a, b, strict=True)))


_SCORERS = {
    Metric.COSINE: _cosine_similarity,
    Metric.DOT: _dot,
    Metric.EUCLIDEAN: _negative_euclidean,
}
