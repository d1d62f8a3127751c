import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from edge_agent.config import Metric
from edge_agent.errors import DimensionMismatchError
from edge_agent.retrieval.index import EmbeddingIndex
from edge_agent.types import Chunk, EmbeddingRecord


def _record(record_id: str, vector: list[float], **metadata: object) -> EmbeddingRecord:
    chunk = Chunk(
        chunk_id=record_id,
        doc_id="doc",
        text=f"text of {record_id}",
        token_count=3,
        metadata=dict(metadata),
    )
    return EmbeddingRecord.from_chunk(chunk, vector)


async def _filled(records: list[EmbeddingRecord], metric: Metric = Metric.COSINE) -> EmbeddingIndex:
    index = EmbeddingIndex(metric=metric)
    for record in records:
        await index.insert(record)
    return index


def test_first_insert_fixes_dimension() -> None:
    async def scenario() -> None:
        index = await _filled([_record("a", [1.0, 0.0, 0.0])])

        assert index.dimension == 3
        with pytest.raises(DimensionMismatchError) as info:
            await index.insert(_record("b", [1.0, 0.0]))
        assert info.value.expected == 3
        assert info.value.actual == 2
        with pytest.raises(DimensionMismatchError):
            await index.search([1.0, 0.0], 1)
        assert len(index) == 1

    asyncio.run(scenario())


def test_empty_vector_is_rejected() -> None:
    with pytest.raises(DimensionMismatchError):
        asyncio.run(_filled([_record("a", [])]))


def test_search_on_empty_index_returns_nothing() -> None:
    index = EmbeddingIndex()
    assert asyncio.run(index.search([1.0, 2.0], 5)) == []


def test_k_bounds() -> None:
    async def scenario() -> tuple[list, list, list]:
        index = await _filled(
            [_record("a", [1.0, 0.0]), _record("b", [0.6, 0.8]), _record("c", [0.0, 1.0])]
        )
        return (
            await index.search([1.0, 0.0], 0),
            await index.search([1.0, 0.0], -3),
            await index.search([1.0, 0.0], 10),
        )

    zero, negative, everything = asyncio.run(scenario())

    assert zero == []
    assert negative == []
    assert [hit.chunk.chunk_id for hit in everything] == ["a", "b", "c"]
    assert [hit.rank for hit in everything] == [1, 2, 3]
    assert everything[0].score >= everything[1].score >= everything[2].score


def test_ties_keep_insertion_order() -> None:
    async def scenario() -> list[str]:
        index = await _filled(
            [_record("first", [1.0, 0.0]), _record("second", [2.0, 0.0]), _record("third", [3.0, 0.0])]
        )
        hits = await index.search([1.0, 0.0], 3)
        return [hit.chunk.chunk_id for hit in hits]

    assert asyncio.run(scenario()) == ["first", "second", "third"]


def test_reinsert_replaces_in_place() -> None:
    async def scenario() -> EmbeddingIndex:
        return await _filled(
            [_record("a", [1.0, 0.0]), _record("b", [0.0, 1.0]), _record("a", [0.0, 1.0])]
        )

    index = asyncio.run(scenario())
    hits = asyncio.run(index.search([0.0, 1.0], 2))

    assert len(index) == 2
    assert [hit.chunk.chunk_id for hit in hits] == ["a", "b"]


@pytest.mark.parametrize(
    ("metric", "expected"),
    [
        (Metric.COSINE, ["unit", "long"]),
        (Metric.DOT, ["long", "unit"]),
        (Metric.EUCLIDEAN, ["unit", "long"]),
    ],
)
def test_metric_ordering(metric: Metric, expected: list[str]) -> None:
    async def scenario() -> list[str]:
        index = await _filled(
            [_record("long", [3.0, 1.0]), _record("unit", [1.0, 0.0])], metric=metric
        )
        hits = await index.search([1.0, 0.0], 2)
        return [hit.chunk.chunk_id for hit in hits]

    assert asyncio.run(scenario()) == expected


def test_euclidean_score_is_negative_distance() -> None:
    async def scenario() -> float:
        index = await _filled([_record("a", [3.0, 4.0])], metric=Metric.EUCLIDEAN)
        hits = await index.search([0.0, 0.0], 1)
        return hits[0].score

    assert asyncio.run(scenario()) == pytest.approx(-5.0)


def test_metadata_filter() -> None:
    async def scenario() -> list[str]:
        index = await _filled(
            [
                _record("a", [1.0, 0.0], source="policy"),
                _record("b", [1.0, 0.0], source="faq"),
            ]
        )
        hits = await index.search([1.0, 0.0], 5, metadata_filter={"source": "faq"})
        return [hit.chunk.chunk_id for hit in hits]

    assert asyncio.run(scenario()) == ["b"]


@settings(max_examples=40, deadline=None)
@given(
    vectors=st.lists(
        st.tuples(
            st.integers(min_value=-50, max_value=50),
            st.integers(min_value=-50, max_value=50),
            st.integers(min_value=-50, max_value=50),
        ),
        min_size=1,
        max_size=15,
        unique=True,
    )
)
def test_stored_vector_is_its_own_nearest_neighbour(vectors: list[tuple[int, int, int]]) -> None:
    async def scenario() -> None:
        records = [_record(f"r{i}", [float(v) for v in vector]) for i, vector in enumerate(vectors)]
        index = await _filled(records, metric=Metric.EUCLIDEAN)
        for record in records:
            hits = await index.search(list(record.vector), 1)
            assert hits[0].chunk.chunk_id == record.record_id
            assert hits[0].score == 0.0

    asyncio.run(scenario())


def test_concurrent_searches_and_inserts() -> None:
    async def scenario() -> tuple[int, list[int]]:
        index = await _filled([_record("seed", [1.0, 0.0])])

        async def writer(i: int) -> None:
            await index.insert(_record(f"w{i}", [1.0, float(i)]))

        async def reader() -> int:
            hits = await index.search([1.0, 0.0], 100)
            return len(hits)

        results = await asyncio.gather(
            *(writer(i) for i in range(20)), *(reader() for _ in range(20))
        )
        return len(index), [count for count in results if count is not None]

    size, counts = asyncio.run(scenario())

    assert size == 21
    assert all(1 <= count <= 21 for count in counts)
