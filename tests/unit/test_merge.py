from rag_engine.retrieval.merge import OrderedUnion, union_chunks
from rag_engine.types import Chunk, ScoredChunk


def _scored(chunk_id: str, route: str, similarity: float = 0.5) -> ScoredChunk:
    chunk = Chunk(chunk_id=chunk_id, document_id="doc", tenant_id="t1", content=chunk_id)
    return ScoredChunk(chunk=chunk, similarity=similarity, route=route)


def test_union_keeps_first_occurrence_in_route_order() -> None:
    merged = union_chunks(
        [
            [_scored("A", "naive", 0.9)],
            [_scored("A", "local", 0.4), _scored("B", "local")],
            [_scored("C", "global"), _scored("B", "global")],
        ],
        top_k=10,
    )

    assert [item.chunk.chunk_id for item in merged] == ["A", "B", "C"]
    assert merged[0].route == "naive"
    assert merged[0].similarity == 0.9
    assert [item.rank for item in merged] == [1, 2, 3]


def test_union_is_capped_at_top_k() -> None:
    merged = union_chunks(
        [[_scored("A", "naive")], [_scored("B", "local")], [_scored("C", "global")]],
        top_k=2,
    )

    assert [item.chunk.chunk_id for item in merged] == ["A", "B"]


def test_ordered_union_reports_duplicates() -> None:
    union: OrderedUnion[str] = OrderedUnion(lambda item: item.lower())

    assert union.add("x")
    assert not union.add("X")
    assert "x" in union
    assert len(union) == 1
