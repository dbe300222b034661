import sqlite3
from pathlib import Path

import pytest

from rag_engine.errors import StoreAccessError
from rag_engine.retrieval.sqlite_store import SQLiteChunkStore, SQLiteGraphStore
from rag_engine.retrieval.vector_store import InMemoryChunkStore, cosine_similarity
from rag_engine.types import Chunk, Document, Entity


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    if request.param == "memory":
        return InMemoryChunkStore(dimension=4)
    return SQLiteChunkStore(tmp_path / "engine.db", dimension=4)


def _chunk(
    chunk_id: str,
    tenant_id: str,
    embedding: list[float] | None,
    *,
    document_id: str = "doc-1",
    workspace: str = "default",
    content: str | None = None,
) -> Chunk:
    return Chunk(
        chunk_id=chunk_id,
        document_id=document_id,
        tenant_id=tenant_id,
        content=content or f"content of {chunk_id}",
        workspace=workspace,
        embedding=embedding,
    )


def test_similarity_search_never_crosses_tenants(store) -> None:
    store.upsert_chunks(
        [
            _chunk("a-1", "tenant-a", [1.0, 0.0, 0.0, 0.0], document_id="doc-a"),
            _chunk("b-1", "tenant-b", [1.0, 0.0, 0.0, 0.0], document_id="doc-b"),
        ]
    )

    hits = store.find_similar_chunks("tenant-a", "default", [1.0, 0.0, 0.0, 0.0], 10)

    assert [hit.chunk.chunk_id for hit in hits] == ["a-1"]
    assert store.find_similar_chunks("tenant-c", "default", [1.0, 0.0, 0.0, 0.0], 10) == []


def test_results_ranked_by_similarity_with_ties_oldest_first(store) -> None:
    store.upsert_chunks(
        [
            _chunk("far", "t1", [0.0, 1.0, 0.0, 0.0]),
            _chunk("tie-old", "t1", [1.0, 1.0, 0.0, 0.0]),
            _chunk("best", "t1", [1.0, 0.0, 0.0, 0.0]),
            _chunk("tie-new", "t1", [1.0, 1.0, 0.0, 0.0]),
        ]
    )

    hits = store.find_similar_chunks("t1", "default", [1.0, 0.0, 0.0, 0.0], 3)

    assert [hit.chunk.chunk_id for hit in hits] == ["best", "tie-old", "tie-new"]
    assert [hit.rank for hit in hits] == [1, 2, 3]
    assert all(hit.route == "naive" for hit in hits)
    assert hits[0].similarity == pytest.approx(1.0)


def test_similarity_threshold_and_missing_vectors(store) -> None:
    store.upsert_chunks(
        [
            _chunk("close", "t1", [1.0, 0.1, 0.0, 0.0]),
            _chunk("orthogonal", "t1", [0.0, 0.0, 1.0, 0.0]),
            _chunk("pending", "t1", None),
        ]
    )

    hits = store.find_similar_chunks(
        "t1", "default", [1.0, 0.0, 0.0, 0.0], 10, min_similarity=0.3
    )

    assert [hit.chunk.chunk_id for hit in hits] == ["close"]
    assert store.count_chunks("t1") == 3
    assert store.count_chunks("t1", with_embedding=True) == 2
    assert store.count_chunks("t1", with_embedding=False) == 1


def test_workspace_scopes_similarity_search(store) -> None:
    store.upsert_chunks(
        [
            _chunk("hr", "t1", [1.0, 0.0, 0.0, 0.0], workspace="hr"),
            _chunk("eng", "t1", [1.0, 0.0, 0.0, 0.0], workspace="eng"),
        ]
    )

    hits = store.find_similar_chunks("t1", "hr", [1.0, 0.0, 0.0, 0.0], 10)

    assert [hit.chunk.chunk_id for hit in hits] == ["hr"]


def test_get_by_ids_preserves_order_and_filters_tenant(store) -> None:
    store.upsert_chunks(
        [
            _chunk("c1", "t1", None),
            _chunk("c2", "t1", None),
            _chunk("other", "t2", None, document_id="doc-2"),
        ]
    )

    chunks = store.get_chunks_by_ids("t1", ["c2", "other", "missing", "c1", "c2"])

    assert [chunk.chunk_id for chunk in chunks] == ["c2", "c1"]
    assert store.get_chunks_by_ids("t1", []) == []


def test_chunk_tenant_must_match_document_tenant(store) -> None:
    store.register_document(Document(document_id="doc-a", tenant_id="tenant-a"))

    with pytest.raises(ValueError):
        store.upsert_chunks([_chunk("x", "tenant-b", None, document_id="doc-a")])
    with pytest.raises(ValueError):
        store.register_document(Document(document_id="doc-a", tenant_id="tenant-b"))


def test_chunk_id_cannot_be_taken_over_by_another_tenant(store) -> None:
    store.upsert_chunks([_chunk("shared", "t1", None)])

    with pytest.raises(ValueError):
        store.upsert_chunks([_chunk("shared", "t2", None, document_id="doc-2")])


def test_wrong_dimension_is_rejected(store) -> None:
    with pytest.raises(ValueError):
        store.upsert_chunks([_chunk("bad", "t1", [1.0, 0.0])])
    with pytest.raises(ValueError):
        store.set_embedding("t1", "bad", [1.0])


def test_set_embedding_replaces_vector_for_owner_only(store) -> None:
    store.upsert_chunks([_chunk("c1", "t1", None)])

    store.set_embedding("t1", "c1", [0.0, 0.0, 0.0, 1.0])

    assert store.get_chunks_by_ids("t1", ["c1"])[0].embedding == [0.0, 0.0, 0.0, 1.0]
    with pytest.raises(KeyError):
        store.set_embedding("t2", "c1", [1.0, 0.0, 0.0, 0.0])


def test_update_keeps_original_insertion_position(store) -> None:
    store.upsert_chunks(
        [
            _chunk("first", "t1", [1.0, 0.0, 0.0, 0.0]),
            _chunk("second", "t1", [1.0, 0.0, 0.0, 0.0]),
        ]
    )
    store.upsert_chunks([_chunk("first", "t1", [1.0, 0.0, 0.0, 0.0], content="edited")])

    hits = store.find_similar_chunks("t1", "default", [1.0, 0.0, 0.0, 0.0], 2)

    assert [hit.chunk.chunk_id for hit in hits] == ["first", "second"]
    assert hits[0].chunk.content == "edited"


def test_in_memory_store_returns_copies() -> None:
    store = InMemoryChunkStore(dimension=4)
    store.upsert_chunks([_chunk("c1", "t1", [1.0, 0.0, 0.0, 0.0])])

    fetched = store.get_chunks_by_ids("t1", ["c1"])[0]
    assert fetched.embedding is not None
    fetched.embedding[0] = 99.0

    assert store.get_chunks_by_ids("t1", ["c1"])[0].embedding == [1.0, 0.0, 0.0, 0.0]


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    path = tmp_path / "engine.db"
    SQLiteChunkStore(path, dimension=4).upsert_chunks(
        [_chunk("c1", "t1", [1 / 3, 0.0, 0.0, 0.0])]
    )

    reopened = SQLiteChunkStore(path, dimension=4)

    assert reopened.get_chunks_by_ids("t1", ["c1"])[0].embedding == [1 / 3, 0.0, 0.0, 0.0]


def test_sqlite_store_unreachable_path_raises_store_error(tmp_path: Path) -> None:
    with pytest.raises(StoreAccessError):
        SQLiteChunkStore(tmp_path / "missing-dir" / "engine.db", dimension=4)


def test_cosine_similarity_edge_cases() -> None:
    assert cosine_similarity([1.0, 0.0], [0.0, 0.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [1.0]) == 0.0
    assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


def test_cosine_similarity_is_scale_invariant() -> None:
    assert cosine_similarity([3.0, 4.0], [0.6, 0.8]) == pytest.approx(1.0)
    assert cosine_similarity([1e150, 0.0], [1e150, 1e150]) == pytest.approx(2 ** -0.5)


def test_get_documents_by_ids_returns_file_details_for_owner(store) -> None:
    store.register_document(
        Document(
            document_id="doc-a",
            tenant_id="t1",
            file_name="handbook.pdf",
            file_type="application/pdf",
        )
    )
    store.register_document(Document(document_id="doc-b", tenant_id="t1"))
    store.register_document(Document(document_id="doc-x", tenant_id="t2", file_name="x.txt"))

    documents = store.get_documents_by_ids("t1", ["doc-b", "doc-x", "doc-a", "doc-b"])

    assert [document.document_id for document in documents] == ["doc-b", "doc-a"]
    assert documents[0].file_name is None
    assert documents[1].file_name == "handbook.pdf"
    assert documents[1].file_type == "application/pdf"
    assert store.get_documents_by_ids("t1", []) == []


def test_re_registering_a_document_updates_file_details(store) -> None:
    store.register_document(Document(document_id="doc-a", tenant_id="t1", file_name="a.txt"))
    store.register_document(
        Document(document_id="doc-a", tenant_id="t1", file_name="a.md", file_type="text/markdown")
    )

    (document,) = store.get_documents_by_ids("t1", ["doc-a"])

    assert (document.file_name, document.file_type) == ("a.md", "text/markdown")


@pytest.mark.parametrize(
    "column, value",
    [("embedding", "[1.0,oops,0.0,0.0]"), ("embedding", "1,0,0,0"), ("metadata", "{not json")],
)
def test_sqlite_corrupt_chunk_row_raises_store_error(
    tmp_path: Path, column: str, value: str
) -> None:
    path = tmp_path / "engine.db"
    store = SQLiteChunkStore(path, dimension=4)
    store.upsert_chunks([_chunk("c1", "t1", [1.0, 0.0, 0.0, 0.0])])
    with sqlite3.connect(path) as conn:
        conn.execute(f"UPDATE chunks SET {column} = ? WHERE chunk_id = 'c1'", (value,))
    conn.close()

    with pytest.raises(StoreAccessError, match="c1"):
        store.find_similar_chunks("t1", "default", [1.0, 0.0, 0.0, 0.0], 5)
    with pytest.raises(StoreAccessError):
        store.get_chunks_by_ids("t1", ["c1"])


def test_sqlite_corrupt_entity_row_raises_store_error(tmp_path: Path) -> None:
    path = tmp_path / "engine.db"
    SQLiteChunkStore(path, dimension=4).upsert_chunks([_chunk("c1", "t1", None)])
    graph = SQLiteGraphStore(path, dimension=4)
    graph.upsert_entity(
        Entity(
            entity_id="e1",
            tenant_id="t1",
            name="Refunds",
            entity_type="CONCEPT",
            source_chunk_ids=["c1"],
            embedding=[1.0, 0.0, 0.0, 0.0],
        )
    )
    with sqlite3.connect(path) as conn:
        conn.execute("UPDATE entities SET source_chunk_ids = '[c1' WHERE entity_id = 'e1'")
    conn.close()

    with pytest.raises(StoreAccessError, match="e1"):
        graph.find_similar_entities("t1", "default", [1.0, 0.0, 0.0, 0.0], 5)
    with pytest.raises(StoreAccessError):
        graph.get_entities_by_ids("t1", ["e1"])
