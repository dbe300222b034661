import pytest

from rag_engine.config import EmbeddingConfig, RetrievalConfig
from rag_engine.embedding.client import EmbeddingClient
from rag_engine.errors import EmbeddingFailed, StoreAccessError
from rag_engine.retrieval.graph_store import InMemoryGraphStore
from rag_engine.retrieval.media import MediaType
from rag_engine.retrieval.modes import QueryMode
from rag_engine.retrieval.retriever import RetrievalEngine
from rag_engine.retrieval.vector_store import InMemoryChunkStore
from rag_engine.types import Chunk, Document, Entity, Relation

QUERY = "What is the refund policy?"


class QueryVectorModel:
    def __init__(self, vectors: dict[str, list[float]]) -> None:
        self.vectors = vectors
        self.calls: list[str] = []

    def embed_content(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vectors[text]


class BrokenModel:
    def embed_content(self, text: str) -> list[float]:
        raise RuntimeError("embedding backend down")


def _seed_tenant(chunks: InMemoryChunkStore, graph: InMemoryGraphStore, tenant: str) -> None:
    """A: refund text (naive hit). B: cited by an entity. C: cited by a relation."""

    prefix = f"{tenant}-"
    chunks.upsert_chunks(
        [
            Chunk(
                chunk_id=prefix + "A",
                document_id=prefix + "doc",
                tenant_id=tenant,
                content="Refunds are issued within 30 days of purchase.",
                embedding=[1.0, 0.0, 0.0, 0.0],
            ),
            Chunk(
                chunk_id=prefix + "B",
                document_id=prefix + "doc",
                tenant_id=tenant,
                content="The finance team approves every refund request.",
                embedding=[0.0, 0.0, 1.0, 0.0],
            ),
            Chunk(
                chunk_id=prefix + "C",
                document_id=prefix + "doc",
                tenant_id=tenant,
                content="Store credit may replace a refund for sale items.",
                embedding=[0.0, 0.0, 0.0, 1.0],
            ),
        ]
    )
    graph.upsert_entity(
        Entity(
            entity_id=prefix + "refund-process",
            tenant_id=tenant,
            name="Refund process",
            entity_type="PROCESS",
            description="How refunds are approved and issued",
            source_chunk_ids=[prefix + "A", prefix + "B"],
            embedding=[0.0, 1.0, 0.0, 0.0],
        )
    )
    for name in ("store-credit", "sale-items"):
        graph.upsert_entity(
            Entity(
                entity_id=prefix + name,
                tenant_id=tenant,
                name=name.replace("-", " ").title(),
                entity_type="CONCEPT",
            )
        )
    graph.upsert_relation(
        Relation(
            relation_id=prefix + "credit-replaces-refund",
            tenant_id=tenant,
            source_entity_id=prefix + "store-credit",
            target_entity_id=prefix + "sale-items",
            relation_type="APPLIES_TO",
            description="Store credit applies to sale items instead of refunds",
            source_chunk_ids=[prefix + "C"],
            embedding=[1.0, 1.0, 0.0, 0.0],
        )
    )


def _engine(*, tenants=("t1",), with_graph: bool = True):
    chunks = InMemoryChunkStore(dimension=4)
    graph = InMemoryGraphStore(chunk_store=chunks, dimension=4)
    for tenant in tenants:
        if with_graph:
            _seed_tenant(chunks, graph, tenant)
        else:
            chunks.upsert_chunks(
                [
                    Chunk(
                        chunk_id=f"{tenant}-A",
                        document_id=f"{tenant}-doc",
                        tenant_id=tenant,
                        content="Refunds are issued within 30 days of purchase.",
                        embedding=[1.0, 0.0, 0.0, 0.0],
                    ),
                    Chunk(
                        chunk_id=f"{tenant}-shipping",
                        document_id=f"{tenant}-doc",
                        tenant_id=tenant,
                        content="Orders ship within two business days.",
                        embedding=[0.0, 0.0, 1.0, 0.0],
                    ),
                ]
            )
    model = QueryVectorModel({QUERY: [1.0, 0.5, 0.0, 0.0]})
    embedder = EmbeddingClient(model, EmbeddingConfig(dimension=4), sleep=lambda _: None)
    return RetrievalEngine(chunks, graph, embedder, RetrievalConfig()), model


def _ids(result) -> list[str]:
    return [scored.chunk.chunk_id for scored in result.chunks]


def test_naive_mode_returns_refund_chunk_only() -> None:
    engine, _ = _engine(with_graph=False)

    result = engine.retrieve("t1", QUERY, QueryMode.NAIVE)

    assert _ids(result) == ["t1-A"]
    assert result.chunks[0].route == "naive"
    assert result.entities == []


def test_local_mode_follows_entity_provenance() -> None:
    engine, _ = _engine()

    result = engine.retrieve("t1", QUERY, QueryMode.LOCAL)

    assert _ids(result) == ["t1-A", "t1-B"]
    assert [e.entity.entity_id for e in result.entities] == ["t1-refund-process"]
    assert all(scored.route == "local" for scored in result.chunks)


def test_global_mode_follows_relation_and_endpoints() -> None:
    engine, _ = _engine()

    result = engine.retrieve("t1", QUERY, QueryMode.GLOBAL)

    assert _ids(result) == ["t1-C"]
    assert [r.relation.relation_id for r in result.relations] == ["t1-credit-replaces-refund"]
    assert {e.entity.entity_id for e in result.entities} == {"t1-store-credit", "t1-sale-items"}


def test_global_mode_with_empty_graph_returns_nothing() -> None:
    engine, _ = _engine(with_graph=False)

    result = engine.retrieve("t1", QUERY, QueryMode.GLOBAL)

    assert result.is_empty
    assert result.relations == []


def test_hybrid_mode_unions_local_then_global() -> None:
    engine, _ = _engine()

    result = engine.retrieve("t1", QUERY, QueryMode.HYBRID)

    assert _ids(result) == ["t1-A", "t1-B", "t1-C"]
    assert [scored.route for scored in result.chunks] == ["local", "local", "global"]


def test_mix_mode_unions_all_routes_in_order() -> None:
    engine, _ = _engine()

    result = engine.retrieve("t1", QUERY, QueryMode.MIX)

    assert _ids(result) == ["t1-A", "t1-B", "t1-C"]
    assert result.chunks[0].route == "naive"
    assert [scored.rank for scored in result.chunks] == [1, 2, 3]


def test_mix_mode_is_capped_at_top_k() -> None:
    engine, _ = _engine()

    result = engine.retrieve("t1", QUERY, QueryMode.MIX, top_k=2)

    assert _ids(result) == ["t1-A", "t1-B"]


def test_query_is_embedded_once_per_retrieval() -> None:
    engine, model = _engine()

    engine.retrieve("t1", QUERY, QueryMode.MIX)

    assert model.calls == [QUERY]


@pytest.mark.parametrize("mode", list(QueryMode))
def test_no_mode_returns_another_tenants_chunks(mode: QueryMode) -> None:
    engine, _ = _engine(tenants=("t1", "t2"))

    result = engine.retrieve("t2", QUERY, mode)

    assert result.chunks
    assert all(scored.chunk.tenant_id == "t2" for scored in result.chunks)
    assert all(scored.entity.tenant_id == "t2" for scored in result.entities)
    assert all(scored.relation.tenant_id == "t2" for scored in result.relations)


def test_unknown_tenant_gets_empty_result_in_every_mode() -> None:
    engine, _ = _engine()

    for mode in QueryMode:
        assert engine.retrieve("nobody", QUERY, mode).is_empty


def test_provenance_outside_workspace_is_dropped() -> None:
    chunks = InMemoryChunkStore(dimension=4)
    graph = InMemoryGraphStore(chunk_store=chunks, dimension=4)
    chunks.upsert_chunks(
        [
            Chunk(chunk_id="in", document_id="d", tenant_id="t1", content="in", workspace="hr"),
            Chunk(chunk_id="out", document_id="d", tenant_id="t1", content="out", workspace="eng"),
        ]
    )
    graph.upsert_entity(
        Entity(
            entity_id="e1",
            tenant_id="t1",
            name="Policy",
            entity_type="CONCEPT",
            source_chunk_ids=["out", "in"],
            workspace="hr",
            embedding=[1.0, 0.0, 0.0, 0.0],
        )
    )
    embedder = EmbeddingClient(
        QueryVectorModel({"policy": [1.0, 0.0, 0.0, 0.0]}),
        EmbeddingConfig(dimension=4),
        sleep=lambda _: None,
    )
    engine = RetrievalEngine(chunks, graph, embedder)

    result = engine.retrieve("t1", "policy", QueryMode.LOCAL, workspace="hr")

    assert _ids(result) == ["in"]


def test_embedding_failure_propagates() -> None:
    chunks = InMemoryChunkStore(dimension=4)
    embedder = EmbeddingClient(
        BrokenModel(), EmbeddingConfig(dimension=4), sleep=lambda _: None
    )
    engine = RetrievalEngine(chunks, InMemoryGraphStore(dimension=4), embedder)

    with pytest.raises(EmbeddingFailed):
        engine.retrieve("t1", QUERY, QueryMode.NAIVE)


def _flat_engine(count: int, *, extra: list[Chunk] = ()):
    chunks = InMemoryChunkStore(dimension=4)
    chunks.upsert_chunks(
        [
            Chunk(
                chunk_id=f"c{i:02d}",
                document_id="talk",
                tenant_id="t1",
                content=f"Transcript segment {i}",
                embedding=[1.0, 0.0, 0.0, 0.0],
            )
            for i in range(count)
        ]
        + list(extra)
    )
    model = QueryVectorModel(
        {
            "What did the speaker say?": [1.0, 0.0, 0.0, 0.0],
            "What did the speaker say in the video?": [1.0, 0.0, 0.0, 0.0],
            "Summarize the podcast": [1.0, 0.0, 0.0, 0.0],
        }
    )
    embedder = EmbeddingClient(model, EmbeddingConfig(dimension=4), sleep=lambda _: None)
    return RetrievalEngine(chunks, InMemoryGraphStore(dimension=4), embedder)


def test_media_query_lowers_the_similarity_threshold() -> None:
    # cosine with the query vector is about 0.27: under 0.3, over 0.2
    faint = Chunk(
        chunk_id="faint",
        document_id="talk",
        tenant_id="t1",
        content="[00:42] and that is how refunds work",
        embedding=[1.0, 3.5, 0.0, 0.0],
    )
    engine = _flat_engine(0, extra=[faint])

    plain = engine.retrieve("t1", "What did the speaker say?", QueryMode.NAIVE)
    media = engine.retrieve("t1", "What did the speaker say in the video?", QueryMode.NAIVE)

    assert plain.is_empty
    assert plain.media_type is None
    assert _ids(media) == ["faint"]
    assert media.media_type is MediaType.VIDEO


def test_media_query_raises_top_k_to_media_floor() -> None:
    engine = _flat_engine(25)

    plain = engine.retrieve("t1", "What did the speaker say?", QueryMode.NAIVE, top_k=5)
    media = engine.retrieve("t1", "Summarize the podcast", QueryMode.NAIVE, top_k=5)

    assert len(plain.chunks) == 5
    assert len(media.chunks) == 20
    assert media.media_type is MediaType.AUDIO


def test_media_top_k_still_respects_max_top_k() -> None:
    engine = _flat_engine(25)
    engine.config = RetrievalConfig(max_top_k=12)

    result = engine.retrieve("t1", "Summarize the podcast", QueryMode.NAIVE)

    assert len(result.chunks) == 12


class UnreachableDocumentStore(InMemoryChunkStore):
    def get_documents_by_ids(self, tenant_id, ids):
        raise StoreAccessError("documents table is locked")


def test_describe_documents_maps_ids_to_file_details() -> None:
    engine, _ = _engine()
    engine.chunk_store.register_document(
        Document(document_id="t1-doc", tenant_id="t1", file_name="refunds.pdf", file_type="pdf")
    )
    engine.chunk_store.register_document(
        Document(document_id="t2-doc", tenant_id="t2", file_name="secret.pdf")
    )

    documents = engine.describe_documents("t1", ["t1-doc", "t2-doc", "missing"])

    assert list(documents) == ["t1-doc"]
    assert documents["t1-doc"].file_name == "refunds.pdf"
    assert documents["t1-doc"].file_type == "pdf"


def test_describe_documents_failure_is_not_fatal() -> None:
    embedder = EmbeddingClient(
        QueryVectorModel({}), EmbeddingConfig(dimension=4), sleep=lambda _: None
    )
    engine = RetrievalEngine(
        UnreachableDocumentStore(dimension=4), InMemoryGraphStore(dimension=4), embedder
    )

    assert engine.describe_documents("t1", ["doc"]) == {}
