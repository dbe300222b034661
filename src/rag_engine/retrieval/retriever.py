"""Graph-augmented retrieval over the chunk and knowledge-graph stores."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

import structlog

from rag_engine.config import RetrievalConfig
from rag_engine.embedding.client import EmbeddingClient
from rag_engine.errors import StoreAccessError
from rag_engine.retrieval.graph_store import GraphStore
from rag_engine.retrieval.media import MediaType, detect_media_query
from rag_engine.retrieval.merge import union_chunks, union_entities
from rag_engine.retrieval.modes import QueryMode
from rag_engine.retrieval.vector_store import ChunkStore
from rag_engine.types import Document, ScoredChunk, ScoredEntity, ScoredRelation

log = structlog.get_logger(__name__)


@dataclass(slots=True)
class RetrievalResult:
    """Chunks plus the graph material that led to them."""

    mode: QueryMode
    chunks: list[ScoredChunk] = field(default_factory=list)
    entities: list[ScoredEntity] = field(default_factory=list)
    relations: list[ScoredRelation] = field(default_factory=list)
    media_type: MediaType | None = None

    @property
    def is_empty(self) -> bool:
        return not self.chunks


class RetrievalEngine:
    """Implements the five retrieval modes for a single tenant and workspace.

    naive   query vector -> nearest chunks
    local   query vector -> nearest entities -> provenance chunks
    global  query vector -> nearest relations -> endpoint entities -> provenance chunks
    hybrid  local then global
    mix     naive then local then global

    Unions keep the first occurrence of each chunk id in route order and are
    capped at `top_k`. An empty graph contributes nothing; it is not an error.
    Embedding and store errors propagate unchanged.

    A query that mentions video or audio searches wider: `top_k` is raised to
    `media_top_k` and every route uses the lower media similarity threshold.
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        graph_store: GraphStore,
        embedder: EmbeddingClient,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.chunk_store = chunk_store
        self.graph_store = graph_store
        self.embedder = embedder
        self.config = config or RetrievalConfig()

    def retrieve(
        self,
        tenant_id: str,
        query: str,
        mode: QueryMode,
        *,
        workspace: str | None = None,
        top_k: int | None = None,
    ) -> RetrievalResult:
        workspace = workspace or self.config.default_workspace
        k = top_k or self.config.default_top_k
        threshold = self.config.similarity_threshold
        media_type = detect_media_query(query)
        if media_type is not None:
            k = max(k, self.config.media_top_k)
            threshold = self.config.media_similarity_threshold
            log.info("media_query_detected", tenant_id=tenant_id, media_type=media_type.value)
        k = min(k, self.config.max_top_k)

        query_vector = self.embedder.embed(query)
        scope = (tenant_id, workspace, query_vector, k, threshold)

        if mode is QueryMode.NAIVE:
            result = RetrievalResult(mode=mode, chunks=self._naive(*scope))
        elif mode is QueryMode.LOCAL:
            chunks, entities = self._local(*scope)
            result = RetrievalResult(mode=mode, chunks=chunks, entities=entities)
        elif mode is QueryMode.GLOBAL:
            chunks, entities, relations = self._global(*scope)
            result = RetrievalResult(
                mode=mode, chunks=chunks, entities=entities, relations=relations
            )
        elif mode is QueryMode.HYBRID:
            local_chunks, local_entities = self._local(*scope)
            global_chunks, global_entities, relations = self._global(*scope)
            result = RetrievalResult(
                mode=mode,
                chunks=union_chunks([local_chunks, global_chunks], top_k=k),
                entities=union_entities([local_entities, global_entities]),
                relations=relations,
            )
        elif mode is QueryMode.MIX:
            naive_chunks = self._naive(*scope)
            local_chunks, local_entities = self._local(*scope)
            global_chunks, global_entities, relations = self._global(*scope)
            result = RetrievalResult(
                mode=mode,
                chunks=union_chunks([naive_chunks, local_chunks, global_chunks], top_k=k),
                entities=union_entities([local_entities, global_entities]),
                relations=relations,
            )
        else:  # pragma: no cover - QueryMode is closed
            raise ValueError(f"Unsupported retrieval mode: {mode}")

        result.media_type = media_type

        log.info(
            "retrieval_complete",
            tenant_id=tenant_id,
            workspace=workspace,
            mode=mode.value,
            top_k=k,
            threshold=threshold,
            chunks=len(result.chunks),
            entities=len(result.entities),
            relations=len(result.relations),
        )
        return result

    def describe_documents(
        self, tenant_id: str, document_ids: Sequence[str]
    ) -> dict[str, Document]:
        """File details for source attribution; a failed lookup yields `{}`."""
        if not document_ids:
            return {}
        try:
            documents = self.chunk_store.get_documents_by_ids(tenant_id, document_ids)
        except StoreAccessError as exc:
            log.warning("document_lookup_failed", tenant_id=tenant_id, error=str(exc))
            return {}
        return {document.document_id: document for document in documents}

    def _naive(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        threshold: float,
    ) -> list[ScoredChunk]:
        return self.chunk_store.find_similar_chunks(
            tenant_id,
            workspace,
            query_vector,
            k,
            min_similarity=threshold,
        )

    def _local(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        threshold: float,
    ) -> tuple[list[ScoredChunk], list[ScoredEntity]]:
        entities = self.graph_store.find_similar_entities(
            tenant_id,
            workspace,
            query_vector,
            k,
            min_similarity=threshold,
        )
        if not entities:
            return [], []

        # A chunk inherits the similarity of the best entity that cites it.
        provenance: dict[str, float] = {}
        for scored in entities:
            _collect(provenance, scored.entity.source_chunk_ids, scored.similarity)
        chunks = self._fetch_provenance(tenant_id, workspace, provenance, "local", k)
        return chunks, entities

    def _global(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        threshold: float,
    ) -> tuple[list[ScoredChunk], list[ScoredEntity], list[ScoredRelation]]:
        relations = self.graph_store.find_similar_relations(
            tenant_id,
            workspace,
            query_vector,
            k,
            min_similarity=threshold,
        )
        if not relations:
            return [], [], []

        endpoint_scores: dict[str, float] = {}
        provenance: dict[str, float] = {}
        for scored in relations:
            relation = scored.relation
            _collect(
                endpoint_scores,
                (relation.source_entity_id, relation.target_entity_id),
                scored.similarity,
            )
            _collect(provenance, relation.source_chunk_ids, scored.similarity)

        endpoints = self.graph_store.get_entities_by_ids(tenant_id, list(endpoint_scores))
        entities = [
            ScoredEntity(
                entity=entity,
                similarity=endpoint_scores[entity.entity_id],
                route="global",
                rank=i + 1,
            )
            for i, entity in enumerate(endpoints)
            if entity.workspace == workspace
        ]
        for scored in entities:
            _collect(provenance, scored.entity.source_chunk_ids, scored.similarity)

        chunks = self._fetch_provenance(tenant_id, workspace, provenance, "global", k)
        return chunks, entities, relations

    def _fetch_provenance(
        self,
        tenant_id: str,
        workspace: str,
        provenance: dict[str, float],
        route: str,
        k: int,
    ) -> list[ScoredChunk]:
        if not provenance:
            return []
        chunks = self.chunk_store.get_chunks_by_ids(tenant_id, list(provenance))
        scoped = [chunk for chunk in chunks if chunk.workspace == workspace][:k]
        return [
            ScoredChunk(chunk=chunk, similarity=provenance[chunk.chunk_id], route=route, rank=i + 1)
            for i, chunk in enumerate(scoped)
        ]


def _collect(target: dict[str, float], ids: Iterable[str], similarity: float) -> None:
    """Record ids in first-seen order, keeping the best similarity per id."""
    for item_id in ids:
        current = target.get(item_id)
        if current is None or similarity > current:
            target[item_id] = similarity
