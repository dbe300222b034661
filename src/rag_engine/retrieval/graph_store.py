"""Knowledge-graph store interfaces and the in-memory adapter."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Protocol

from rag_engine.config import EMBEDDING_DIMENSION
from rag_engine.retrieval.vector_codec import check_dimension
from rag_engine.retrieval.vector_store import ChunkStore, rank_by_similarity
from rag_engine.types import Entity, Relation, ScoredEntity, ScoredRelation


class GraphStore(Protocol):
    """Tenant-scoped entity/relation access used by the retrieval engine.

    Similarity is computed against the embedding of an entity's or relation's
    description.
    """

    def find_similar_entities(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredEntity]:
        """Return the tenant's `k` nearest entities."""

    def find_similar_relations(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredRelation]:
        """Return the tenant's `k` nearest relations."""

    def get_entities_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Entity]:
        """Return the tenant's entities for `ids`, in the order given."""


@dataclass(slots=True)
class _Stored:
    item: Entity | Relation
    sequence: int


class InMemoryGraphStore:
    """Deterministic graph store for tests and local prototyping.

    When a `chunk_store` is supplied, provenance chunk ids are checked on write
    so an entity or relation can never point at another tenant's chunks.
    """

    def __init__(
        self,
        *,
        chunk_store: ChunkStore | None = None,
        dimension: int = EMBEDDING_DIMENSION,
    ) -> None:
        self.dimension = dimension
        self._chunk_store = chunk_store
        self._entities: dict[str, _Stored] = {}
        self._relations: dict[str, _Stored] = {}
        self._sequence = 0

    def upsert_entity(self, entity: Entity) -> None:
        check_dimension(entity.embedding, self.dimension)
        self._check_provenance(entity.tenant_id, entity.source_chunk_ids)
        current = self._entities.get(entity.entity_id)
        if current is not None and current.item.tenant_id != entity.tenant_id:
            raise ValueError(f"Entity {entity.entity_id} belongs to another tenant")
        self._put(self._entities, entity.entity_id, _copy_entity(entity), current)

    def upsert_relation(self, relation: Relation) -> None:
        check_dimension(relation.embedding, self.dimension)
        for endpoint in (relation.source_entity_id, relation.target_entity_id):
            stored = self._entities.get(endpoint)
            if stored is None or stored.item.tenant_id != relation.tenant_id:
                raise ValueError(
                    f"Relation {relation.relation_id} endpoint {endpoint} "
                    "does not exist for this tenant"
                )
        self._check_provenance(relation.tenant_id, relation.source_chunk_ids)
        current = self._relations.get(relation.relation_id)
        if current is not None and current.item.tenant_id != relation.tenant_id:
            raise ValueError(f"Relation {relation.relation_id} belongs to another tenant")
        self._put(self._relations, relation.relation_id, _copy_relation(relation), current)

    def find_similar_entities(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredEntity]:
        ranked = rank_by_similarity(
            self._candidates(self._entities, tenant_id, workspace),
            query_vector,
            k,
            min_similarity,
        )
        return [
            ScoredEntity(entity=_copy_entity(entity), similarity=score, route="local", rank=i + 1)
            for i, (entity, score) in enumerate(ranked)
        ]

    def find_similar_relations(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredRelation]:
        ranked = rank_by_similarity(
            self._candidates(self._relations, tenant_id, workspace),
            query_vector,
            k,
            min_similarity,
        )
        return [
            ScoredRelation(
                relation=_copy_relation(relation), similarity=score, route="global", rank=i + 1
            )
            for i, (relation, score) in enumerate(ranked)
        ]

    def get_entities_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Entity]:
        found: list[Entity] = []
        seen: set[str] = set()
        for entity_id in ids:
            if entity_id in seen:
                continue
            seen.add(entity_id)
            stored = self._entities.get(entity_id)
            if stored is None or stored.item.tenant_id != tenant_id:
                continue
            found.append(_copy_entity(stored.item))
        return found

    def _put(
        self, table: dict[str, _Stored], key: str, item: Entity | Relation, current: _Stored | None
    ) -> None:
        if current is None:
            table[key] = _Stored(item=item, sequence=self._sequence)
            self._sequence += 1
        else:
            current.item = item

    def _check_provenance(self, tenant_id: str, chunk_ids: Sequence[str]) -> None:
        if self._chunk_store is None or not chunk_ids:
            return
        owned = {chunk.chunk_id for chunk in self._chunk_store.get_chunks_by_ids(tenant_id, chunk_ids)}
        missing = [chunk_id for chunk_id in chunk_ids if chunk_id not in owned]
        if missing:
            raise ValueError(f"Provenance chunks not owned by tenant {tenant_id}: {missing}")

    @staticmethod
    def _candidates(table: dict[str, _Stored], tenant_id: str, workspace: str):
        return [
            (stored.sequence, stored.item, stored.item.embedding)
            for stored in table.values()
            if stored.item.tenant_id == tenant_id
            and stored.item.workspace == workspace
            and stored.item.embedding is not None
        ]


def _copy_entity(entity: Entity) -> Entity:
    embedding = None if entity.embedding is None else list(entity.embedding)
    return replace(entity, source_chunk_ids=list(entity.source_chunk_ids), embedding=embedding)


def _copy_relation(relation: Relation) -> Relation:
    embedding = None if relation.embedding is None else list(relation.embedding)
    return replace(relation, source_chunk_ids=list(relation.source_chunk_ids), embedding=embedding)
