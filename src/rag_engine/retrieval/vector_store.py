"""Chunk store interfaces and the in-memory adapter."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
import math
from typing import Protocol, TypeVar

from rag_engine.config import EMBEDDING_DIMENSION
from rag_engine.retrieval.vector_codec import check_dimension
from rag_engine.types import Chunk, Document, ScoredChunk

T = TypeVar("T")


class ChunkStore(Protocol):
    """Tenant-scoped chunk access used by the retrieval engine."""

    def find_similar_chunks(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredChunk]:
        """Return the tenant's `k` nearest chunks in the workspace."""

    def get_chunks_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Chunk]:
        """Return the tenant's chunks for `ids`, in the order given."""

    def get_documents_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Document]:
        """Documents owned by `tenant_id`, in the order of `ids`."""


@dataclass(slots=True)
class _StoredChunk:
    chunk: Chunk
    sequence: int


class InMemoryChunkStore:
    """Deterministic chunk store used for tests and local prototyping.

    Every read filters on `tenant_id` first. Stored vectors are copied on write
    and on read, so callers can never mutate a persisted embedding in place.
    """

    def __init__(self, *, dimension: int = EMBEDDING_DIMENSION) -> None:
        self.dimension = dimension
        self._documents: dict[str, Document] = {}
        self._chunks: dict[str, _StoredChunk] = {}
        self._sequence = 0

    def register_document(self, document: Document) -> None:
        existing = self._documents.get(document.document_id)
        if existing is not None and existing.tenant_id != document.tenant_id:
            raise ValueError(f"Document {document.document_id} belongs to another tenant")
        self._documents[document.document_id] = document

    def upsert_chunks(self, chunks: Iterable[Chunk]) -> None:
        for chunk in chunks:
            check_dimension(chunk.embedding, self.dimension)
            document = self._documents.get(chunk.document_id)
            if document is not None and document.tenant_id != chunk.tenant_id:
                raise ValueError(
                    f"Chunk {chunk.chunk_id} tenant does not match its document's tenant"
                )
            current = self._chunks.get(chunk.chunk_id)
            if current is not None and current.chunk.tenant_id != chunk.tenant_id:
                raise ValueError(f"Chunk {chunk.chunk_id} belongs to another tenant")
            stored = _copy_chunk(chunk)
            if current is None:
                self._chunks[chunk.chunk_id] = _StoredChunk(chunk=stored, sequence=self._sequence)
                self._sequence += 1
            else:
                current.chunk = stored

    def set_embedding(self, tenant_id: str, chunk_id: str, vector: Sequence[float]) -> None:
        """Replace a chunk's vector wholesale."""
        check_dimension(vector, self.dimension)
        current = self._chunks.get(chunk_id)
        if current is None or current.chunk.tenant_id != tenant_id:
            raise KeyError(f"Chunk not found: {chunk_id}")
        current.chunk = replace(current.chunk, embedding=[float(v) for v in vector])

    def count_chunks(self, tenant_id: str, *, with_embedding: bool | None = None) -> int:
        return sum(
            1
            for record in self._chunks.values()
            if record.chunk.tenant_id == tenant_id
            and (with_embedding is None or record.chunk.has_embedding == with_embedding)
        )

    def find_similar_chunks(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredChunk]:
        candidates = [
            (record.sequence, record.chunk, record.chunk.embedding)
            for record in self._chunks.values()
            if record.chunk.tenant_id == tenant_id
            and record.chunk.workspace == workspace
            and record.chunk.embedding is not None
        ]
        ranked = rank_by_similarity(candidates, query_vector, k, min_similarity)
        return [
            ScoredChunk(chunk=_copy_chunk(chunk), similarity=score, route="naive", rank=i + 1)
            for i, (chunk, score) in enumerate(ranked)
        ]

    def get_chunks_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Chunk]:
        found: list[Chunk] = []
        seen: set[str] = set()
        for chunk_id in ids:
            if chunk_id in seen:
                continue
            seen.add(chunk_id)
            record = self._chunks.get(chunk_id)
            if record is None or record.chunk.tenant_id != tenant_id:
                continue
            found.append(_copy_chunk(record.chunk))
        return found

    def get_documents_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Document]:
        return [
            replace(document)
            for document_id in dict.fromkeys(ids)
            if (document := self._documents.get(document_id)) is not None
            and document.tenant_id == tenant_id
        ]


def rank_by_similarity(
    candidates: Iterable[tuple[int, T, Sequence[float]]],
    query_vector: Sequence[float],
    k: int,
    min_similarity: float | None = None,
) -> list[tuple[T, float]]:
    """Rank `(sequence, item, vector)` triples by cosine distance.

    Ties are broken by `sequence`, oldest first, so rankings are reproducible.
    """

    if k <= 0:
        return []
    scored: list[tuple[float, int, T, float]] = []
    for sequence, item, vector in candidates:
        similarity = cosine_similarity(query_vector, vector)
        if min_similarity is not None and similarity < min_similarity:
            continue
        scored.append((1.0 - similarity, sequence, item, similarity))
    scored.sort(key=lambda entry: (entry[0], entry[1]))
    return [(item, similarity) for _, _, item, similarity in scored[:k]]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between `a` and `b`; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b):
        return 0.0
    denominator = math.hypot(*a) * math.hypot(*b)
    if denominator == 0.0:
        return 0.0
    return math.fsum(x * y for x, y in zip(a, b)) / denominator


def _copy_chunk(chunk: Chunk) -> Chunk:
    embedding = None if chunk.embedding is None else [float(v) for v in chunk.embedding]
    return replace(chunk, embedding=embedding, metadata=dict(chunk.metadata))
