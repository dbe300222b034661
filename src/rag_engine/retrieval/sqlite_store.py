"""SQLite-backed chunk and knowledge-graph stores.

Vectors are persisted in their canonical ``[x,y,...]`` text form. Every query
carries a ``tenant_id = ?`` predicate; similarity ranking happens in Python
over the tenant's rows only.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import structlog

from rag_engine.config import EMBEDDING_DIMENSION
from rag_engine.errors import StoreAccessError
from rag_engine.retrieval.vector_codec import (
    check_dimension,
    deserialize_vector,
    serialize_vector,
)
from rag_engine.retrieval.vector_store import rank_by_similarity
from rag_engine.types import (
    Chunk,
    Document,
    DocumentStatus,
    Entity,
    Relation,
    ScoredChunk,
    ScoredEntity,
    ScoredRelation,
)

log = structlog.get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS documents (
        document_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        workspace TEXT NOT NULL,
        status TEXT NOT NULL,
        file_name TEXT,
        file_type TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chunks (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        chunk_id TEXT NOT NULL UNIQUE,
        document_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        workspace TEXT NOT NULL,
        order_index INTEGER NOT NULL,
        content TEXT NOT NULL,
        token_count INTEGER NOT NULL,
        embedding TEXT,
        metadata TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON chunks (tenant_id, workspace)",
    """
    CREATE TABLE IF NOT EXISTS entities (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        entity_id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        workspace TEXT NOT NULL,
        name TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        description TEXT,
        source_chunk_ids TEXT NOT NULL,
        embedding TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_entities_tenant ON entities (tenant_id, workspace)",
    """
    CREATE TABLE IF NOT EXISTS relations (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        relation_id TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        workspace TEXT NOT NULL,
        source_entity_id TEXT NOT NULL,
        target_entity_id TEXT NOT NULL,
        relation_type TEXT NOT NULL,
        description TEXT,
        source_chunk_ids TEXT NOT NULL,
        embedding TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_relations_tenant ON relations (tenant_id, workspace)",
)

_CHUNK_COLUMNS = (
    "seq, chunk_id, document_id, tenant_id, workspace, order_index, "
    "content, token_count, embedding, metadata"
)
_ENTITY_COLUMNS = (
    "seq, entity_id, tenant_id, workspace, name, entity_type, "
    "description, source_chunk_ids, embedding"
)
_RELATION_COLUMNS = (
    "seq, relation_id, tenant_id, workspace, source_entity_id, target_entity_id, "
    "relation_type, description, source_chunk_ids, embedding"
)


class _SQLiteStore:
    def __init__(
        self,
        path: str | Path,
        *,
        dimension: int = EMBEDDING_DIMENSION,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.path = Path(path)
        self.dimension = dimension
        self._timeout = timeout_seconds
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.path, timeout=self._timeout)
        except sqlite3.Error as exc:
            raise StoreAccessError(f"Cannot open store at {self.path}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            log.error("store_query_failed", path=str(self.path), error=str(exc))
            raise StoreAccessError(f"Store query failed: {exc}") from exc
        finally:
            conn.close()


class SQLiteChunkStore(_SQLiteStore):
    """Chunk store persisted in a local SQLite file."""

    def register_document(self, document: Document) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT tenant_id FROM documents WHERE document_id = ?",
                (document.document_id,),
            ).fetchone()
            if row is not None and row[0] != document.tenant_id:
                raise ValueError(f"Document {document.document_id} belongs to another tenant")
            conn.execute(
                "INSERT INTO documents(document_id, tenant_id, workspace, status, "
                "file_name, file_type) VALUES(?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(document_id) DO UPDATE SET "
                "workspace=excluded.workspace, status=excluded.status, "
                "file_name=excluded.file_name, file_type=excluded.file_type",
                (
                    document.document_id,
                    document.tenant_id,
                    document.workspace,
                    DocumentStatus(document.status).value,
                    document.file_name,
                    document.file_type,
                ),
            )

    def upsert_chunks(self, chunks: Iterable[Chunk]) -> None:
        with self._connect() as conn:
            for chunk in chunks:
                check_dimension(chunk.embedding, self.dimension)
                owner = conn.execute(
                    "SELECT tenant_id FROM documents WHERE document_id = ?",
                    (chunk.document_id,),
                ).fetchone()
                if owner is not None and owner[0] != chunk.tenant_id:
                    raise ValueError(
                        f"Chunk {chunk.chunk_id} tenant does not match its document's tenant"
                    )
                current = conn.execute(
                    "SELECT tenant_id FROM chunks WHERE chunk_id = ?", (chunk.chunk_id,)
                ).fetchone()
                if current is not None and current[0] != chunk.tenant_id:
                    raise ValueError(f"Chunk {chunk.chunk_id} belongs to another tenant")
                conn.execute(
                    "INSERT INTO chunks(chunk_id, document_id, tenant_id, workspace, order_index, "
                    "content, token_count, embedding, metadata) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT(chunk_id) DO UPDATE SET document_id=excluded.document_id, "
                    "workspace=excluded.workspace, order_index=excluded.order_index, "
                    "content=excluded.content, token_count=excluded.token_count, "
                    "embedding=excluded.embedding, metadata=excluded.metadata",
                    (
                        chunk.chunk_id,
                        chunk.document_id,
                        chunk.tenant_id,
                        chunk.workspace,
                        chunk.order_index,
                        chunk.content,
                        chunk.token_count,
                        _encode_vector(chunk.embedding),
                        json.dumps(chunk.metadata, ensure_ascii=False, sort_keys=True),
                    ),
                )

    def set_embedding(self, tenant_id: str, chunk_id: str, vector: Sequence[float]) -> None:
        """Replace a chunk's vector wholesale."""
        check_dimension(vector, self.dimension)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE chunks SET embedding = ? WHERE chunk_id = ? AND tenant_id = ?",
                (serialize_vector(vector), chunk_id, tenant_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(f"Chunk not found: {chunk_id}")

    def count_chunks(self, tenant_id: str, *, with_embedding: bool | None = None) -> int:
        sql = "SELECT COUNT(*) FROM chunks WHERE tenant_id = ?"
        if with_embedding is True:
            sql += " AND embedding IS NOT NULL"
        elif with_embedding is False:
            sql += " AND embedding IS NULL"
        with self._connect() as conn:
            return int(conn.execute(sql, (tenant_id,)).fetchone()[0])

    def find_similar_chunks(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredChunk]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE tenant_id = ? AND workspace = ? "
                "AND embedding IS NOT NULL ORDER BY seq",
                (tenant_id, workspace),
            ).fetchall()
        candidates = []
        for row in rows:
            chunk = _row_to_chunk(row)
            candidates.append((row[0], chunk, chunk.embedding or []))
        ranked = rank_by_similarity(candidates, query_vector, k, min_similarity)
        return [
            ScoredChunk(chunk=chunk, similarity=score, route="naive", rank=i + 1)
            for i, (chunk, score) in enumerate(ranked)
        ]

    def get_chunks_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Chunk]:
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE tenant_id = ? "
                f"AND chunk_id IN ({placeholders})",
                (tenant_id, *wanted),
            ).fetchall()
        by_id = {row[1]: _row_to_chunk(row) for row in rows}
        return [by_id[chunk_id] for chunk_id in wanted if chunk_id in by_id]

    def get_documents_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Document]:
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT document_id, tenant_id, workspace, status, file_name, file_type "
                f"FROM documents WHERE tenant_id = ? AND document_id IN ({placeholders})",
                (tenant_id, *wanted),
            ).fetchall()
        by_id = {
            row[0]: Document(
                document_id=row[0],
                tenant_id=row[1],
                workspace=row[2],
                status=DocumentStatus(row[3]),
                file_name=row[4],
                file_type=row[5],
            )
            for row in rows
        }
        return [by_id[document_id] for document_id in wanted if document_id in by_id]


class SQLiteGraphStore(_SQLiteStore):
    """Entity/relation store sharing the SQLite file of `SQLiteChunkStore`.

    Provenance chunk ids are checked against the `chunks` table of the same
    file, so they must be written after the chunks they reference.
    """

    def upsert_entity(self, entity: Entity) -> None:
        check_dimension(entity.embedding, self.dimension)
        with self._connect() as conn:
            self._check_provenance(conn, entity.tenant_id, entity.source_chunk_ids)
            self._check_owner(conn, "entities", "entity_id", entity.entity_id, entity.tenant_id)
            conn.execute(
                "INSERT INTO entities(entity_id, tenant_id, workspace, name, entity_type, "
                "description, source_chunk_ids, embedding) VALUES(?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(entity_id) DO UPDATE SET workspace=excluded.workspace, "
                "name=excluded.name, entity_type=excluded.entity_type, "
                "description=excluded.description, source_chunk_ids=excluded.source_chunk_ids, "
                "embedding=excluded.embedding",
                (
                    entity.entity_id,
                    entity.tenant_id,
                    entity.workspace,
                    entity.name,
                    entity.entity_type,
                    entity.description,
                    json.dumps(list(entity.source_chunk_ids)),
                    _encode_vector(entity.embedding),
                ),
            )

    def upsert_relation(self, relation: Relation) -> None:
        check_dimension(relation.embedding, self.dimension)
        with self._connect() as conn:
            for endpoint in (relation.source_entity_id, relation.target_entity_id):
                row = conn.execute(
                    "SELECT 1 FROM entities WHERE entity_id = ? AND tenant_id = ?",
                    (endpoint, relation.tenant_id),
                ).fetchone()
                if row is None:
                    raise ValueError(
                        f"Relation {relation.relation_id} endpoint {endpoint} "
                        "does not exist for this tenant"
                    )
            self._check_provenance(conn, relation.tenant_id, relation.source_chunk_ids)
            self._check_owner(
                conn, "relations", "relation_id", relation.relation_id, relation.tenant_id
            )
            conn.execute(
                "INSERT INTO relations(relation_id, tenant_id, workspace, source_entity_id, "
                "target_entity_id, relation_type, description, source_chunk_ids, embedding) "
                "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?) ON CONFLICT(relation_id) DO UPDATE SET "
                "workspace=excluded.workspace, source_entity_id=excluded.source_entity_id, "
                "target_entity_id=excluded.target_entity_id, "
                "relation_type=excluded.relation_type, description=excluded.description, "
                "source_chunk_ids=excluded.source_chunk_ids, embedding=excluded.embedding",
                (
                    relation.relation_id,
                    relation.tenant_id,
                    relation.workspace,
                    relation.source_entity_id,
                    relation.target_entity_id,
                    relation.relation_type,
                    relation.description,
                    json.dumps(list(relation.source_chunk_ids)),
                    _encode_vector(relation.embedding),
                ),
            )

    def find_similar_entities(
        self,
        tenant_id: str,
        workspace: str,
        query_vector: Sequence[float],
        k: int,
        *,
        min_similarity: float | None = None,
    ) -> list[ScoredEntity]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE tenant_id = ? AND workspace = ? "
                "AND embedding IS NOT NULL ORDER BY seq",
                (tenant_id, workspace),
            ).fetchall()
        candidates = []
        for row in rows:
            entity = _row_to_entity(row)
            candidates.append((row[0], entity, entity.embedding or []))
        ranked = rank_by_similarity(candidates, query_vector, k, min_similarity)
        return [
            ScoredEntity(entity=entity, similarity=score, route="local", rank=i + 1)
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
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_RELATION_COLUMNS} FROM relations WHERE tenant_id = ? "
                "AND workspace = ? AND embedding IS NOT NULL ORDER BY seq",
                (tenant_id, workspace),
            ).fetchall()
        candidates = []
        for row in rows:
            relation = _row_to_relation(row)
            candidates.append((row[0], relation, relation.embedding or []))
        ranked = rank_by_similarity(candidates, query_vector, k, min_similarity)
        return [
            ScoredRelation(relation=relation, similarity=score, route="global", rank=i + 1)
            for i, (relation, score) in enumerate(ranked)
        ]

    def get_entities_by_ids(self, tenant_id: str, ids: Sequence[str]) -> list[Entity]:
        wanted = list(dict.fromkeys(ids))
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_ENTITY_COLUMNS} FROM entities WHERE tenant_id = ? "
                f"AND entity_id IN ({placeholders})",
                (tenant_id, *wanted),
            ).fetchall()
        by_id = {row[1]: _row_to_entity(row) for row in rows}
        return [by_id[entity_id] for entity_id in wanted if entity_id in by_id]

    @staticmethod
    def _check_provenance(
        conn: sqlite3.Connection, tenant_id: str, chunk_ids: Sequence[str]
    ) -> None:
        wanted = list(dict.fromkeys(chunk_ids))
        if not wanted:
            return
        placeholders = ",".join("?" for _ in wanted)
        rows = conn.execute(
            f"SELECT chunk_id FROM chunks WHERE tenant_id = ? AND chunk_id IN ({placeholders})",
            (tenant_id, *wanted),
        ).fetchall()
        owned = {row[0] for row in rows}
        missing = [chunk_id for chunk_id in wanted if chunk_id not in owned]
        if missing:
            raise ValueError(f"Provenance chunks not owned by tenant {tenant_id}: {missing}")

    @staticmethod
    def _check_owner(
        conn: sqlite3.Connection, table: str, key_column: str, key: str, tenant_id: str
    ) -> None:
        row = conn.execute(
            f"SELECT tenant_id FROM {table} WHERE {key_column} = ?", (key,)
        ).fetchone()
        if row is not None and row[0] != tenant_id:
            raise ValueError(f"{key} belongs to another tenant")


def _encode_vector(vector: Sequence[float] | None) -> str | None:
    return None if vector is None else serialize_vector(vector)


def _decode_vector(raw: str | None) -> list[float] | None:
    return None if raw is None else deserialize_vector(raw)


def _row_to_chunk(row: Sequence[Any]) -> Chunk:
    try:
        return Chunk(
            chunk_id=row[1],
            document_id=row[2],
            tenant_id=row[3],
            workspace=row[4],
            order_index=int(row[5]),
            content=row[6],
            token_count=int(row[7]),
            embedding=_decode_vector(row[8]),
            metadata=json.loads(row[9]),
        )
    except ValueError as exc:
        raise _corrupt_row("chunk", row[1], exc) from exc


def _row_to_entity(row: Sequence[Any]) -> Entity:
    try:
        return Entity(
            entity_id=row[1],
            tenant_id=row[2],
            workspace=row[3],
            name=row[4],
            entity_type=row[5],
            description=row[6],
            source_chunk_ids=list(json.loads(row[7])),
            embedding=_decode_vector(row[8]),
        )
    except ValueError as exc:
        raise _corrupt_row("entity", row[1], exc) from exc


def _row_to_relation(row: Sequence[Any]) -> Relation:
    try:
        return Relation(
            relation_id=row[1],
            tenant_id=row[2],
            workspace=row[3],
            source_entity_id=row[4],
            target_entity_id=row[5],
            relation_type=row[6],
            description=row[7],
            source_chunk_ids=list(json.loads(row[8])),
            embedding=_decode_vector(row[9]),
        )
    except ValueError as exc:
        raise _corrupt_row("relation", row[1], exc) from exc


def _corrupt_row(kind: str, key: str, exc: ValueError) -> StoreAccessError:
    """Undecodable stored values surface as store failures, not caller errors."""
    log.error("store_row_corrupt", kind=kind, key=key, error=str(exc))
    return StoreAccessError(f"Corrupt {kind} row {key}: {exc}")
