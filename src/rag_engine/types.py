"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DocumentStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass(slots=True)
class Document:
    """An uploaded source document owned by one tenant."""

    document_id: str
    tenant_id: str
    workspace: str = "default"
    status: DocumentStatus = DocumentStatus.PENDING
    file_name: str | None = None
    file_type: str | None = None


@dataclass(slots=True)
class Chunk:
    """A slice of a document's text, the atomic unit of retrieval.

    `embedding` is `None` when generation failed; that is distinct from a
    zero vector.
    """

    chunk_id: str
    document_id: str
    tenant_id: str
    content: str
    order_index: int = 0
    token_count: int = 0
    workspace: str = "default"
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None


@dataclass(slots=True)
class Entity:
    """A knowledge-graph node extracted from one or more chunks."""

    entity_id: str
    tenant_id: str
    name: str
    entity_type: str
    description: str | None = None
    source_chunk_ids: list[str] = field(default_factory=list)
    workspace: str = "default"
    embedding: list[float] | None = None


@dataclass(slots=True)
class Relation:
    """A typed edge between two entities of the same tenant."""

    relation_id: str
    tenant_id: str
    source_entity_id: str
    target_entity_id: str
    relation_type: str
    description: str | None = None
    source_chunk_ids: list[str] = field(default_factory=list)
    workspace: str = "default"
    embedding: list[float] | None = None


@dataclass(slots=True)
class ScoredChunk:
    """A retrieved chunk with similarity and the route that produced it."""

    chunk: Chunk
    similarity: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class ScoredEntity:
    entity: Entity
    similarity: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class ScoredRelation:
    relation: Relation
    similarity: float
    route: str
    rank: int = 0


@dataclass(slots=True)
class TokenUsage:
    """Token counters reported by the completion service."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int

    @classmethod
    def from_counts(cls, prompt_tokens: int, completion_tokens: int) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )
