"""Request and response models for the query boundary."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from rag_engine.errors import QueryValidationError
from rag_engine.types import Document, ScoredChunk, ScoredEntity, TokenUsage

_PREVIEW_CHARS = 200


class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    query: str = Field(min_length=1, max_length=8000)
    mode: str | None = None
    workspace: str = Field(default="default", min_length=1, max_length=128)
    top_k: int = Field(default=10, ge=1, le=50)
    system_prompt: str | None = Field(default=None, max_length=8000)
    model: str | None = None

    @field_validator("query")
    @classmethod
    def _strip_query(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("Query is required")
        return stripped

    @classmethod
    def from_payload(cls, payload: Any) -> "QueryRequest":
        """Validate a raw JSON body, raising `QueryValidationError` on failure."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            errors = [
                {"loc": list(error["loc"]), "msg": error["msg"], "type": error["type"]}
                for error in exc.errors()
            ]
            raise QueryValidationError(_summarize(errors), errors=errors) from exc


class SourceReference(BaseModel):
    chunk_id: str
    document_id: str
    similarity: float
    content: str
    file_name: str | None = None
    file_type: str | None = None

    @classmethod
    def from_scored(
        cls, scored: ScoredChunk, document: Document | None = None
    ) -> "SourceReference":
        content = scored.chunk.content
        if len(content) > _PREVIEW_CHARS:
            content = content[:_PREVIEW_CHARS] + "..."
        return cls(
            chunk_id=scored.chunk.chunk_id,
            document_id=scored.chunk.document_id,
            similarity=round(scored.similarity, 4),
            content=content,
            file_name=document.file_name if document else None,
            file_type=document.file_type if document else None,
        )


class EntityReference(BaseModel):
    entity_id: str
    name: str
    entity_type: str

    @classmethod
    def from_scored(cls, scored: ScoredEntity) -> "EntityReference":
        entity = scored.entity
        return cls(entity_id=entity.entity_id, name=entity.name, entity_type=entity.entity_type)


class TokenUsageModel(BaseModel):
    prompt_tokens: int = Field(ge=0)
    completion_tokens: int = Field(ge=0)
    total_tokens: int = Field(ge=0)

    @classmethod
    def from_usage(cls, usage: TokenUsage | None) -> "TokenUsageModel | None":
        if usage is None:
            return None
        return cls(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )


class QueryResult(BaseModel):
    response: str
    sources: list[SourceReference] = Field(default_factory=list)
    entities: list[EntityReference] = Field(default_factory=list)
    mode_used: str
    token_usage: TokenUsageModel | None = None
    trace_id: str | None = None


def _summarize(errors: list[dict[str, Any]]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    field = ".".join(str(part) for part in first["loc"]) or "body"
    return f"Invalid request: {field}: {first['msg']}"
