"""Configuration models for the retrieval engine."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field

EMBEDDING_DIMENSION = 768


class EmbeddingConfig(BaseModel):
    """Configures embedding retries, batching and upstream rate limiting."""

    model: str = "text-embedding-3-small"
    dimension: int = Field(default=EMBEDDING_DIMENSION, ge=1)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=1.0, ge=0.0)
    batch_size: int = Field(default=100, ge=1)
    requests_per_minute: int = Field(default=1500, ge=1)
    batch_pause_seconds: float = Field(default=0.1, ge=0.0)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)

    @property
    def request_delay_seconds(self) -> float:
        """Minimum spacing between concurrent sub-call launches."""
        return 60.0 / self.requests_per_minute


class RetrievalConfig(BaseModel):
    """Configures query-time retrieval bounds."""

    default_top_k: int = Field(default=10, ge=1, le=50)
    max_top_k: int = Field(default=50, ge=1)
    similarity_threshold: float = Field(default=0.3, ge=-1.0, le=1.0)
    media_top_k: int = Field(default=20, ge=1)
    media_similarity_threshold: float = Field(default=0.2, ge=-1.0, le=1.0)
    default_workspace: str = "default"


class SynthesisConfig(BaseModel):
    """Configures context assembly and the completion call."""

    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_context_tokens: int = Field(default=6000, ge=100)
    request_timeout_seconds: float = Field(default=60.0, gt=0.0)


class EngineSettings(BaseModel):
    """Process-level settings used when wiring the engine at startup."""

    openai_api_key: str | None = None
    sqlite_path: str | None = None
    log_level: str = "INFO"
    log_json: bool = False
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        embedding = EmbeddingConfig()
        synthesis = SynthesisConfig()
        if os.getenv("OPENAI_EMBEDDING_MODEL"):
            embedding = embedding.model_copy(update={"model": os.environ["OPENAI_EMBEDDING_MODEL"]})
        if os.getenv("OPENAI_MODEL"):
            synthesis = synthesis.model_copy(update={"model": os.environ["OPENAI_MODEL"]})
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY") or None,
            sqlite_path=os.getenv("RAG_SQLITE_PATH") or None,
            log_level=os.getenv("RAG_LOG_LEVEL", "INFO"),
            log_json=os.getenv("RAG_LOG_JSON", "").lower() in {"1", "true", "yes"},
            embedding=embedding,
            synthesis=synthesis,
        )
