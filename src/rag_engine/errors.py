"""Error taxonomy for the retrieval engine.

Validation and quota errors are raised by the query boundary before any
external call. Embedding, store and completion errors abort the current query
and surface as explicit failures; an empty retrieval set is not an error.
"""

from __future__ import annotations


class RetrievalEngineError(Exception):
    """Base class for all engine errors."""


class QueryValidationError(RetrievalEngineError):
    """Malformed query request (empty query, out-of-range top_k, ...)."""

    def __init__(self, message: str, *, errors: list[dict[str, object]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class QuotaExceededError(RetrievalEngineError):
    """The tenant has exhausted its query allowance."""

    def __init__(self, tenant_id: str, *, current: int, limit: int) -> None:
        super().__init__(
            f"Query limit reached ({current}/{limit}). Please upgrade your plan."
        )
        self.tenant_id = tenant_id
        self.current = current
        self.limit = limit


class EmbeddingFailed(RetrievalEngineError):
    """All attempts to embed a required text were exhausted."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class EmbeddingUnavailable(EmbeddingFailed):
    """No embedding model or credentials are configured."""

    def __init__(self, message: str = "Embedding model is not configured") -> None:
        super().__init__(message, attempts=0)


class UpstreamCompletionError(RetrievalEngineError):
    """The generative completion service failed or timed out."""


class StoreAccessError(RetrievalEngineError):
    """The chunk or knowledge-graph store is unreachable."""
