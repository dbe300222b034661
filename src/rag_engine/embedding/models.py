"""Embedding model adapters and a deterministic offline implementation."""

from __future__ import annotations

import math
import re
from collections import Counter
from hashlib import blake2b
from typing import Any, Protocol

from rag_engine.config import EMBEDDING_DIMENSION, EmbeddingConfig


class EmbeddingModel(Protocol):
    """One remote (or local) embedding call; may raise on any failure."""

    def embed_content(self, text: str) -> list[float]:
        """Embed one text."""


class LangChainEmbeddingModel:
    """Adapts any `langchain_core.embeddings.Embeddings` to `EmbeddingModel`."""

    def __init__(self, embeddings: Any) -> None:
        self._embeddings = embeddings

    def embed_content(self, text: str) -> list[float]:
        return [float(value) for value in self._embeddings.embed_query(text)]


_WORD = re.compile(r"\w+")


class HashingEmbeddingModel:
    """Deterministic feature-hashed embedding without external model calls.

    Used for tests and for running the API without credentials. Each word
    token is hashed to one signed bucket, weighted by its count in the text,
    so texts sharing words land close to each other.
    """

    def __init__(self, dimension: int = EMBEDDING_DIMENSION) -> None:
        if dimension < 1:
            raise ValueError(f"Embedding dimension must be positive, got {dimension}")
        self.dimension = dimension

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "HashingEmbeddingModel":
        return cls(config.dimension)

    def embed_content(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for token, count in Counter(_WORD.findall(text.lower())).items():
            bucket = int.from_bytes(blake2b(token.encode("utf-8"), digest_size=8).digest(), "big")
            # top bit of the digest picks the sign
            sign = -1.0 if bucket >> 63 else 1.0
            vector[bucket % self.dimension] += sign * count

        norm = math.hypot(*vector)
        if norm == 0.0:
            return vector
        return [value / norm for value in vector]


def create_embedding_model(config: EmbeddingConfig, api_key: str | None) -> EmbeddingModel | None:
    """Build the OpenAI embedding model, or `None` when no key is configured.

    Retries are disabled on the SDK side; `EmbeddingClient` owns the retry loop.
    """

    if not api_key:
        return None

    from langchain_openai import OpenAIEmbeddings

    embeddings = OpenAIEmbeddings(
        model=config.model,
        dimensions=config.dimension,
        api_key=api_key,
        timeout=config.request_timeout_seconds,
        max_retries=0,
    )
    return LangChainEmbeddingModel(embeddings)
