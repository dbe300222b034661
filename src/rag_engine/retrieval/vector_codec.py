"""Canonical text form of embedding vectors: ``[x,y,z,...]``.

The bracketed, comma-separated form is what pgvector-style columns accept on
insert. Components are written with ``repr`` so that parsing them back yields
exactly the same floats.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from rag_engine.config import EMBEDDING_DIMENSION


def serialize_vector(vector: Sequence[float]) -> str:
    parts = []
    for value in vector:
        number = float(value)
        if not math.isfinite(number):
            raise ValueError(f"Vector component is not finite: {value!r}")
        parts.append(repr(number))
    return "[" + ",".join(parts) + "]"


def deserialize_vector(raw: str) -> list[float]:
    text = raw.strip()
    if len(text) < 2 or text[0] != "[" or text[-1] != "]":
        raise ValueError(f"Not a bracketed vector string: {raw[:40]!r}")
    body = text[1:-1].strip()
    if not body:
        return []
    try:
        return [float(part) for part in body.split(",")]
    except ValueError as exc:
        raise ValueError(f"Malformed vector component in {raw[:40]!r}") from exc


def is_valid_embedding(
    vector: Sequence[float] | None, dimension: int = EMBEDDING_DIMENSION
) -> bool:
    return vector is not None and len(vector) == dimension


def check_dimension(vector: Sequence[float] | None, dimension: int = EMBEDDING_DIMENSION) -> None:
    """Raise if a present vector has the wrong length; `None` is allowed."""
    if vector is not None and len(vector) != dimension:
        raise ValueError(
            f"Embedding must have {dimension} components, got {len(vector)}"
        )
