"""Order-preserving unions for multi-route retrieval results."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from rag_engine.types import ScoredChunk, ScoredEntity

T = TypeVar("T")


class OrderedUnion(Generic[T]):
    """Accumulates items keyed by id; the first occurrence of a key wins.

    Routes are added in priority order (naive, local, global), so when the
    union is capped the earlier routes' hits survive.
    """

    def __init__(self, key: Callable[[T], str]) -> None:
        self._key = key
        self._items: dict[str, T] = {}

    def add(self, item: T) -> bool:
        key = self._key(item)
        if key in self._items:
            return False
        self._items[key] = item
        return True

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.add(item)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: object) -> bool:
        return key in self._items

    def items(self, limit: int | None = None) -> list[T]:
        values = list(self._items.values())
        return values if limit is None else values[:limit]


def union_chunks(routes: Iterable[list[ScoredChunk]], *, top_k: int) -> list[ScoredChunk]:
    """Deduplicate route outputs by chunk id, keep first-seen order, cap at `top_k`."""

    union: OrderedUnion[ScoredChunk] = OrderedUnion(lambda item: item.chunk.chunk_id)
    for route in routes:
        union.extend(route)
    return [
        ScoredChunk(chunk=item.chunk, similarity=item.similarity, route=item.route, rank=i + 1)
        for i, item in enumerate(union.items(top_k))
    ]


def union_entities(routes: Iterable[list[ScoredEntity]]) -> list[ScoredEntity]:
    union: OrderedUnion[ScoredEntity] = OrderedUnion(lambda item: item.entity.entity_id)
    for route in routes:
        union.extend(route)
    return union.items()
