"""Embedding client with bounded retry, batching and launch spacing."""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from time import perf_counter

import structlog

from rag_engine.config import EmbeddingConfig
from rag_engine.embedding.models import EmbeddingModel
from rag_engine.errors import EmbeddingFailed, EmbeddingUnavailable

log = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class EmbeddingAttempt:
    """Observer record emitted after every single-embed attempt."""

    attempt: int
    max_attempts: int
    succeeded: bool
    latency_ms: float
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BatchProgress:
    completed: int
    total: int
    succeeded: int
    failed: int
    group: int
    groups: int


class EmbeddingClient:
    """Wraps an `EmbeddingModel` with the engine's retry and rate-limit policy.

    `embed` retries up to `max_attempts` times with exponential backoff
    (1s, 2s, ...) and raises `EmbeddingFailed` once attempts are exhausted.

    `embed_batch` never raises for individual failures: a failed text is
    recorded as an empty vector at its original position. Within a group,
    sub-calls run concurrently and their launches are spaced by
    `60 / requests_per_minute` seconds; groups are separated by a short pause.
    """

    def __init__(
        self,
        model: EmbeddingModel | None,
        config: EmbeddingConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._model = model
        self.config = config or EmbeddingConfig()
        self._sleep = sleep
        self._observer: Callable[[EmbeddingAttempt], None] | None = None

    @property
    def available(self) -> bool:
        return self._model is not None

    def set_observer(self, observer: Callable[[EmbeddingAttempt], None] | None) -> None:
        """Set an optional callback invoked after each single-embed attempt."""
        self._observer = observer

    def embed(self, text: str) -> list[float]:
        model = self._require_model()
        max_attempts = self.config.max_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            start = perf_counter()
            vector: list[float] | None = None
            try:
                vector = self._checked(model.embed_content(text))
                if vector is None:
                    last_error = ValueError("No embedding values returned")
            except Exception as exc:  # provider SDKs raise heterogeneous error types
                last_error = exc
            latency_ms = (perf_counter() - start) * 1000.0

            self._notify(
                EmbeddingAttempt(
                    attempt=attempt,
                    max_attempts=max_attempts,
                    succeeded=vector is not None,
                    latency_ms=latency_ms,
                    error=None if vector is not None else str(last_error),
                )
            )
            if vector is not None:
                log.debug("embedding_succeeded", attempt=attempt, latency_ms=round(latency_ms, 2))
                return vector

            log.warning(
                "embedding_attempt_failed",
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(last_error),
            )
            if attempt < max_attempts:
                delay = self.config.backoff_base_seconds * (2 ** (attempt - 1))
                log.info("embedding_retry_scheduled", attempt=attempt, delay_seconds=delay)
                self._sleep(delay)

        raise EmbeddingFailed(
            f"Failed to generate embedding after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
        ) from last_error

    def embed_batch(
        self,
        texts: Sequence[str],
        on_progress: Callable[[BatchProgress], None] | None = None,
    ) -> list[list[float]]:
        """Embed many texts; the result always has `len(texts)` entries in order."""

        model = self._require_model()
        total = len(texts)
        if total == 0:
            return []

        batch_size = self.config.batch_size
        groups = (total + batch_size - 1) // batch_size
        results: list[list[float]] = [[] for _ in range(total)]
        completed = succeeded = failed = 0
        log.info("embedding_batch_started", total=total, groups=groups)

        for group_index, group_start in enumerate(range(0, total, batch_size), start=1):
            group = texts[group_start : group_start + batch_size]
            log.info(
                "embedding_group_started",
                group=group_index,
                groups=groups,
                first_index=group_start,
                last_index=group_start + len(group) - 1,
            )
            futures = self._launch_group(model, group)
            for offset, future in enumerate(futures):
                index = group_start + offset
                try:
                    results[index] = future.result(timeout=self.config.request_timeout_seconds)
                    succeeded += 1
                except Exception as exc:  # timeouts and provider errors both mark the slot failed
                    failed += 1
                    log.warning("embedding_batch_item_failed", index=index, error=repr(exc))
                completed += 1
                if on_progress is not None:
                    on_progress(
                        BatchProgress(
                            completed=completed,
                            total=total,
                            succeeded=succeeded,
                            failed=failed,
                            group=group_index,
                            groups=groups,
                        )
                    )

            if group_start + batch_size < total:
                self._sleep(self.config.batch_pause_seconds)

        log.info("embedding_batch_complete", total=total, succeeded=succeeded, failed=failed)
        return results

    def _launch_group(
        self, model: EmbeddingModel, group: Sequence[str]
    ) -> list[Future[list[float]]]:
        pool = ThreadPoolExecutor(max_workers=len(group), thread_name_prefix="embed")
        futures: list[Future[list[float]]] = []
        try:
            for offset, text in enumerate(group):
                if offset > 0:
                    self._sleep(self.config.request_delay_seconds)
                futures.append(pool.submit(self._embed_once, model, text))
        finally:
            # Running sub-calls finish on their own; results are collected by the caller.
            pool.shutdown(wait=False)
        return futures

    def _embed_once(self, model: EmbeddingModel, text: str) -> list[float]:
        vector = self._checked(model.embed_content(text))
        if vector is None:
            raise ValueError("No embedding values returned")
        return vector

    def _checked(self, vector: Sequence[float] | None) -> list[float] | None:
        if not vector:
            return None
        if len(vector) != self.config.dimension:
            raise ValueError(
                f"Embedding has {len(vector)} components, expected {self.config.dimension}"
            )
        return [float(value) for value in vector]

    def _require_model(self) -> EmbeddingModel:
        if self._model is None:
            log.error("embedding_model_unavailable")
            raise EmbeddingUnavailable()
        return self._model

    def _notify(self, record: EmbeddingAttempt) -> None:
        if self._observer is not None:
            self._observer(record)
