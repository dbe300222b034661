"""Query tracing, cost accounting, and token estimation."""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)


@dataclass(slots=True)
class QueryTrace:
    trace_id: str
    timestamp_utc: str
    tenant_id: str
    query: str
    requested_mode: str | None
    mode_used: str
    chunk_ids: list[str]
    entity_ids: list[str]
    prompt_tokens: int
    completion_tokens: int
    estimated_cost_usd: float
    latency_ms: float
    downgraded: bool = False
    status: str = "ok"
    error: str | None = None


@dataclass(slots=True)
class CostModel:
    """Simple token pricing model (USD per 1K tokens)."""

    input_per_1k: float = 0.00015
    output_per_1k: float = 0.0006

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1000.0) * self.input_per_1k + (
            output_tokens / 1000.0
        ) * self.output_per_1k


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, cost_model: CostModel | None = None, max_records: int = 10_000) -> None:
        self._records: dict[str, QueryTrace] = {}
        self._cost_model = cost_model or CostModel()
        self._max_records = max_records

    def create_record(
        self,
        *,
        tenant_id: str,
        query: str,
        requested_mode: str | None,
        mode_used: str,
        chunk_ids: list[str],
        entity_ids: list[str],
        prompt_tokens: int,
        completion_tokens: int,
        latency_ms: float,
        downgraded: bool = False,
        status: str = "ok",
        error: str | None = None,
    ) -> QueryTrace:
        trace_id = str(uuid.uuid4())
        record = QueryTrace(
            trace_id=trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            tenant_id=tenant_id,
            query=query,
            requested_mode=requested_mode,
            mode_used=mode_used,
            chunk_ids=chunk_ids,
            entity_ids=entity_ids,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            estimated_cost_usd=self._cost_model.estimate_cost(prompt_tokens, completion_tokens),
            latency_ms=latency_ms,
            downgraded=downgraded,
            status=status,
            error=error,
        )
        self._records[trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str, *, tenant_id: str | None = None) -> QueryTrace:
        record = self._records.get(trace_id)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20, *, tenant_id: str | None = None) -> list[QueryTrace]:
        records = [
            record
            for record in self._records.values()
            if tenant_id is None or record.tenant_id == tenant_id
        ]
        return records[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "failed_requests": 0,
                "downgraded_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "total_prompt_tokens": 0,
                "total_completion_tokens": 0,
                "total_estimated_cost_usd": 0.0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        downgraded = sum(1 for record in records if record.downgraded)

        return {
            "total_requests": total,
            "failed_requests": sum(1 for record in records if record.status != "ok"),
            "downgraded_requests": downgraded,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "total_prompt_tokens": sum(record.prompt_tokens for record in records),
            "total_completion_tokens": sum(record.completion_tokens for record in records),
            "total_estimated_cost_usd": sum(record.estimated_cost_usd for record in records),
        }


class Timer:
    """Simple context timer used around a query."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
