"""Per-tenant query quota and usage counters."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Protocol

from rag_engine.tenancy.plans import PlanService, query_limit


@dataclass(frozen=True, slots=True)
class QuotaCheck:
    allowed: bool
    current: int
    limit: int


class UsageService(Protocol):
    def check_query_quota(self, tenant_id: str) -> QuotaCheck:
        """Report whether the tenant may run another query."""

    def increment_query_usage(self, tenant_id: str) -> None:
        """Count one completed query."""

    def increment_token_usage(
        self, tenant_id: str, prompt_tokens: int, completion_tokens: int
    ) -> None:
        """Add the prompt and completion tokens one query consumed."""


class InMemoryUsageService:
    """Process-local usage counters keyed by tenant."""

    def __init__(self, plan_service: PlanService) -> None:
        self.plan_service = plan_service
        self._queries: defaultdict[str, int] = defaultdict(int)
        self._prompt_tokens: defaultdict[str, int] = defaultdict(int)
        self._completion_tokens: defaultdict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def check_query_quota(self, tenant_id: str) -> QuotaCheck:
        limit = query_limit(self.plan_service.get_plan_name(tenant_id))
        with self._lock:
            current = self._queries[tenant_id]
        return QuotaCheck(allowed=current < limit, current=current, limit=limit)

    def increment_query_usage(self, tenant_id: str) -> None:
        with self._lock:
            self._queries[tenant_id] += 1

    def increment_token_usage(
        self, tenant_id: str, prompt_tokens: int, completion_tokens: int
    ) -> None:
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("Token usage cannot be negative")
        if prompt_tokens == 0 and completion_tokens == 0:
            return
        with self._lock:
            self._prompt_tokens[tenant_id] += prompt_tokens
            self._completion_tokens[tenant_id] += completion_tokens

    def query_count(self, tenant_id: str) -> int:
        with self._lock:
            return self._queries[tenant_id]

    def token_counts(self, tenant_id: str) -> tuple[int, int]:
        """Return `(prompt_tokens, completion_tokens)` recorded for the tenant."""
        with self._lock:
            return self._prompt_tokens[tenant_id], self._completion_tokens[tenant_id]
