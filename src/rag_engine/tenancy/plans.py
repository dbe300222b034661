"""Tenant plan lookup."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

from rag_engine.retrieval.modes import PlanTier, normalize_plan

QUERY_LIMITS: dict[PlanTier, int] = {
    PlanTier.FREE: 100,
    PlanTier.STARTER: 1000,
    PlanTier.PRO: 5000,
    PlanTier.BUSINESS: 20000,
}


class PlanService(Protocol):
    def get_plan_name(self, tenant_id: str) -> str:
        """Return the tenant's billing plan name, e.g. ``PRO_YEARLY``."""


class InMemoryPlanService:
    """Static tenant -> plan mapping; unknown tenants get the default plan."""

    def __init__(self, plans: Mapping[str, str] | None = None, *, default: str = "FREE") -> None:
        self._plans = dict(plans or {})
        self.default = default

    def set_plan(self, tenant_id: str, plan_name: str) -> None:
        self._plans[tenant_id] = plan_name

    def get_plan_name(self, tenant_id: str) -> str:
        return self._plans.get(tenant_id, self.default)


def query_limit(plan_name: str | PlanTier | None) -> int:
    return QUERY_LIMITS[normalize_plan(plan_name)]
