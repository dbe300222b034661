"""Retrieval modes, plan tiers and the entitlement-aware mode resolver."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import structlog

log = structlog.get_logger(__name__)


class QueryMode(str, Enum):
    NAIVE = "naive"
    LOCAL = "local"
    GLOBAL = "global"
    HYBRID = "hybrid"
    MIX = "mix"


class PlanTier(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    BUSINESS = "BUSINESS"


MODE_DESCRIPTIONS: dict[QueryMode, str] = {
    QueryMode.NAIVE: "Vector search on document chunks only",
    QueryMode.LOCAL: "Search entities, get related chunks",
    QueryMode.GLOBAL: "Search relations, traverse knowledge graph",
    QueryMode.HYBRID: "Combine local and global modes",
    QueryMode.MIX: "Full hybrid: chunks + entities + relations (recommended)",
}

# naive is the availability floor; every plan can always get an answer.
MODE_ACCESS: dict[QueryMode, frozenset[PlanTier]] = {
    QueryMode.NAIVE: frozenset(PlanTier),
    QueryMode.LOCAL: frozenset({PlanTier.STARTER, PlanTier.PRO, PlanTier.BUSINESS}),
    QueryMode.GLOBAL: frozenset({PlanTier.STARTER, PlanTier.PRO, PlanTier.BUSINESS}),
    QueryMode.HYBRID: frozenset({PlanTier.STARTER, PlanTier.PRO, PlanTier.BUSINESS}),
    QueryMode.MIX: frozenset({PlanTier.STARTER, PlanTier.PRO, PlanTier.BUSINESS}),
}


@dataclass(frozen=True, slots=True)
class ModeResolution:
    """Outcome of resolving a requested mode against a plan."""

    requested: str | None
    effective: QueryMode
    plan: PlanTier

    @property
    def downgraded(self) -> bool:
        parsed = parse_mode(self.requested)
        return parsed is not None and parsed is not self.effective


def normalize_plan(plan_name: str | PlanTier | None) -> PlanTier:
    """Map billing plan names (``pro_yearly``, ``STARTER_MONTHLY``) to a tier.

    Unknown or empty names resolve to FREE.
    """

    if isinstance(plan_name, PlanTier):
        return plan_name
    if not plan_name:
        return PlanTier.FREE
    base = plan_name.strip().upper().replace("_YEARLY", "").replace("_MONTHLY", "")
    try:
        return PlanTier(base)
    except ValueError:
        return PlanTier.FREE


def parse_mode(value: str | QueryMode | None) -> QueryMode | None:
    if isinstance(value, QueryMode):
        return value
    if not value:
        return None
    try:
        return QueryMode(value.strip().lower())
    except ValueError:
        return None


def is_mode_available(plan: str | PlanTier | None, mode: str | QueryMode) -> bool:
    parsed = parse_mode(mode)
    if parsed is None:
        return False
    return normalize_plan(plan) in MODE_ACCESS[parsed]


def available_modes(plan: str | PlanTier | None) -> list[QueryMode]:
    tier = normalize_plan(plan)
    return [mode for mode in QueryMode if tier in MODE_ACCESS[mode]]


def resolve_mode(requested: str | QueryMode | None, plan: str | PlanTier | None) -> ModeResolution:
    """Decide the effective retrieval mode for a request.

    Unset or unknown modes default to naive. A valid mode the plan is not
    entitled to is downgraded to naive instead of failing the request.
    """

    tier = normalize_plan(plan)
    requested_name = requested.value if isinstance(requested, QueryMode) else requested
    parsed = parse_mode(requested)

    if parsed is None:
        effective = QueryMode.NAIVE
    elif tier not in MODE_ACCESS[parsed]:
        effective = QueryMode.NAIVE
    else:
        effective = parsed

    resolution = ModeResolution(requested=requested_name, effective=effective, plan=tier)
    if parsed is not None and effective is not parsed:
        log.info(
            "mode_downgraded",
            requested=parsed.value,
            effective=effective.value,
            plan=tier.value,
        )
    return resolution
