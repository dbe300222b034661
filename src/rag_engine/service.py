"""Query boundary: validation, quota, mode resolution, retrieval and synthesis."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from rag_engine.errors import QueryValidationError, QuotaExceededError, RetrievalEngineError
from rag_engine.obs.tracing import Timer, TraceStore
from rag_engine.retrieval.modes import ModeResolution, QueryMode, available_modes, resolve_mode
from rag_engine.retrieval.retriever import RetrievalEngine
from rag_engine.schemas import (
    EntityReference,
    QueryRequest,
    QueryResult,
    SourceReference,
    TokenUsageModel,
)
from rag_engine.synthesis.completion import ChatSettings
from rag_engine.synthesis.synthesizer import ResponseSynthesizer
from rag_engine.tenancy.plans import PlanService
from rag_engine.tenancy.usage import UsageService
from rag_engine.types import TokenUsage

log = structlog.get_logger(__name__)


class QueryService:
    """Runs one tenant query end to end.

    Steps, in order: request validation, quota check, mode resolution,
    retrieval, synthesis, usage increments, trace record. Validation and quota
    failures happen before any embedding or completion call. Usage increments
    are best effort: a failing usage backend is logged and the answer is still
    returned.
    """

    def __init__(
        self,
        *,
        engine: RetrievalEngine,
        synthesizer: ResponseSynthesizer,
        plan_service: PlanService,
        usage_service: UsageService,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.engine = engine
        self.synthesizer = synthesizer
        self.plan_service = plan_service
        self.usage_service = usage_service
        self.trace_store = trace_store or TraceStore()

    def execute_query(
        self, tenant_id: str, request: QueryRequest | Mapping[str, Any]
    ) -> QueryResult:
        if not tenant_id or not tenant_id.strip():
            raise QueryValidationError("Tenant id is required")
        if not isinstance(request, QueryRequest):
            request = QueryRequest.from_payload(request)

        quota = self.usage_service.check_query_quota(tenant_id)
        if not quota.allowed:
            log.warning(
                "query_limit_exceeded",
                tenant_id=tenant_id,
                current=quota.current,
                limit=quota.limit,
            )
            raise QuotaExceededError(tenant_id, current=quota.current, limit=quota.limit)

        resolution = resolve_mode(request.mode, self.plan_service.get_plan_name(tenant_id))
        mode = resolution.effective

        timer = Timer()
        try:
            with timer:
                retrieval = self.engine.retrieve(
                    tenant_id,
                    request.query,
                    mode,
                    workspace=request.workspace,
                    top_k=request.top_k,
                )
                synthesis = self.synthesizer.synthesize(
                    request.query,
                    retrieval.chunks,
                    retrieval.entities,
                    ChatSettings(system_prompt=request.system_prompt, model=request.model),
                    relations=retrieval.relations,
                )
        except RetrievalEngineError as exc:
            self.trace_store.create_record(
                tenant_id=tenant_id,
                query=request.query,
                requested_mode=resolution.requested,
                mode_used=mode.value,
                chunk_ids=[],
                entity_ids=[],
                prompt_tokens=0,
                completion_tokens=0,
                latency_ms=timer.elapsed_ms,
                downgraded=resolution.downgraded,
                status="error",
                error=str(exc),
            )
            log.error(
                "query_failed",
                tenant_id=tenant_id,
                mode=mode.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self._record_usage(tenant_id, synthesis.token_usage)

        usage = synthesis.token_usage
        trace = self.trace_store.create_record(
            tenant_id=tenant_id,
            query=request.query,
            requested_mode=resolution.requested,
            mode_used=mode.value,
            chunk_ids=[scored.chunk.chunk_id for scored in synthesis.sources],
            entity_ids=[scored.entity.entity_id for scored in synthesis.entities],
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            latency_ms=timer.elapsed_ms,
            downgraded=resolution.downgraded,
        )
        log.info(
            "query_complete",
            tenant_id=tenant_id,
            mode=mode.value,
            downgraded=resolution.downgraded,
            sources=len(synthesis.sources),
            latency_ms=round(timer.elapsed_ms, 2),
            trace_id=trace.trace_id,
        )

        documents = self.engine.describe_documents(
            tenant_id, list(dict.fromkeys(s.chunk.document_id for s in synthesis.sources))
        )
        return QueryResult(
            response=synthesis.text,
            sources=[
                SourceReference.from_scored(scored, documents.get(scored.chunk.document_id))
                for scored in synthesis.sources
            ],
            entities=[EntityReference.from_scored(scored) for scored in synthesis.entities],
            mode_used=mode.value,
            token_usage=TokenUsageModel.from_usage(usage),
            trace_id=trace.trace_id,
        )

    def resolve(self, tenant_id: str, requested: str | None) -> ModeResolution:
        return resolve_mode(requested, self.plan_service.get_plan_name(tenant_id))

    def modes_for(self, tenant_id: str) -> list[QueryMode]:
        return available_modes(self.plan_service.get_plan_name(tenant_id))

    def _record_usage(self, tenant_id: str, usage: TokenUsage | None) -> None:
        try:
            self.usage_service.increment_query_usage(tenant_id)
            if usage is not None and (usage.prompt_tokens or usage.completion_tokens):
                self.usage_service.increment_token_usage(
                    tenant_id, usage.prompt_tokens, usage.completion_tokens
                )
        except Exception as exc:  # usage accounting must not fail an answered query
            log.warning("usage_increment_failed", tenant_id=tenant_id, error=str(exc))
