"""FastAPI entrypoint for query, mode, trace and metrics endpoints."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

import structlog
from fastapi import Body, FastAPI, Header, HTTPException

from rag_engine.config import EngineSettings
from rag_engine.embedding.client import EmbeddingClient
from rag_engine.embedding.models import HashingEmbeddingModel, create_embedding_model
from rag_engine.errors import (
    EmbeddingFailed,
    QueryValidationError,
    QuotaExceededError,
    RetrievalEngineError,
    StoreAccessError,
    UpstreamCompletionError,
)
from rag_engine.obs.logging import configure_logging
from rag_engine.obs.tracing import TraceStore
from rag_engine.retrieval.graph_store import InMemoryGraphStore
from rag_engine.retrieval.modes import MODE_DESCRIPTIONS, QueryMode, normalize_plan
from rag_engine.retrieval.retriever import RetrievalEngine
from rag_engine.retrieval.sqlite_store import SQLiteChunkStore, SQLiteGraphStore
from rag_engine.retrieval.vector_store import InMemoryChunkStore
from rag_engine.service import QueryService
from rag_engine.synthesis.completion import (
    ExtractiveCompletionService,
    LangChainCompletionService,
    create_chat_model,
)
from rag_engine.synthesis.synthesizer import ResponseSynthesizer
from rag_engine.tenancy.plans import InMemoryPlanService
from rag_engine.tenancy.usage import InMemoryUsageService

log = structlog.get_logger(__name__)


@dataclass(slots=True)
class EngineRuntime:
    """A wired query service plus the backends chosen at startup."""

    service: QueryService
    embedding_backend: str
    completion_backend: str
    store_backend: str


def build_runtime(settings: EngineSettings) -> EngineRuntime:
    """Wire stores, embedding, completion and tenancy from settings.

    Without `OPENAI_API_KEY` the runtime falls back to the offline hashing
    embedder and the extractive completion service.
    """

    if settings.sqlite_path:
        chunk_store: Any = SQLiteChunkStore(
            settings.sqlite_path, dimension=settings.embedding.dimension
        )
        graph_store: Any = SQLiteGraphStore(
            settings.sqlite_path, dimension=settings.embedding.dimension
        )
        store_backend = "sqlite"
    else:
        chunk_store = InMemoryChunkStore(dimension=settings.embedding.dimension)
        graph_store = InMemoryGraphStore(
            chunk_store=chunk_store, dimension=settings.embedding.dimension
        )
        store_backend = "memory"

    embedding_model = create_embedding_model(settings.embedding, settings.openai_api_key)
    embedding_backend = "openai"
    if embedding_model is None:
        embedding_model = HashingEmbeddingModel.from_config(settings.embedding)
        embedding_backend = "hashing"

    llm = create_chat_model(settings.synthesis, settings.openai_api_key)
    if llm is not None:
        completion: Any = LangChainCompletionService(llm, settings.synthesis)
        completion_backend = "langchain"
    else:
        completion = ExtractiveCompletionService()
        completion_backend = "extractive"

    plan_service = InMemoryPlanService()
    service = QueryService(
        engine=RetrievalEngine(
            chunk_store,
            graph_store,
            EmbeddingClient(embedding_model, settings.embedding),
            settings.retrieval,
        ),
        synthesizer=ResponseSynthesizer(completion, settings.synthesis),
        plan_service=plan_service,
        usage_service=InMemoryUsageService(plan_service),
        trace_store=TraceStore(),
    )
    log.info(
        "runtime_ready",
        store=store_backend,
        embedding=embedding_backend,
        completion=completion_backend,
    )
    return EngineRuntime(
        service=service,
        embedding_backend=embedding_backend,
        completion_backend=completion_backend,
        store_backend=store_backend,
    )


def create_app(runtime: EngineRuntime | None = None) -> FastAPI:
    if runtime is None:
        settings = EngineSettings.from_env()
        configure_logging(settings.log_level, json_output=settings.log_json)
        runtime = build_runtime(settings)

    service = runtime.service
    app = FastAPI(title="Multi-tenant RAG Query Engine", version="0.1.0")
    app.state.runtime = runtime

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "embedding_backend": runtime.embedding_backend,
            "completion_backend": runtime.completion_backend,
            "store_backend": runtime.store_backend,
            "trace_count": len(service.trace_store.list_recent(limit=1000)),
        }

    @app.get("/query")
    def query_help() -> dict[str, Any]:
        return {
            "message": "POST a JSON body to this endpoint to query your documents.",
            "headers": {"X-Tenant-Id": "required, the tenant that owns the documents"},
            "body": {
                "query": "string, required",
                "mode": "string, optional (default: naive)",
                "workspace": "string, optional (default: default)",
                "top_k": "integer 1-50, optional (default: 10)",
                "system_prompt": "string, optional",
                "model": "string, optional",
            },
            "modes": {mode.value: description for mode, description in MODE_DESCRIPTIONS.items()},
        }

    @app.post("/query")
    def query(
        payload: Any = Body(...),
        x_tenant_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        try:
            result = service.execute_query(x_tenant_id or "", payload)
        except RetrievalEngineError as exc:
            raise _to_http_error(exc) from exc
        return result.model_dump()

    @app.get("/modes")
    def modes(x_tenant_id: str | None = Header(default=None)) -> dict[str, Any]:
        tenant_id = _require_tenant(x_tenant_id)
        plan = normalize_plan(service.plan_service.get_plan_name(tenant_id))
        available = service.modes_for(tenant_id)
        return {
            "plan": plan.value,
            "modes": [
                {
                    "mode": mode.value,
                    "description": MODE_DESCRIPTIONS[mode],
                    "available": mode in available,
                }
                for mode in QueryMode
            ],
        }

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str, x_tenant_id: str | None = Header(default=None)) -> dict[str, Any]:
        tenant_id = _require_tenant(x_tenant_id)
        try:
            record = service.trace_store.get(trace_id, tenant_id=tenant_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail="Trace not found") from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return service.trace_store.summary()

    return app


def _require_tenant(tenant_id: str | None) -> str:
    if not tenant_id or not tenant_id.strip():
        raise HTTPException(status_code=400, detail={"error": "X-Tenant-Id header is required"})
    return tenant_id


def _to_http_error(exc: RetrievalEngineError) -> HTTPException:
    if isinstance(exc, QueryValidationError):
        return HTTPException(status_code=400, detail={"error": str(exc), "details": exc.errors})
    if isinstance(exc, QuotaExceededError):
        return HTTPException(
            status_code=403,
            detail={
                "error": str(exc),
                "code": "LIMIT_EXCEEDED",
                "current": exc.current,
                "limit": exc.limit,
            },
        )
    if isinstance(exc, (EmbeddingFailed, UpstreamCompletionError)):
        return HTTPException(status_code=502, detail={"error": str(exc)})
    if isinstance(exc, StoreAccessError):
        return HTTPException(status_code=503, detail={"error": str(exc)})
    return HTTPException(status_code=500, detail={"error": str(exc)})


app = create_app()
