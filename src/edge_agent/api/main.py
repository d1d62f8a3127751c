"""FastAPI entrypoint for ingest/retrieve/run/trace endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, model_validator

from edge_agent.agent.loop import AgentLoop
from edge_agent.config import EngineConfig, Settings, get_settings
from edge_agent.engine.base import LoadOptions, ModelEngine
from edge_agent.engine.fallback import ExtractiveEngine
from edge_agent.engine.handle import ModelRegistry, ModelRole
from edge_agent.engine.hashing import HashingEmbeddingEngine
from edge_agent.errors import DimensionMismatchError, EdgeAgentError
from edge_agent.ingest.chunker import SlidingWindowChunker
from edge_agent.obs.logging import configure_logging
from edge_agent.obs.tracing import TraceStore
from edge_agent.retrieval.index import EmbeddingIndex
from edge_agent.retrieval.pipeline import RetrievalPipeline
from edge_agent.tools.builtin import register_builtin_tools
from edge_agent.tools.registry import ToolRegistry
from edge_agent.tools.router import ToolRouter
from edge_agent.types import RetrievedItem

BUILTIN_TOOL_ARTIFACT = "builtin:extractive"
BUILTIN_EMBEDDING_ARTIFACT = "builtin:hashing"


class IngestRequest(BaseModel):
    text: str | None = None
    path: str | None = None
    doc_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _one_source(self) -> "IngestRequest":
        if (self.text is None) == (self.path is None):
            raise ValueError("provide exactly one of 'text' or 'path'")
        return self


class RetrieveRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int | None = Field(default=None, ge=0, le=50)
    source: str | None = None


class RunRequest(BaseModel):
    question: str = Field(min_length=1)


def _engine_factory(config: EngineConfig) -> Callable[[ModelRole], ModelEngine]:
    def _create(role: ModelRole) -> ModelEngine:
        if role is ModelRole.TOOL:
            if config.tool_model_path:
                from edge_agent.engine.llama_cpp import LlamaCppEngine

                return LlamaCppEngine()
            return ExtractiveEngine()
        if config.embedding_model_path:
            from edge_agent.engine.llama_cpp import LlamaCppEngine

            return LlamaCppEngine(embedding=True)
        return HashingEmbeddingEngine(dimension=config.embedding_dimension)

    return _create


def build_models(config: EngineConfig) -> ModelRegistry:
    return ModelRegistry(
        factory=_engine_factory(config),
        artifacts={
            ModelRole.TOOL: config.tool_model_path or BUILTIN_TOOL_ARTIFACT,
            ModelRole.EMBEDDING: config.embedding_model_path or BUILTIN_EMBEDDING_ARTIFACT,
        },
        load_options=LoadOptions(
            thread_count=config.thread_count,
            use_memory_mapping=config.use_memory_mapping,
            context_length=config.context_length,
        ),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)

    models = build_models(settings.engine)
    index = EmbeddingIndex(metric=settings.retrieval.metric)
    pipeline = RetrievalPipeline(SlidingWindowChunker(settings.chunking), models, index)
    registry = ToolRegistry()
    register_builtin_tools(registry, pipeline)
    router = ToolRouter(registry, settings.router)
    trace_store = TraceStore()
    agent = AgentLoop(
        models=models,
        router=router,
        retrieval=pipeline,
        config=settings.agent,
        trace_store=trace_store,
    )

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        models.close()

    app = FastAPI(title="Edge Agent", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "tool_model": settings.engine.tool_model_path or BUILTIN_TOOL_ARTIFACT,
            "embedding_model": settings.engine.embedding_model_path
            or BUILTIN_EMBEDDING_ARTIFACT,
            "loaded_roles": [role.value for role in ModelRole if models.loaded(role)],
            "indexed_chunks": len(index),
            "tools": [spec.name for spec in registry.specs()],
        }

    @app.post("/ingest")
    async def ingest(request: IngestRequest) -> dict[str, Any]:
        try:
            if request.path is not None:
                report = await pipeline.ingest_path(
                    request.path, doc_id=request.doc_id, extra_metadata=request.metadata
                )
            else:
                report = await pipeline.ingest(
                    request.text or "", request.metadata, doc_id=request.doc_id
                )
        except (OSError, ValueError, EdgeAgentError) as exc:
            status = 500 if isinstance(exc, DimensionMismatchError) else 400
            raise HTTPException(status_code=status, detail=str(exc)) from exc
        return asdict(report)

    @app.post("/retrieve")
    async def retrieve(request: RetrieveRequest) -> dict[str, Any]:
        metadata_filter = {"source": request.source} if request.source else None
        top_k = settings.retrieval.top_k if request.top_k is None else request.top_k
        try:
            hits = await pipeline.retrieve(request.query, top_k, metadata_filter=metadata_filter)
        except EdgeAgentError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"items": [asdict(RetrievedItem.from_scored(hit)) for hit in hits]}

    @app.post("/run")
    async def run(request: RunRequest) -> dict[str, Any]:
        outcome = await agent.run(request.question)
        return {
            "status": outcome.status.value,
            "final_text": outcome.final_text,
            "failure": asdict(outcome.failure) if outcome.failure else None,
            "session_id": outcome.session_id,
            "tool_rounds": outcome.tool_rounds,
            "trace_id": outcome.trace_id,
        }

    @app.get("/traces")
    async def traces(limit: int = 20) -> dict[str, Any]:
        return {"items": [asdict(record) for record in trace_store.list_recent(limit=limit)]}

    @app.get("/traces/{trace_id}")
    async def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    async def metrics() -> dict[str, Any]:
        return trace_store.summary()

    return app


app = create_app()
