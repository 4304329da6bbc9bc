"""FastAPI server exposing search, question answering and indexing endpoints."""
from __future__ import annotations

import asyncio
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .errors import ConfigurationError
from .models import Operation
from .services import Services, get_services

app = FastAPI(title="GRC Hybrid Retrieval & RAG", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class SearchRequest(BaseModel):
    query: str = Field(..., description="Free-text query")
    namespace: str = Field(..., description="Namespace to search")
    top_k: int = Field(default=10, ge=1, le=100)
    filters: dict[str, Any] | None = Field(default=None, description="Metadata equality filters")
    method: str | None = Field(default=None, description="Fusion method override: rrf, weighted or cascade")


class AskRequest(BaseModel):
    question: str = Field(..., description="User question")
    namespace: str | None = Field(default=None, description="Restrict retrieval to one namespace")
    preset: str = Field(default="detailed")
    top_k: int | None = Field(default=None, ge=1, le=50)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)


class IndexEvent(BaseModel):
    namespace: str
    record_id: str
    operation: Operation
    data: dict[str, Any] | None = None


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/search")
async def search(payload: SearchRequest, services: Services = Depends(get_services)) -> dict:  # noqa: B008
    try:
        services.namespaces.get(payload.namespace)
        config = services.search.get_config().merged(method=payload.method) if payload.method else None
    except (ConfigurationError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    results = await asyncio.to_thread(
        services.search.search,
        payload.query,
        payload.namespace,
        payload.top_k,
        payload.filters,
        config,
    )
    return {"results": [asdict(result) for result in results], "total": len(results)}


@app.post("/ask")
async def ask(payload: AskRequest, services: Services = Depends(get_services)) -> dict:  # noqa: B008
    try:
        config = services.rag.preset(payload.preset, top_k=payload.top_k, temperature=payload.temperature)
        if payload.namespace is not None:
            services.namespaces.get(payload.namespace)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    response = await asyncio.to_thread(services.rag.query, payload.question, payload.namespace, config)
    return {
        "query": response.query,
        "answer": response.answer,
        "confidence": response.confidence,
        "sources": [asdict(source) for source in response.sources],
        "model": response.model,
        "generation_time_ms": response.generation_time_ms,
        "total_time_ms": response.total_time_ms,
    }


@app.post("/index/events", status_code=202)
async def index_event(payload: IndexEvent, services: Services = Depends(get_services)) -> dict:  # noqa: B008
    if payload.namespace not in services.namespaces:
        raise HTTPException(status_code=404, detail=f"Namespace '{payload.namespace}' is not configured")
    result = await asyncio.to_thread(
        services.indexer.handle_data_change,
        payload.namespace,
        payload.record_id,
        payload.operation,
        payload.data,
    )
    return asdict(result)


@app.get("/index/stats")
def index_stats(services: Services = Depends(get_services)) -> dict:  # noqa: B008
    return services.indexer.statistics()


@app.get("/index/jobs/{job_id}")
def index_job(job_id: str, services: Services = Depends(get_services)) -> dict:  # noqa: B008
    job = services.indexer.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return asdict(job)


@app.get("/cache/stats")
def cache_stats(services: Services = Depends(get_services)) -> dict:  # noqa: B008
    return services.cache.get_stats()


@app.post("/cache/invalidate/{namespace}")
def invalidate_cache(namespace: str, services: Services = Depends(get_services)) -> dict:  # noqa: B008
    if namespace not in services.namespaces:
        raise HTTPException(status_code=404, detail=f"Namespace '{namespace}' is not configured")
    return {"namespace": namespace, "invalidated": services.cache.invalidate_namespace(namespace)}


__all__ = ["app"]
