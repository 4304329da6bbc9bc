"""Core domain models for the retrieval and RAG core."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class Chunk:
    document_id: str
    chunk_index: int
    content: str
    section: str
    token_count: int
    start_char: int
    end_char: int


@dataclass(slots=True)
class VectorEntry:
    id: str
    embedding: list[float]
    metadata: dict[str, Any]


@dataclass(slots=True)
class VectorMatch:
    id: str
    score: float
    metadata: dict[str, Any]


@dataclass(slots=True)
class BranchHit:
    """A single ranked hit from either the semantic or the keyword branch."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SearchResult:
    id: str
    semantic_score: float
    keyword_score: float
    fused_score: float
    fusion_method: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def namespace(self) -> str | None:
        return self.metadata.get("namespace")


@dataclass(slots=True)
class IndexingJob:
    id: str
    namespace: str
    record_id: str
    operation: Operation
    status: JobStatus
    attempts: int
    created_at: datetime
    completed_at: datetime | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(slots=True)
class ChangeResult:
    success: bool
    job_id: str | None = None
    error: str | None = None


@dataclass(slots=True)
class RetrievedDocument:
    id: str
    namespace: str
    title: str
    content: str
    metadata: dict[str, Any]
    relevance_score: float
    token_count: int


@dataclass(slots=True)
class RAGContext:
    query: str
    retrieved_documents: list[RetrievedDocument]
    total_tokens: int
    retrieval_time_ms: float


@dataclass(slots=True)
class RAGSource:
    document_id: str
    namespace: str
    title: str
    excerpt: str
    relevance_score: float
    url: str


@dataclass(slots=True)
class RAGResponse:
    query: str
    answer: str
    confidence: float
    sources: list[RAGSource]
    generation_time_ms: float
    total_time_ms: float
    model: str = "unknown"
    context: RAGContext | None = None
