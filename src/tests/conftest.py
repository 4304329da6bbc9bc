import math
import time
from datetime import datetime
from pathlib import Path

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.language_models import FakeListChatModel
from sqlalchemy import DateTime, bindparam, text

from grc_rag.cache import QueryCache, SQLCacheStore
from grc_rag.db import create_db_engine, init_schema, utcnow
from grc_rag.embeddings import EmbeddingGateway
from grc_rag.errors import VectorIndexError
from grc_rag.models import VectorMatch
from grc_rag.namespaces import NamespaceRegistry
from grc_rag.records import RecordStore

EMBEDDING_SIZE = 8

RECORD_TABLES = (
    """
    CREATE TABLE risks (
        id INTEGER PRIMARY KEY,
        title TEXT, description TEXT, category TEXT, risk_level TEXT,
        status TEXT, mitigation_strategy TEXT, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE incidents (
        id INTEGER PRIMARY KEY,
        title TEXT, description TEXT, type TEXT, severity TEXT, status TEXT,
        root_cause TEXT, impact_description TEXT, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE compliance_controls (
        id INTEGER PRIMARY KEY,
        control_name TEXT, control_id TEXT, description TEXT, framework TEXT,
        category TEXT, priority TEXT, updated_at TIMESTAMP
    )
    """,
    """
    CREATE TABLE documents (
        id INTEGER PRIMARY KEY,
        title TEXT, content TEXT, doc_type TEXT, updated_at TIMESTAMP
    )
    """,
)


class CountingEmbedding(DeterministicFakeEmbedding):
    """Deterministic fake that counts how often the model is called."""

    calls: int = 0

    def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return super().embed_query(text)

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        return super().embed_documents(texts)


class FailingEmbedding(DeterministicFakeEmbedding):
    def embed_query(self, text: str) -> list[float]:
        raise RuntimeError("embedding service unavailable")

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedding service unavailable")


class FailingChatModel(FakeListChatModel):
    def _call(self, *args, **kwargs) -> str:
        raise RuntimeError("model overloaded")


class InMemoryVectorIndex:
    """Brute-force cosine index with the same contract as the Chroma adapter."""

    def __init__(self) -> None:
        self.entries = {}
        self.query_calls = 0
        self.fail = False
        self.delay = 0.0

    def upsert(self, entries) -> int:
        for entry in entries:
            self.entries[entry.id] = entry
        return len(entries)

    def query(self, vector, top_k, namespace, filters=None):
        self.query_calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise VectorIndexError("vector store unavailable")
        matches = []
        for entry in self.entries.values():
            if entry.metadata.get("namespace") != namespace:
                continue
            if any(entry.metadata.get(key) != value for key, value in (filters or {}).items()):
                continue
            score = max(0.0, min(1.0, _cosine(vector, entry.embedding)))
            matches.append(VectorMatch(id=entry.id, score=score, metadata=dict(entry.metadata)))
        matches.sort(key=lambda match: (-match.score, match.id))
        return matches[:top_k]

    def delete_by_ids(self, ids) -> int:
        deleted = 0
        for vector_id in ids:
            if self.entries.pop(vector_id, None) is not None:
                deleted += 1
        return deleted

    def ids_for_record(self, namespace, record_id):
        return sorted(
            entry.id
            for entry in self.entries.values()
            if entry.metadata.get("namespace") == namespace and entry.metadata.get("record_id") == str(record_id)
        )

    def count(self) -> int:
        return len(self.entries)


def _cosine(left, right) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0


def create_record_tables(engine) -> None:
    with engine.begin() as conn:
        for ddl in RECORD_TABLES:
            conn.execute(text(ddl))


def insert_record(engine, table: str, updated_at: datetime | None = None, **values) -> None:
    values["updated_at"] = updated_at or utcnow()
    columns = ", ".join(values)
    placeholders = ", ".join(f":{column}" for column in values)
    stmt = text(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})").bindparams(
        bindparam("updated_at", type_=DateTime)
    )
    with engine.begin() as conn:
        conn.execute(stmt, values)


@pytest.fixture
def engine(tmp_path: Path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'records.db'}")
    init_schema(engine)
    create_record_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def namespaces():
    return NamespaceRegistry()


@pytest.fixture
def records(engine, namespaces):
    return RecordStore(engine, namespaces)


@pytest.fixture
def embedder():
    return CountingEmbedding(size=EMBEDDING_SIZE)


@pytest.fixture
def embeddings(embedder):
    return EmbeddingGateway(embedder, EMBEDDING_SIZE)


@pytest.fixture
def vector_index():
    return InMemoryVectorIndex()


@pytest.fixture
def cache(engine):
    return QueryCache(SQLCacheStore(engine))


@pytest.fixture
def add_record(engine):
    def _add(table: str, updated_at: datetime | None = None, **values) -> None:
        insert_record(engine, table, updated_at=updated_at, **values)

    return _add
