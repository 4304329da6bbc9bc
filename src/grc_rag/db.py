"""SQLAlchemy engine factory and the tables owned by the retrieval core."""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Engine,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
)

metadata = MetaData()

indexing_jobs = Table(
    "indexing_jobs",
    metadata,
    Column("id", String(128), primary_key=True),
    Column("namespace", String(64), nullable=False, index=True),
    Column("record_id", String(64), nullable=False, index=True),
    Column("operation", String(16), nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("attempts", Integer, nullable=False, default=0),
    Column("created_at", DateTime, nullable=False),
    Column("completed_at", DateTime, nullable=True),
    Column("error", Text, nullable=True),
)

cache_entries = Table(
    "cache_entries",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", DateTime, nullable=False, index=True),
)


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values stored by SQLite."""

    return datetime.now(tz=timezone.utc).replace(tzinfo=None)


def create_db_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=echo, connect_args=connect_args)


def init_schema(engine: Engine) -> None:
    """Create the job and cache tables if they do not exist yet."""

    metadata.create_all(engine)
