"""Keeps the vector index consistent with record-store mutations.

Every change notification becomes an :class:`IndexingJob` persisted in the
``indexing_jobs`` table and processed synchronously::

    pending -> processing -> completed
                          -> pending   (attempts < max_retries, retried later)
                          -> failed    (attempts >= max_retries, terminal)

Retries have no backoff delay: a pending job is picked up again by
``retry_pending()``, which the polling sweep calls after each pass. Vector ids
are deterministic, so duplicate or out-of-order jobs for one record converge
on the same entries without locking.
"""
from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Engine, func, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from .cache import QueryCache
from .chunking import DocumentChunker, validate_chunk
from .db import indexing_jobs, utcnow
from .embeddings import EmbeddingGateway
from .errors import IndexingJobError
from .models import ChangeResult, IndexingJob, JobStatus, Operation, VectorEntry
from .namespaces import NamespaceRegistry, NamespaceSpec
from .observability import record_indexing_outcome, traced_span
from .records import RecordStore
from .vector_index import VectorIndex, vector_id

logger = logging.getLogger(__name__)

CONTENT_PREVIEW_CHARS = 1000


class JobRepository:
    """Persistence for indexing jobs so they survive process restarts."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def add(self, job: IndexingJob) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(indexing_jobs).values(**self._to_row(job)))

    def save(self, job: IndexingJob) -> None:
        values = self._to_row(job)
        values.pop("id")
        with self.engine.begin() as conn:
            conn.execute(update(indexing_jobs).where(indexing_jobs.c.id == job.id).values(**values))

    def get(self, job_id: str) -> IndexingJob | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(indexing_jobs).where(indexing_jobs.c.id == job_id)).mappings().first()
        return self._to_job(row) if row else None

    def list(self, status: JobStatus | None = None, limit: int = 100) -> list[IndexingJob]:
        stmt = select(indexing_jobs).order_by(indexing_jobs.c.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(indexing_jobs.c.status == status.value)
        with self.engine.connect() as conn:
            return [self._to_job(row) for row in conn.execute(stmt).mappings().all()]

    def pending_retries(self, limit: int = 100) -> list[IndexingJob]:
        stmt = (
            select(indexing_jobs)
            .where(indexing_jobs.c.status == JobStatus.PENDING.value, indexing_jobs.c.attempts > 0)
            .order_by(indexing_jobs.c.created_at.asc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [self._to_job(row) for row in conn.execute(stmt).mappings().all()]

    def counts(self) -> dict[str, int]:
        stmt = select(indexing_jobs.c.status, func.count()).group_by(indexing_jobs.c.status)
        with self.engine.connect() as conn:
            counts = {status: int(total) for status, total in conn.execute(stmt).all()}
        return {status.value: counts.get(status.value, 0) for status in JobStatus}

    @staticmethod
    def _to_row(job: IndexingJob) -> dict[str, Any]:
        return {
            "id": job.id,
            "namespace": job.namespace,
            "record_id": job.record_id,
            "operation": job.operation.value,
            "status": job.status.value,
            "attempts": job.attempts,
            "created_at": job.created_at,
            "completed_at": job.completed_at,
            "error": job.error,
        }

    @staticmethod
    def _to_job(row: Mapping[str, Any]) -> IndexingJob:
        return IndexingJob(
            id=row["id"],
            namespace=row["namespace"],
            record_id=row["record_id"],
            operation=Operation(row["operation"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            error=row["error"],
        )


class AutoIndexingCoordinator:
    """Reconciles record inserts, updates and deletes into the vector index."""

    def __init__(
        self,
        records: RecordStore,
        embeddings: EmbeddingGateway,
        vector_index: VectorIndex,
        jobs: JobRepository,
        chunker: DocumentChunker | None = None,
        cache: QueryCache | None = None,
        max_retries: int = 3,
        polling_interval: float = 60.0,
        batch_size: int = 20,
        invalidate_cache: bool = True,
        enabled: bool = True,
    ) -> None:
        self.records = records
        self.namespaces: NamespaceRegistry = records.namespaces
        self.embeddings = embeddings
        self.vector_index = vector_index
        self.jobs = jobs
        self.chunker = chunker or DocumentChunker()
        self.cache = cache
        self.max_retries = max_retries
        self.polling_interval = polling_interval
        self.batch_size = batch_size
        self.invalidate_cache = invalidate_cache
        self.enabled = enabled
        self._last_cutoff: datetime | None = None
        self._stop_event = threading.Event()
        self._poll_thread: threading.Thread | None = None

    def handle_data_change(
        self,
        namespace: str,
        record_id: str | int,
        operation: Operation | str,
        data: Mapping[str, Any] | None = None,
    ) -> ChangeResult:
        """Entry point the CRUD layer calls after every write or delete."""

        if not self.enabled:
            return ChangeResult(success=False, error="Auto-indexing is disabled")
        if namespace not in self.namespaces:
            return ChangeResult(success=False, error=f"Namespace '{namespace}' not configured for auto-indexing")
        try:
            op = Operation(operation)
        except ValueError:
            return ChangeResult(success=False, error=f"Unknown operation: {operation}")

        job = IndexingJob(
            id=f"{namespace}_{record_id}_{uuid.uuid4().hex[:12]}",
            namespace=namespace,
            record_id=str(record_id),
            operation=op,
            status=JobStatus.PENDING,
            attempts=0,
            created_at=utcnow(),
        )
        self.jobs.add(job)
        logger.info("Indexing job created: %s (%s)", job.id, op.value)
        return self.process_job(job, data)

    def process_job(self, job: IndexingJob, data: Mapping[str, Any] | None = None) -> ChangeResult:
        if job.is_terminal:
            return ChangeResult(success=job.status is JobStatus.COMPLETED, job_id=job.id, error=job.error)

        job.status = JobStatus.PROCESSING
        self.jobs.save(job)
        try:
            with traced_span("indexing_job", namespace=job.namespace, operation=job.operation.value):
                if job.operation is Operation.DELETE:
                    self._delete_record(job.namespace, job.record_id)
                else:
                    self._index_record(job.namespace, job.record_id, data)
        except Exception as exc:  # noqa: BLE001
            return self._record_failure(job, exc)

        job.status = JobStatus.COMPLETED
        job.completed_at = utcnow()
        job.error = None
        self.jobs.save(job)
        record_indexing_outcome(job.namespace, job.status.value)
        logger.info("Job %s completed (%s %s/%s)", job.id, job.operation.value, job.namespace, job.record_id)
        if self.invalidate_cache and self.cache is not None:
            self.cache.invalidate_namespace(job.namespace)
        return ChangeResult(success=True, job_id=job.id)

    def retry_pending(self, limit: int = 100) -> int:
        """Reprocess jobs that failed but still have attempts left."""

        retried = 0
        for job in self.jobs.pending_retries(limit):
            self.process_job(job)
            retried += 1
        if retried:
            logger.info("Retried %d pending indexing jobs", retried)
        return retried

    def poll_recent_changes(self) -> dict[str, int]:
        """Re-submit rows modified since the previous sweep as update jobs."""

        sweep_started = utcnow()
        cutoff = self._last_cutoff or sweep_started - timedelta(seconds=self.polling_interval)
        submitted = 0
        for spec in self.namespaces:
            try:
                rows = self.records.modified_since(spec.name, cutoff)
            except SQLAlchemyError as exc:
                logger.error("Error polling %s: %s", spec.name, exc)
                continue
            if not rows:
                continue
            logger.info("Found %d recently modified %s records", len(rows), spec.name)
            for start in range(0, len(rows), self.batch_size):
                for row in rows[start : start + self.batch_size]:
                    self.handle_data_change(spec.name, row[spec.id_column], Operation.UPDATE, row)
                    submitted += 1
        self._last_cutoff = sweep_started
        retried = self.retry_pending()
        return {"submitted": submitted, "retried": retried}

    def start_polling(self) -> bool:
        if not self.enabled or self._poll_thread is not None:
            return False
        self._stop_event.clear()
        self._poll_thread = threading.Thread(target=self._poll_loop, name="auto-indexing-poller", daemon=True)
        self._poll_thread.start()
        logger.info("Started auto-indexing polling (interval: %ss)", self.polling_interval)
        return True

    def stop_polling(self) -> None:
        if self._poll_thread is None:
            return
        self._stop_event.set()
        self._poll_thread.join(timeout=max(self.polling_interval, 5.0))
        self._poll_thread = None
        logger.info("Stopped auto-indexing polling")

    @property
    def polling_active(self) -> bool:
        return self._poll_thread is not None

    def reindex_namespace(self, namespace: str) -> dict[str, int]:
        """Backfill every record of a namespace, e.g. after a new deployment."""

        indexed = failed = 0
        for record_id in self.records.all_ids(namespace):
            result = self.handle_data_change(namespace, record_id, Operation.UPDATE)
            if result.success:
                indexed += 1
            else:
                failed += 1
        return {"indexed": indexed, "failed": failed}

    def get_job(self, job_id: str) -> IndexingJob | None:
        return self.jobs.get(job_id)

    def list_jobs(self, status: JobStatus | None = None, limit: int = 100) -> list[IndexingJob]:
        return self.jobs.list(status, limit)

    def statistics(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "polling_active": self.polling_active,
            "polling_interval_seconds": self.polling_interval,
            "batch_size": self.batch_size,
            "max_retries": self.max_retries,
            "namespaces": self.namespaces.names,
            "jobs": self.jobs.counts(),
        }

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.polling_interval):
            try:
                self.poll_recent_changes()
            except Exception:  # noqa: BLE001
                logger.exception("Auto-indexing polling sweep failed")

    def _record_failure(self, job: IndexingJob, exc: Exception) -> ChangeResult:
        job.attempts += 1
        job.error = str(exc)
        if job.attempts >= self.max_retries:
            job.status = JobStatus.FAILED
            job.completed_at = utcnow()
            logger.error("Job %s failed after %d attempts: %s", job.id, job.attempts, exc)
        else:
            job.status = JobStatus.PENDING
            logger.warning("Job %s failed (attempt %d), will retry: %s", job.id, job.attempts, exc)
        self.jobs.save(job)
        record_indexing_outcome(job.namespace, job.status.value)
        return ChangeResult(success=False, job_id=job.id, error=job.error)

    def _index_record(self, namespace: str, record_id: str, data: Mapping[str, Any] | None) -> None:
        spec = self.namespaces.get(namespace)
        row = dict(data) if data is not None else self.records.fetch(namespace, record_id)
        if row is None:
            raise IndexingJobError(f"Record {record_id} not found in {namespace}")
        row.setdefault(spec.id_column, record_id)

        metadata = spec.build_metadata(row)
        metadata["record_id"] = str(record_id)
        metadata["indexed_at"] = utcnow().isoformat()
        if spec.chunked:
            entries = self._chunk_entries(spec, record_id, row, metadata)
        else:
            content = spec.build_text(row)
            entries = [
                VectorEntry(
                    id=vector_id(namespace, record_id),
                    embedding=self.embeddings.embed(content),
                    metadata={**metadata, "content": content[:CONTENT_PREVIEW_CHARS]},
                )
            ]

        stale = set(self.vector_index.ids_for_record(namespace, record_id)) - {entry.id for entry in entries}
        self.vector_index.upsert(entries)
        if stale:
            self.vector_index.delete_by_ids(sorted(stale))
        logger.info("Indexed %s record %s (%d vectors)", namespace, record_id, len(entries))

    def _chunk_entries(
        self,
        spec: NamespaceSpec,
        record_id: str,
        row: Mapping[str, Any],
        metadata: dict[str, Any],
    ) -> list[VectorEntry]:
        chunks = self.chunker.chunk(spec.body_of(row), document_id=str(record_id))
        if not chunks:
            raise IndexingJobError(f"Document {record_id} has no content to index")
        for chunk in chunks:
            valid, issues = validate_chunk(chunk)
            if not valid:
                logger.debug("Chunk %s/%d: %s", record_id, chunk.chunk_index, "; ".join(issues))
        vectors = self.embeddings.embed_many([chunk.content for chunk in chunks])
        return [
            VectorEntry(
                id=vector_id(spec.name, record_id, chunk.chunk_index),
                embedding=vector,
                metadata={
                    **metadata,
                    "chunk_index": chunk.chunk_index,
                    "section": chunk.section,
                    "token_count": chunk.token_count,
                    "content": chunk.content[:CONTENT_PREVIEW_CHARS],
                },
            )
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]

    def _delete_record(self, namespace: str, record_id: str) -> None:
        ids = set(self.vector_index.ids_for_record(namespace, record_id))
        ids.add(vector_id(namespace, record_id))
        deleted = self.vector_index.delete_by_ids(sorted(ids))
        logger.info("Deleted %s record %s from index (%d vectors)", namespace, record_id, deleted)
