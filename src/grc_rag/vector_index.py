"""Vector index client over a Chroma collection."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import chromadb

from .config import Paths, VectorSettings
from .errors import VectorIndexError
from .models import VectorEntry, VectorMatch

logger = logging.getLogger(__name__)

METADATA_TYPES = (str, int, float, bool)


class VectorIndex(Protocol):
    def upsert(self, entries: Sequence[VectorEntry]) -> int: ...

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: str,
        filters: dict[str, Any] | None = None,
    ) -> list[VectorMatch]: ...

    def delete_by_ids(self, ids: Sequence[str]) -> int: ...

    def ids_for_record(self, namespace: str, record_id: str) -> list[str]: ...

    def count(self) -> int: ...


def vector_id(namespace: str, record_id: str | int, chunk_index: int | None = None) -> str:
    """Deterministic vector id for a record or one of its chunks."""

    if chunk_index is None:
        return f"{namespace}_{record_id}"
    return f"{namespace}_{record_id}_{chunk_index}"


def build_where(namespace: str, filters: dict[str, Any] | None = None) -> dict[str, Any]:
    clauses: list[dict[str, Any]] = [{"namespace": namespace}]
    for key, value in (filters or {}).items():
        if isinstance(value, (list, tuple, set)):
            clauses.append({key: {"$in": list(value)}})
        else:
            clauses.append({key: value})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorIndex:
    """Handles upsert, similarity query and deletion against one Chroma collection.

    All namespaces share the collection; each entry carries its namespace in
    metadata and queries are always scoped by it. The collection uses cosine
    space so ``score = 1 - distance`` lies in ``[0, 1]`` for normalised vectors.
    """

    def __init__(self, client: Any, collection_name: str = "grc_records") -> None:
        self.client = client
        self.collection_name = collection_name
        self.collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    @classmethod
    def from_settings(cls, paths: Paths, vector: VectorSettings) -> ChromaVectorIndex:
        if vector.chroma_host:
            client = chromadb.HttpClient(host=vector.chroma_host, port=vector.chroma_port)
        else:
            vector_dir = Path(paths.vector_dir)
            vector_dir.mkdir(parents=True, exist_ok=True)
            client = chromadb.PersistentClient(path=str(vector_dir))
        return cls(client, vector.collection_name)

    def upsert(self, entries: Sequence[VectorEntry]) -> int:
        if not entries:
            return 0
        try:
            self.collection.upsert(
                ids=[entry.id for entry in entries],
                embeddings=[list(entry.embedding) for entry in entries],
                metadatas=[self._filter_metadata(entry.metadata) for entry in entries],
                documents=[str(entry.metadata.get("content", "")) for entry in entries],
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Upsert of {len(entries)} vectors failed: {exc}") from exc
        return len(entries)

    def query(
        self,
        vector: Sequence[float],
        top_k: int,
        namespace: str,
        filters: dict[str, Any] | None = None,
    ) -> list[VectorMatch]:
        try:
            if not self.collection.count():
                return []
            response = self.collection.query(
                query_embeddings=[list(vector)],
                n_results=top_k,
                where=build_where(namespace, filters),
                include=["metadatas", "distances"],
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Vector query in namespace {namespace} failed: {exc}") from exc

        ids = (response.get("ids") or [[]])[0]
        distances = (response.get("distances") or [[]])[0]
        metadatas = (response.get("metadatas") or [[]])[0]
        matches: list[VectorMatch] = []
        for match_id, distance, metadata in zip(ids, distances, metadatas, strict=True):
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            matches.append(VectorMatch(id=match_id, score=score, metadata=dict(metadata or {})))
        return matches

    def delete_by_ids(self, ids: Sequence[str]) -> int:
        if not ids:
            return 0
        try:
            existing = self.collection.get(ids=list(ids), include=[]).get("ids", [])
            if existing:
                self.collection.delete(ids=list(existing))
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Delete of {len(ids)} vectors failed: {exc}") from exc
        return len(existing)

    def ids_for_record(self, namespace: str, record_id: str) -> list[str]:
        try:
            response = self.collection.get(
                where={"$and": [{"namespace": namespace}, {"record_id": str(record_id)}]},
                include=[],
            )
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"Lookup of vectors for {namespace}/{record_id} failed: {exc}") from exc
        return list(response.get("ids", []))

    def count(self) -> int:
        return self.collection.count()

    @staticmethod
    def _filter_metadata(raw: dict[str, Any] | None) -> dict[str, Any]:
        cleaned: dict[str, Any] = {}
        if not raw:
            return cleaned
        for key, value in raw.items():
            if isinstance(value, METADATA_TYPES):
                cleaned[key] = value
        return cleaned
