import uuid

import chromadb
import pytest

from grc_rag.models import VectorEntry
from grc_rag.vector_index import ChromaVectorIndex, build_where, vector_id


@pytest.fixture
def index():
    return ChromaVectorIndex(chromadb.EphemeralClient(), collection_name=f"test_{uuid.uuid4().hex}")


def entry(entry_id, embedding, namespace, record_id, **extra):
    metadata = {"namespace": namespace, "record_id": record_id, "title": entry_id, "content": "text", **extra}
    return VectorEntry(id=entry_id, embedding=embedding, metadata=metadata)


def test_vector_ids_are_deterministic():
    assert vector_id("risks", 42) == "risks_42"
    assert vector_id("documents", "7", 3) == "documents_7_3"


def test_build_where_scopes_by_namespace():
    assert build_where("risks") == {"namespace": "risks"}
    assert build_where("risks", {"status": "open", "severity": ["high", "critical"]}) == {
        "$and": [{"namespace": "risks"}, {"status": "open"}, {"severity": {"$in": ["high", "critical"]}}]
    }


def test_query_is_scoped_to_namespace(index):
    index.upsert(
        [
            entry("risks_1", [1.0, 0.0, 0.0], "risks", "1"),
            entry("risks_2", [0.0, 1.0, 0.0], "risks", "2"),
            entry("incidents_1", [1.0, 0.0, 0.0], "incidents", "1"),
        ]
    )

    matches = index.query([1.0, 0.0, 0.0], top_k=2, namespace="risks")

    assert [match.id for match in matches] == ["risks_1", "risks_2"]
    assert matches[0].score == pytest.approx(1.0, abs=1e-4)
    assert matches[1].score == pytest.approx(0.0, abs=1e-4)
    assert matches[0].metadata["record_id"] == "1"


def test_metadata_filters(index):
    index.upsert(
        [
            entry("risks_1", [1.0, 0.0, 0.0], "risks", "1", status="open"),
            entry("risks_2", [0.9, 0.1, 0.0], "risks", "2", status="closed"),
        ]
    )
    matches = index.query([1.0, 0.0, 0.0], top_k=5, namespace="risks", filters={"status": "closed"})
    assert [match.id for match in matches] == ["risks_2"]


def test_unsupported_metadata_values_are_dropped(index):
    index.upsert([entry("risks_1", [1.0, 0.0, 0.0], "risks", "1", owner=None, tags=["a"])])
    metadata = index.query([1.0, 0.0, 0.0], top_k=1, namespace="risks")[0].metadata
    assert "owner" not in metadata
    assert "tags" not in metadata


def test_delete_and_lookup_by_record(index):
    index.upsert(
        [
            entry("documents_7_0", [1.0, 0.0, 0.0], "documents", "7"),
            entry("documents_7_1", [0.0, 1.0, 0.0], "documents", "7"),
            entry("documents_8_0", [0.0, 0.0, 1.0], "documents", "8"),
        ]
    )
    assert sorted(index.ids_for_record("documents", "7")) == ["documents_7_0", "documents_7_1"]

    assert index.delete_by_ids(["documents_7_0", "documents_7_1", "documents_7"]) == 2
    assert index.ids_for_record("documents", "7") == []
    assert index.delete_by_ids(["documents_7_0"]) == 0
    assert index.count() == 1


def test_empty_collection_query_returns_nothing(index):
    assert index.query([1.0, 0.0, 0.0], top_k=3, namespace="risks") == []
