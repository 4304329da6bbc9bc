import json
from dataclasses import asdict

import pytest

from grc_rag.fusion import FusionConfig, FusionMethod
from grc_rag.keyword import KeywordSearchEngine
from grc_rag.models import BranchHit, VectorEntry
from grc_rag.search import HybridSearchEngine, collapse_by_record

QUERY = "Ransomware outbreak"


class CountingKeywordEngine(KeywordSearchEngine):
    calls = 0

    def search(self, *args, **kwargs):
        self.calls += 1
        return super().search(*args, **kwargs)


@pytest.fixture
def indexed_risk(add_record, embedder, vector_index):
    add_record("risks", id=1, title="Ransomware outbreak", description="Encrypted file servers", category="cyber")
    vector_index.upsert(
        [
            VectorEntry(
                id="risks_1",
                embedding=embedder.embed_query(QUERY),
                metadata={"namespace": "risks", "record_id": "1", "title": "Ransomware outbreak", "content": "..."},
            )
        ]
    )
    embedder.calls = 0


@pytest.fixture
def engine_factory(embeddings, vector_index, records, cache):
    created = []

    def _build(**kwargs):
        kwargs.setdefault("cache", cache)
        search = HybridSearchEngine(embeddings, vector_index, CountingKeywordEngine(records), **kwargs)
        created.append(search)
        return search

    yield _build
    for search in created:
        search.close()


def test_semantic_and_keyword_hits_fuse_on_record_id(engine_factory, indexed_risk):
    results = engine_factory().search(QUERY, "risks")

    assert len(results) == 1
    result = results[0]
    assert result.id == "1"
    assert result.semantic_score == pytest.approx(1.0)
    assert result.keyword_score == pytest.approx(1.0)
    assert result.fused_score == pytest.approx(2 / 61)
    assert result.namespace == "risks"
    assert "content" not in result.metadata


def test_cached_repeat_skips_every_backend(engine_factory, indexed_risk, embedder, vector_index):
    search = engine_factory()
    first = search.search(QUERY, "risks")
    calls = (embedder.calls, vector_index.query_calls, search.keyword.calls)

    second = search.search(QUERY, "risks")

    assert (embedder.calls, vector_index.query_calls, search.keyword.calls) == calls
    assert json.dumps([asdict(r) for r in first]) == json.dumps([asdict(r) for r in second])
    assert search.cache.get_stats()["hits"] == 1


def test_different_fusion_config_is_a_separate_cache_entry(engine_factory, indexed_risk, vector_index):
    search = engine_factory()
    search.search(QUERY, "risks")
    weighted = search.search(QUERY, "risks", config=FusionConfig(method=FusionMethod.WEIGHTED))

    assert vector_index.query_calls == 2
    assert weighted[0].fused_score == pytest.approx(0.85 + 0.15)
    assert weighted[0].fusion_method == "weighted"


def test_failed_semantic_branch_falls_back_to_keyword(engine_factory, indexed_risk, vector_index):
    vector_index.fail = True
    results = engine_factory(cache=None).search(QUERY, "risks")

    assert [result.id for result in results] == ["1"]
    assert results[0].semantic_score == 0.0
    assert results[0].keyword_score == pytest.approx(1.0)


def test_slow_branch_times_out(engine_factory, indexed_risk, vector_index):
    vector_index.delay = 1.0
    results = engine_factory(cache=None, branch_timeout=0.3).search(QUERY, "risks")
    assert [result.semantic_score for result in results] == [0.0]


def test_degraded_results_are_not_cached(engine_factory, indexed_risk, vector_index):
    search = engine_factory()
    vector_index.fail = True
    during_outage = search.search(QUERY, "risks")
    vector_index.fail = False
    after_recovery = search.search(QUERY, "risks")

    assert during_outage[0].semantic_score == 0.0
    assert after_recovery[0].semantic_score == pytest.approx(1.0)
    assert vector_index.query_calls == 2
    assert search.cache.get_stats()["hits"] == 0


def test_timed_out_results_are_not_cached(engine_factory, indexed_risk, vector_index):
    search = engine_factory(branch_timeout=0.3)
    vector_index.delay = 1.0
    search.search(QUERY, "risks")
    vector_index.delay = 0.0

    assert search.search(QUERY, "risks")[0].semantic_score == pytest.approx(1.0)


def test_both_branches_failing_returns_empty(engine_factory, vector_index):
    vector_index.fail = True
    assert engine_factory(cache=None).search("nothing indexed here", "assets") == []


def test_semantic_search_uses_cosine_scores(engine_factory, indexed_risk):
    results = engine_factory().semantic_search(QUERY, "risks")
    assert [result.id for result in results] == ["1"]
    assert results[0].fusion_method == "semantic"
    assert results[0].fused_score == pytest.approx(1.0)


def test_search_namespaces_merges_by_score(engine_factory, indexed_risk, add_record):
    add_record("incidents", id=9, title="Ransomware outbreak in finance", description="Laptops encrypted")
    results = engine_factory().search_namespaces(QUERY, ["risks", "incidents"], top_k=5)

    assert [(result.namespace, result.id) for result in results] == [("risks", "1"), ("incidents", "9")]
    scores = [result.fused_score for result in results]
    assert scores == sorted(scores, reverse=True)


def test_update_config_changes_defaults(engine_factory):
    search = engine_factory()
    config = search.update_config(method="weighted", keyword_weight=0.3)
    assert search.get_config() is config
    assert config.method is FusionMethod.WEIGHTED
    assert config.keyword_weight == 0.3
    assert search.stats("risks")["config"]["method"] == "weighted"


def test_collapse_keeps_best_hit_per_record():
    collapsed = collapse_by_record([BranchHit("7", 0.9), BranchHit("3", 0.8), BranchHit("7", 0.7)])
    assert [(hit.id, hit.score) for hit in collapsed] == [("7", 0.9), ("3", 0.8)]
