import time

import pytest
from sqlalchemy import select, text

from grc_rag.cache import CacheStats, QueryCache, SQLCacheStore
from grc_rag.db import cache_entries
from grc_rag.errors import CacheUnavailableError


class BrokenStore:
    def get(self, key):
        raise CacheUnavailableError("cache store down")

    def put(self, key, value, ttl_seconds):
        raise CacheUnavailableError("cache store down")

    def replace_value(self, key, value):
        raise CacheUnavailableError("cache store down")

    def delete(self, key):
        raise CacheUnavailableError("cache store down")

    def list_by_prefix(self, prefix):
        raise CacheUnavailableError("cache store down")


def test_miss_then_hit_updates_stats(cache):
    params = {"top_k": 5}
    assert cache.get("ransomware", "risks", params) is None

    cache.put("ransomware", "risks", params, [{"id": "1"}])
    assert cache.get("ransomware", "risks", params) == [{"id": "1"}]

    stats = cache.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["total_queries"] == 2
    assert stats["hit_rate"] == 0.5
    assert stats["by_namespace"]["risks"] == {"hits": 1, "misses": 1}


def test_key_normalises_query_but_not_params():
    key = QueryCache.make_key("  Ransomware ", "risks", {"top_k": 5})
    assert key.startswith("rag:cache:risks:")
    assert key == QueryCache.make_key("ransomware", "risks", {"top_k": 5})
    assert key != QueryCache.make_key("ransomware", "risks", {"top_k": 10})
    assert key != QueryCache.make_key("ransomware", "incidents", {"top_k": 5})


def test_namespace_invalidation_is_isolated(cache):
    cache.put("phishing", "risks", None, ["risk"])
    cache.put("phishing", "incidents", None, ["incident"])

    assert cache.invalidate_namespace("risks") == 1

    assert cache.get("phishing", "risks") is None
    assert cache.get("phishing", "incidents") == ["incident"]


def test_invalidate_query_and_clear_all(cache):
    cache.put("phishing", "risks", None, ["a"])
    cache.put("malware", "risks", None, ["b"])
    cache.put("malware", "compliance", None, ["c"])

    cache.invalidate_query("phishing", "risks")
    assert cache.get("phishing", "risks") is None
    assert cache.get("malware", "risks") == ["b"]

    assert cache.clear_all() == 2
    assert cache.get("malware", "compliance") is None


def test_namespace_ttls(engine):
    cache = QueryCache(SQLCacheStore(engine), default_ttl=3600, namespace_ttls={"incidents": 900})
    assert cache.ttl_for("incidents") == 900
    assert cache.ttl_for("documents") == 3600


def test_expired_entries_are_misses(engine):
    cache = QueryCache(SQLCacheStore(engine), namespace_ttls={"risks": 0})
    cache.put("phishing", "risks", None, ["stale"])
    assert cache.get("phishing", "risks") is None


def test_store_failures_degrade_to_miss():
    cache = QueryCache(BrokenStore())

    assert cache.get("phishing", "risks") is None
    cache.put("phishing", "risks", None, ["never stored"])
    cache.invalidate_query("phishing", "risks")
    assert cache.invalidate_namespace("risks") == 0
    assert cache.clear_all() == 0
    assert cache.get_stats()["total_queries"] == 0


def test_disabled_cache_never_touches_store():
    cache = QueryCache(BrokenStore(), enabled=False)
    cache.put("phishing", "risks", None, ["x"])
    assert cache.get("phishing", "risks") is None
    assert cache.get_stats()["total_queries"] == 0


def test_injected_stats_can_be_shared_and_reset(engine):
    stats = CacheStats()
    first = QueryCache(SQLCacheStore(engine), stats=stats)
    second = QueryCache(SQLCacheStore(engine), stats=stats)

    first.get("a", "risks")
    second.get("b", "incidents")
    assert stats.total_queries == 2

    stats.reset()
    assert stats.snapshot() == {
        "total_queries": 0,
        "hits": 0,
        "misses": 0,
        "hit_rate": 0.0,
        "by_namespace": {},
    }


def test_hit_count_is_tracked_in_entry(cache):
    store = cache.store
    cache.put("phishing", "risks", None, ["x"])
    cache.get("phishing", "risks")
    cache.get("phishing", "risks")
    raw = store.get(QueryCache.make_key("phishing", "risks"))
    assert '"hits": 2' in raw


def test_hit_does_not_extend_expiry(engine, cache):
    key = QueryCache.make_key("phishing", "risks")
    cache.put("phishing", "risks", None, ["x"])
    with engine.connect() as conn:
        before = conn.execute(select(cache_entries.c.expires_at).where(cache_entries.c.key == key)).scalar_one()

    time.sleep(0.2)
    assert cache.get("phishing", "risks") == ["x"]

    with engine.connect() as conn:
        after = conn.execute(select(cache_entries.c.expires_at).where(cache_entries.c.key == key)).scalar_one()
    assert after == before


def test_corrupt_entry_is_treated_as_a_miss(engine, cache):
    SQLCacheStore(engine).put(QueryCache.make_key("phishing", "risks"), "not json", 60)
    assert cache.get("phishing", "risks") is None


def test_sql_store_wraps_database_errors(engine):
    store = SQLCacheStore(engine)
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE cache_entries"))

    with pytest.raises(CacheUnavailableError):
        store.get("rag:cache:risks:abc")

    cache = QueryCache(store)
    assert cache.get("phishing", "risks") is None
    cache.put("phishing", "risks", None, ["x"])
    assert cache.invalidate_namespace("risks") == 0
