"""Query result cache with namespace-scoped invalidation and hit statistics."""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

from sqlalchemy import Engine, delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from .db import cache_entries, utcnow
from .errors import CacheUnavailableError
from .observability import record_cache_lookup

logger = logging.getLogger(__name__)

KEY_PREFIX = "rag:cache"


class CacheStore(Protocol):
    """Backend contract; implementations raise ``CacheUnavailableError`` when unreachable."""

    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str, ttl_seconds: int) -> None: ...

    def replace_value(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def list_by_prefix(self, prefix: str) -> list[str]: ...


class SQLCacheStore:
    """Key-value store on the ``cache_entries`` table; expired rows are dropped lazily."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, key: str) -> str | None:
        now = utcnow()
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    select(cache_entries.c.value, cache_entries.c.expires_at).where(cache_entries.c.key == key)
                ).first()
                if row is None:
                    return None
                if row.expires_at <= now:
                    conn.execute(delete(cache_entries).where(cache_entries.c.key == key))
                    return None
                return row.value
        except SQLAlchemyError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def put(self, key: str, value: str, ttl_seconds: int) -> None:
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(cache_entries).where(cache_entries.c.key == key))
                conn.execute(insert(cache_entries).values(key=key, value=value, expires_at=expires_at))
        except SQLAlchemyError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def replace_value(self, key: str, value: str) -> None:
        """Rewrite an entry in place; ``expires_at`` is left as it was."""

        try:
            with self.engine.begin() as conn:
                conn.execute(update(cache_entries).where(cache_entries.c.key == key).values(value=value))
        except SQLAlchemyError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def delete(self, key: str) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(cache_entries).where(cache_entries.c.key == key))
        except SQLAlchemyError as exc:
            raise CacheUnavailableError(str(exc)) from exc

    def list_by_prefix(self, prefix: str) -> list[str]:
        now = utcnow()
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(cache_entries.c.key).where(
                        cache_entries.c.key.startswith(prefix, autoescape=True),
                        cache_entries.c.expires_at > now,
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise CacheUnavailableError(str(exc)) from exc
        return [row.key for row in rows]


@dataclass
class NamespaceCounters:
    hits: int = 0
    misses: int = 0


@dataclass
class CacheStats:
    """Hit/miss counters owned by whoever builds the cache."""

    hits: int = 0
    misses: int = 0
    by_namespace: dict[str, NamespaceCounters] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, namespace: str, hit: bool) -> None:
        with self._lock:
            counters = self.by_namespace.setdefault(namespace, NamespaceCounters())
            if hit:
                self.hits += 1
                counters.hits += 1
            else:
                self.misses += 1
                counters.misses += 1

    @property
    def total_queries(self) -> int:
        return self.hits + self.misses

    @property
    def hit_rate(self) -> float:
        return self.hits / self.total_queries if self.total_queries else 0.0

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "total_queries": self.total_queries,
                "hits": self.hits,
                "misses": self.misses,
                "hit_rate": round(self.hit_rate, 4),
                "by_namespace": {
                    name: {"hits": counters.hits, "misses": counters.misses}
                    for name, counters in self.by_namespace.items()
                },
            }

    def reset(self) -> None:
        with self._lock:
            self.hits = 0
            self.misses = 0
            self.by_namespace.clear()


class QueryCache:
    """Caches full query results per (namespace, normalised query, params).

    Store failures never propagate: lookups degrade to a miss and writes are
    skipped, so the cache only ever affects latency.
    """

    def __init__(
        self,
        store: CacheStore,
        stats: CacheStats | None = None,
        default_ttl: int = 3600,
        namespace_ttls: Mapping[str, int] | None = None,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.stats = stats if stats is not None else CacheStats()
        self.default_ttl = default_ttl
        self.namespace_ttls = dict(namespace_ttls or {})
        self.enabled = enabled

    @staticmethod
    def make_key(query: str, namespace: str, params: Mapping[str, Any] | None = None) -> str:
        normalized = query.lower().strip()
        params_json = json.dumps(params or {}, sort_keys=True, default=str)
        digest = hashlib.sha256(f"{namespace}:{normalized}:{params_json}".encode("utf-8")).hexdigest()
        return f"{KEY_PREFIX}:{namespace}:{digest[:24]}"

    def ttl_for(self, namespace: str) -> int:
        return self.namespace_ttls.get(namespace, self.default_ttl)

    def get(self, query: str, namespace: str, params: Mapping[str, Any] | None = None) -> Any | None:
        if not self.enabled:
            return None
        key = self.make_key(query, namespace, params)
        try:
            raw = self.store.get(key)
            if raw is None:
                self._record(namespace, hit=False)
                logger.debug("Cache MISS: %s query %r", namespace, query[:50])
                return None
            entry = json.loads(raw)
            result = entry["result"]
            entry["hits"] = int(entry.get("hits", 0)) + 1
            self.store.replace_value(key, json.dumps(entry))
        except (CacheUnavailableError, ValueError, KeyError) as exc:
            logger.warning("Cache read failed for %s: %s", namespace, exc)
            return None
        self._record(namespace, hit=True)
        logger.debug("Cache HIT: %s query %r", namespace, query[:50])
        return result

    def put(self, query: str, namespace: str, params: Mapping[str, Any] | None, result: Any) -> None:
        if not self.enabled:
            return
        ttl = self.ttl_for(namespace)
        entry = {
            "query": query,
            "namespace": namespace,
            "result": result,
            "created_at": utcnow().isoformat(),
            "ttl_seconds": ttl,
            "hits": 0,
        }
        try:
            self.store.put(self.make_key(query, namespace, params), json.dumps(entry), ttl)
        except CacheUnavailableError as exc:
            logger.warning("Cache write skipped for %s: %s", namespace, exc)
            return
        logger.debug("Cached %s query %r (TTL %ss)", namespace, query[:50], ttl)

    def invalidate_namespace(self, namespace: str) -> int:
        return self._delete_prefix(f"{KEY_PREFIX}:{namespace}:")

    def invalidate_query(self, query: str, namespace: str, params: Mapping[str, Any] | None = None) -> None:
        try:
            self.store.delete(self.make_key(query, namespace, params))
        except CacheUnavailableError as exc:
            logger.warning("Cache invalidation failed for %s: %s", namespace, exc)

    def clear_all(self) -> int:
        return self._delete_prefix(f"{KEY_PREFIX}:")

    def get_stats(self) -> dict[str, Any]:
        return self.stats.snapshot()

    def _delete_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            for key in self.store.list_by_prefix(prefix):
                self.store.delete(key)
                deleted += 1
        except CacheUnavailableError as exc:
            logger.warning("Cache invalidation for prefix %s stopped after %d keys: %s", prefix, deleted, exc)
        if deleted:
            logger.info("Invalidated %d cache entries under %s", deleted, prefix)
        return deleted

    def _record(self, namespace: str, hit: bool) -> None:
        self.stats.record(namespace, hit)
        record_cache_lookup(namespace, hit)
