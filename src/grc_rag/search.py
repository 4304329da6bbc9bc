"""Hybrid retrieval combining vector similarity with keyword scoring."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import asdict
from typing import Any

from .cache import QueryCache
from .embeddings import EmbeddingGateway
from .fusion import FusionConfig, fuse
from .keyword import KeywordSearchEngine
from .models import BranchHit, SearchResult
from .observability import record_branch_failure, traced_span
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


def collapse_by_record(matches: list[BranchHit]) -> list[BranchHit]:
    """Keep the best-ranked vector hit per record so chunks do not crowd out other records."""

    seen: set[str] = set()
    collapsed: list[BranchHit] = []
    for hit in matches:
        if hit.id in seen:
            continue
        seen.add(hit.id)
        collapsed.append(hit)
    return collapsed


class HybridSearchEngine:
    """Runs the semantic and keyword branches concurrently and fuses their rankings."""

    def __init__(
        self,
        embeddings: EmbeddingGateway,
        vector_index: VectorIndex,
        keyword: KeywordSearchEngine,
        cache: QueryCache | None = None,
        config: FusionConfig | None = None,
        branch_timeout: float = 10.0,
        max_workers: int = 4,
    ) -> None:
        self.embeddings = embeddings
        self.vector_index = vector_index
        self.keyword = keyword
        self.cache = cache
        self.config = config or FusionConfig()
        self.branch_timeout = branch_timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="hybrid-search")

    def search(
        self,
        query: str,
        namespace: str,
        top_k: int = 10,
        filters: Mapping[str, Any] | None = None,
        config: FusionConfig | None = None,
        use_cache: bool = True,
    ) -> list[SearchResult]:
        config = config or self.config
        params = {"top_k": top_k, "filters": dict(filters or {}), "fusion": config.as_params()}
        if use_cache and self.cache is not None:
            cached = self.cache.get(query, namespace, params)
            if cached is not None:
                return [SearchResult(**item) for item in cached]

        with traced_span("hybrid_search", namespace=namespace, method=config.method.value):
            candidates = top_k * 2
            semantic_future = self._executor.submit(self._semantic_branch, query, namespace, candidates, filters)
            keyword_future = self._executor.submit(self.keyword.search, query, namespace, candidates, filters)
            wait([semantic_future, keyword_future], timeout=self.branch_timeout)
            semantic, semantic_ok = self._collect("semantic", semantic_future)
            keyword, keyword_ok = self._collect("keyword", keyword_future)
            results = fuse(semantic, keyword, config, top_k)

        logger.info(
            "Hybrid search %r in %s: semantic=%d keyword=%d fused=%d (%s)",
            query[:50],
            namespace,
            len(semantic),
            len(keyword),
            len(results),
            config.method.value,
        )
        if not (semantic_ok and keyword_ok):
            logger.info("Not caching degraded results for %r in %s", query[:50], namespace)
        elif use_cache and self.cache is not None:
            self.cache.put(query, namespace, params, [asdict(result) for result in results])
        return results

    def semantic_search(
        self,
        query: str,
        namespace: str,
        top_k: int = 10,
        filters: Mapping[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Vector-only retrieval; scores are cosine similarities."""

        with traced_span("semantic_search", namespace=namespace):
            hits = self._semantic_branch(query, namespace, top_k, filters)
        return [
            SearchResult(
                id=hit.id,
                semantic_score=hit.score,
                keyword_score=0.0,
                fused_score=hit.score,
                fusion_method="semantic",
                metadata=hit.metadata,
            )
            for hit in hits
            if hit.score >= self.config.min_semantic_score
        ][:top_k]

    def search_namespaces(
        self,
        query: str,
        namespaces: list[str],
        top_k: int = 10,
        config: FusionConfig | None = None,
        hybrid: bool = True,
    ) -> list[SearchResult]:
        """Search several namespaces and merge them into one descending ranking."""

        merged: list[SearchResult] = []
        for namespace in namespaces:
            if hybrid:
                results = self.search(query, namespace, top_k=top_k, config=config)
            else:
                results = self.semantic_search(query, namespace, top_k=top_k)
            for result in results:
                result.metadata.setdefault("namespace", namespace)
            merged.extend(results)
        merged.sort(key=lambda result: (-result.fused_score, result.namespace or "", result.id))
        return merged[:top_k]

    def get_config(self) -> FusionConfig:
        return self.config

    def update_config(self, **overrides: object) -> FusionConfig:
        self.config = self.config.merged(**overrides)
        return self.config

    def stats(self, namespace: str) -> dict[str, Any]:
        try:
            records = self.keyword.records.count(namespace)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not count records in %s: %s", namespace, exc)
            records = 0
        return {
            "semantic_enabled": True,
            "keyword_enabled": True,
            "config": self.config.as_params(),
            "namespace_records": records,
        }

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _semantic_branch(
        self,
        query: str,
        namespace: str,
        top_k: int,
        filters: Mapping[str, Any] | None,
    ) -> list[BranchHit]:
        vector = self.embeddings.embed(query)
        matches = self.vector_index.query(vector, top_k, namespace, dict(filters) if filters else None)
        hits = [
            BranchHit(
                id=str(match.metadata.get("record_id", match.id)),
                score=match.score,
                metadata={key: value for key, value in match.metadata.items() if key != "content"},
            )
            for match in matches
        ]
        return collapse_by_record(hits)

    def _collect(self, branch: str, future: Future[list[BranchHit]]) -> tuple[list[BranchHit], bool]:
        """Return the branch hits and whether the branch completed normally."""

        if not future.done():
            future.cancel()
            record_branch_failure(branch)
            logger.warning("%s branch timed out after %.1fs; continuing without it", branch, self.branch_timeout)
            return [], False
        exc = future.exception()
        if exc is not None:
            record_branch_failure(branch)
            logger.error("%s branch failed: %s", branch, exc)
            return [], False
        return future.result(), True

