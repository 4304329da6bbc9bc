"""Rank fusion strategies for semantic and keyword result lists.

Every strategy is a pure function ``(semantic, keyword, config) -> results``
over two ranked branch lists that have already been filtered by their
per-branch minimum score.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum

from .models import BranchHit, SearchResult


class FusionMethod(str, Enum):
    RRF = "rrf"
    WEIGHTED = "weighted"
    CASCADE = "cascade"


@dataclass(frozen=True, slots=True)
class FusionConfig:
    semantic_weight: float = 0.85
    keyword_weight: float = 0.15
    min_semantic_score: float = 0.3
    min_keyword_score: float = 0.2
    method: FusionMethod = FusionMethod.RRF
    rrf_k: int = 60

    def merged(self, **overrides: object) -> FusionConfig:
        values = {key: value for key, value in overrides.items() if value is not None}
        if "method" in values:
            values["method"] = FusionMethod(values["method"])
        return replace(self, **values)

    def as_params(self) -> dict[str, object]:
        return {
            "semantic_weight": self.semantic_weight,
            "keyword_weight": self.keyword_weight,
            "min_semantic_score": self.min_semantic_score,
            "min_keyword_score": self.min_keyword_score,
            "method": self.method.value,
            "rrf_k": self.rrf_k,
        }


@dataclass(slots=True)
class _Candidate:
    hit_id: str
    semantic: float
    keyword: float
    fused: float
    # 0 for items first seen in the semantic branch, 1 for keyword-only items
    tier: int
    metadata: dict


def _merge(
    semantic: list[BranchHit],
    keyword: list[BranchHit],
    semantic_part: Callable[[int, BranchHit], float],
    keyword_part: Callable[[int, BranchHit], float],
) -> dict[str, _Candidate]:
    merged: dict[str, _Candidate] = {}
    for rank, hit in enumerate(semantic):
        if hit.id in merged:
            continue
        merged[hit.id] = _Candidate(hit.id, hit.score, 0.0, semantic_part(rank, hit), 0, dict(hit.metadata))
    keyword_seen: set[str] = set()
    for rank, hit in enumerate(keyword):
        if hit.id in keyword_seen:
            continue
        keyword_seen.add(hit.id)
        existing = merged.get(hit.id)
        if existing is None:
            merged[hit.id] = _Candidate(hit.id, 0.0, hit.score, keyword_part(rank, hit), 1, dict(hit.metadata))
        else:
            existing.keyword = hit.score
            existing.fused += keyword_part(rank, hit)
            for key, value in hit.metadata.items():
                existing.metadata.setdefault(key, value)
    return merged


def reciprocal_rank_fusion(semantic: list[BranchHit], keyword: list[BranchHit], config: FusionConfig) -> list[SearchResult]:
    k = config.rrf_k
    merged = _merge(
        semantic,
        keyword,
        lambda rank, _hit: 1.0 / (k + rank + 1),
        lambda rank, _hit: 1.0 / (k + rank + 1),
    )
    return _finalize(merged, FusionMethod.RRF)


def weighted_fusion(semantic: list[BranchHit], keyword: list[BranchHit], config: FusionConfig) -> list[SearchResult]:
    merged = _merge(
        semantic,
        keyword,
        lambda _rank, hit: hit.score * config.semantic_weight,
        lambda _rank, hit: hit.score * config.keyword_weight,
    )
    return _finalize(merged, FusionMethod.WEIGHTED)


def cascade_fusion(semantic: list[BranchHit], keyword: list[BranchHit], config: FusionConfig) -> list[SearchResult]:
    merged: dict[str, _Candidate] = {}
    for hit in semantic:
        if hit.id not in merged:
            merged[hit.id] = _Candidate(hit.id, hit.score, 0.0, hit.score, 0, dict(hit.metadata))
    for hit in keyword:
        if hit.id not in merged:
            merged[hit.id] = _Candidate(hit.id, 0.0, hit.score, hit.score * config.keyword_weight, 1, dict(hit.metadata))
    return _finalize(merged, FusionMethod.CASCADE)


def _finalize(merged: dict[str, _Candidate], method: FusionMethod) -> list[SearchResult]:
    ordered = sorted(merged.values(), key=lambda c: (-c.fused, c.tier, c.hit_id))
    return [
        SearchResult(
            id=candidate.hit_id,
            semantic_score=candidate.semantic,
            keyword_score=candidate.keyword,
            fused_score=candidate.fused,
            fusion_method=method.value,
            metadata=candidate.metadata,
        )
        for candidate in ordered
    ]


FUSION_STRATEGIES: dict[FusionMethod, Callable[[list[BranchHit], list[BranchHit], FusionConfig], list[SearchResult]]] = {
    FusionMethod.RRF: reciprocal_rank_fusion,
    FusionMethod.WEIGHTED: weighted_fusion,
    FusionMethod.CASCADE: cascade_fusion,
}


def fuse(
    semantic: list[BranchHit],
    keyword: list[BranchHit],
    config: FusionConfig,
    top_k: int | None = None,
) -> list[SearchResult]:
    """Filter both branches by their thresholds, fuse, and truncate."""

    semantic = [hit for hit in semantic if hit.score >= config.min_semantic_score]
    keyword = [hit for hit in keyword if hit.score >= config.min_keyword_score]
    results = FUSION_STRATEGIES[config.method](semantic, keyword, config)
    return results if top_k is None else results[:top_k]
