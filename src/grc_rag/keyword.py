"""Keyword scoring over the record store."""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from .models import BranchHit
from .records import RecordStore

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "as", "is", "was", "are", "were", "been",
        "be", "have", "has", "had", "do", "does", "did", "will", "would",
        "should", "could", "may", "might", "must", "can", "this", "that",
        "these", "those", "i", "you", "he", "she", "it", "we", "they",
        "what", "which", "who", "how", "our", "all", "any",
    }
)


def extract_keywords(query: str) -> list[str]:
    words = re.sub(r"[^\w\s]", " ", query.lower()).split()
    return [word for word in words if len(word) > 2 and word not in STOP_WORDS]


def escape_like(keyword: str) -> str:
    return keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class KeywordSearchEngine:
    """Scores records by substring matches of the query keywords.

    A row's raw score is the weight of the first namespace column that
    contains all keywords in order; scores are then normalised by the best
    score in the result set.
    """

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    def search(
        self,
        query: str,
        namespace: str,
        top_k: int = 20,
        filters: Mapping[str, Any] | None = None,
    ) -> list[BranchHit]:
        if namespace not in self.records.namespaces:
            return []
        keywords = extract_keywords(query)
        if not keywords:
            return []
        spec = self.records.namespaces.get(namespace)
        pattern = f"%{'%'.join(escape_like(keyword) for keyword in keywords)}%"
        rows = self.records.keyword_rows(spec, pattern, top_k, filters)
        if not rows:
            return []

        max_score = max(max(float(row["score"]) for row in rows), 1.0)
        hits: list[BranchHit] = []
        for row in rows:
            score = float(row.pop("score")) / max_score
            metadata = spec.build_metadata(row)
            hits.append(BranchHit(id=str(row[spec.id_column]), score=score, metadata=metadata))
        logger.debug("Keyword search in %s matched %d rows for %s", namespace, len(hits), keywords)
        return hits
