"""Read-only access to the relational record store."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Engine, bindparam, text
from sqlalchemy.exc import SQLAlchemyError

from .errors import KeywordQueryError
from .namespaces import NamespaceRegistry, NamespaceSpec

logger = logging.getLogger(__name__)


class RecordStore:
    """Parameterized reads against the tables owned by the domain layer."""

    def __init__(self, engine: Engine, namespaces: NamespaceRegistry) -> None:
        self.engine = engine
        self.namespaces = namespaces

    def fetch(self, namespace: str, record_id: str | int) -> dict[str, Any] | None:
        spec = self.namespaces.get(namespace)
        sql = text(f"SELECT * FROM {spec.table} WHERE {spec.id_column} = :record_id")
        with self.engine.connect() as conn:
            row = conn.execute(sql, {"record_id": record_id}).mappings().first()
        return dict(row) if row else None

    def fetch_many(self, namespace: str, record_ids: list[str]) -> dict[str, dict[str, Any]]:
        if not record_ids:
            return {}
        spec = self.namespaces.get(namespace)
        sql = text(f"SELECT * FROM {spec.table} WHERE {spec.id_column} IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(sql, {"ids": list(record_ids)}).mappings().all()
        return {str(row[spec.id_column]): dict(row) for row in rows}

    def modified_since(self, namespace: str, since: datetime) -> list[dict[str, Any]]:
        spec = self.namespaces.get(namespace)
        sql = text(
            f"SELECT * FROM {spec.table} WHERE {spec.updated_column} > :since "
            f"ORDER BY {spec.updated_column} ASC"
        ).bindparams(bindparam("since", type_=DateTime))
        with self.engine.connect() as conn:
            rows = conn.execute(sql, {"since": since}).mappings().all()
        return [dict(row) for row in rows]

    def count(self, namespace: str) -> int:
        spec = self.namespaces.get(namespace)
        with self.engine.connect() as conn:
            return int(conn.execute(text(f"SELECT COUNT(*) FROM {spec.table}")).scalar() or 0)

    def all_ids(self, namespace: str) -> list[str]:
        spec = self.namespaces.get(namespace)
        with self.engine.connect() as conn:
            rows = conn.execute(text(f"SELECT {spec.id_column} FROM {spec.table}")).all()
        return [str(row[0]) for row in rows]

    def keyword_rows(
        self,
        spec: NamespaceSpec,
        pattern: str,
        limit: int,
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Rows whose weighted columns match ``pattern`` with a raw ``score`` column.

        ``pattern`` is a LIKE pattern using a backslash as its escape character.
        """

        params: dict[str, Any] = {"pattern": pattern, "limit": limit}
        like = "LIKE LOWER(:pattern) ESCAPE '\\'"
        cases = " ".join(f"WHEN LOWER({column}) {like} THEN {weight}" for column, weight in spec.keyword_columns)
        matches = " OR ".join(f"LOWER({column}) {like}" for column, _ in spec.keyword_columns)
        clauses = [f"({matches})"]
        for index, (column, value) in enumerate(sorted((filters or {}).items())):
            if column not in spec.filter_columns:
                logger.debug("Ignoring unsupported keyword filter %s for %s", column, spec.name)
                continue
            clauses.append(f"{column} = :filter_{index}")
            params[f"filter_{index}"] = value
        sql = text(
            f"SELECT *, (CASE {cases} ELSE 1.0 END) AS score FROM {spec.table} "
            f"WHERE {' AND '.join(clauses)} ORDER BY score DESC, {spec.id_column} ASC LIMIT :limit"
        )
        try:
            with self.engine.connect() as conn:
                return [dict(row) for row in conn.execute(sql, params).mappings().all()]
        except SQLAlchemyError as exc:
            raise KeywordQueryError(f"Keyword query on {spec.table} failed: {exc}") from exc
