"""Per-namespace description of how records are stored, searched and rendered."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import ConfigurationError


@dataclass(frozen=True, slots=True)
class NamespaceSpec:
    name: str
    table: str
    title_column: str
    # (column, weight) pairs; the first matching column decides the keyword score
    keyword_columns: tuple[tuple[str, float], ...]
    # (label, column); unlabelled fields are included only when non-empty
    text_fields: tuple[tuple[str | None, str], ...]
    metadata_columns: tuple[str, ...] = ()
    filter_columns: frozenset[str] = field(default_factory=frozenset)
    updated_column: str = "updated_at"
    id_column: str = "id"
    link_template: str = "/{namespace}/{record_id}"
    chunked: bool = False
    content_column: str | None = None

    def title_of(self, row: Mapping[str, Any]) -> str:
        title = row.get(self.title_column)
        return str(title) if title else f"{self.name} {row.get(self.id_column, '')}".strip()

    def build_text(self, row: Mapping[str, Any]) -> str:
        lines: list[str] = []
        for label, column in self.text_fields:
            value = row.get(column)
            if label:
                lines.append(f"{label}: {value if value not in (None, '') else 'Unknown'}")
            elif value not in (None, ""):
                lines.append(str(value))
        return "\n".join(lines)

    def body_of(self, row: Mapping[str, Any]) -> str:
        """Text that is chunked for long-form namespaces, else the rendered record."""

        if self.chunked and self.content_column:
            return str(row.get(self.content_column) or "")
        return self.build_text(row)

    def build_metadata(self, row: Mapping[str, Any]) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "namespace": self.name,
            "record_id": str(row.get(self.id_column)),
            "title": self.title_of(row),
        }
        for column in self.metadata_columns:
            value = row.get(column)
            metadata[column] = "" if value is None else value
        return metadata

    def url_for(self, record_id: str | int) -> str:
        return self.link_template.format(namespace=self.name, record_id=record_id)


RISKS = NamespaceSpec(
    name="risks",
    table="risks",
    title_column="title",
    keyword_columns=(("title", 10.0), ("description", 5.0), ("category", 3.0)),
    text_fields=(
        ("Risk", "title"),
        (None, "description"),
        ("Category", "category"),
        ("Risk Level", "risk_level"),
        ("Status", "status"),
        (None, "mitigation_strategy"),
    ),
    metadata_columns=("category", "risk_level", "status"),
    filter_columns=frozenset({"category", "risk_level", "status"}),
    link_template="/risks/{record_id}",
)

INCIDENTS = NamespaceSpec(
    name="incidents",
    table="incidents",
    title_column="title",
    keyword_columns=(("title", 10.0), ("description", 5.0)),
    text_fields=(
        ("Incident", "title"),
        (None, "description"),
        ("Type", "type"),
        ("Severity", "severity"),
        (None, "root_cause"),
        (None, "impact_description"),
    ),
    metadata_columns=("type", "severity", "status"),
    filter_columns=frozenset({"type", "severity", "status"}),
    link_template="/incidents/{record_id}",
)

COMPLIANCE = NamespaceSpec(
    name="compliance",
    table="compliance_controls",
    title_column="control_name",
    keyword_columns=(("control_name", 10.0), ("description", 5.0), ("framework", 3.0)),
    text_fields=(
        ("Control", "control_name"),
        ("ID", "control_id"),
        (None, "description"),
        ("Framework", "framework"),
        ("Category", "category"),
        ("Priority", "priority"),
    ),
    metadata_columns=("control_id", "framework", "category", "priority"),
    filter_columns=frozenset({"framework", "category", "priority"}),
    link_template="/compliance/controls/{record_id}",
)

DOCUMENTS = NamespaceSpec(
    name="documents",
    table="documents",
    title_column="title",
    keyword_columns=(("title", 10.0), ("content", 5.0)),
    text_fields=(("Document", "title"), (None, "content")),
    metadata_columns=("doc_type",),
    filter_columns=frozenset({"doc_type"}),
    link_template="/documents/{record_id}",
    chunked=True,
    content_column="content",
)

NAMESPACES: dict[str, NamespaceSpec] = {spec.name: spec for spec in (RISKS, INCIDENTS, COMPLIANCE, DOCUMENTS)}


class NamespaceRegistry:
    """The set of namespaces enabled for a deployment."""

    def __init__(self, specs: Mapping[str, NamespaceSpec] | None = None, enabled: list[str] | None = None) -> None:
        available = dict(specs or NAMESPACES)
        names = enabled if enabled is not None else list(available)
        unknown = [name for name in names if name not in available]
        if unknown:
            raise ConfigurationError(f"Unknown namespaces configured: {', '.join(unknown)}")
        self._specs = {name: available[name] for name in names}

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self):
        return iter(self._specs.values())

    @property
    def names(self) -> list[str]:
        return list(self._specs)

    def get(self, name: str) -> NamespaceSpec:
        try:
            return self._specs[name]
        except KeyError:
            raise ConfigurationError(f"Namespace '{name}' is not configured") from None
