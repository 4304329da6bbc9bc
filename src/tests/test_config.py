import pytest

from grc_rag.config import AppSettings
from grc_rag.errors import ConfigurationError
from grc_rag.fusion import FusionMethod
from grc_rag.namespaces import NamespaceRegistry
from grc_rag.services import fusion_config_from


def test_defaults():
    settings = AppSettings()
    assert settings.search.fusion_method == "rrf"
    assert settings.search.rrf_k == 60
    assert settings.cache.namespace_ttls["incidents"] == 900
    assert settings.indexing.max_retries == 3
    assert settings.model.embedding_dimension == 768


def test_nested_environment_overrides(monkeypatch):
    monkeypatch.setenv("RAG_SEARCH__FUSION_METHOD", "weighted")
    monkeypatch.setenv("RAG_INDEXING__POLLING_INTERVAL_SECONDS", "15")
    settings = AppSettings()

    assert settings.search.fusion_method == "weighted"
    assert settings.indexing.polling_interval_seconds == 15
    assert fusion_config_from(settings).method is FusionMethod.WEIGHTED


def test_registry_rejects_unknown_namespaces():
    with pytest.raises(ConfigurationError):
        NamespaceRegistry(enabled=["risks", "assets"])

    registry = NamespaceRegistry(enabled=["risks"])
    assert "risks" in registry
    assert "incidents" not in registry
    with pytest.raises(ConfigurationError):
        registry.get("incidents")
