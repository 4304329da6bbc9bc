import pytest
from conftest import EMBEDDING_SIZE, FailingChatModel, FailingEmbedding
from langchain_core.embeddings import DeterministicFakeEmbedding
from langchain_core.language_models import FakeListChatModel

from grc_rag.config import ModelSettings
from grc_rag.embeddings import EmbeddingGateway
from grc_rag.errors import ConfigurationError, EmbeddingError, GenerationError
from grc_rag.llm import LLMService, build_chat_model


def test_complete_returns_stripped_text():
    service = LLMService(llm=FakeListChatModel(responses=["  The answer.  "]))
    assert service.complete("prompt", temperature=0.2) == "The answer."


def test_complete_wraps_model_errors():
    service = LLMService(llm=FailingChatModel(responses=["unused"]))
    with pytest.raises(GenerationError):
        service.complete("prompt")


def test_model_name_falls_back_to_settings():
    service = LLMService(llm=FakeListChatModel(responses=["x"]), model_settings=ModelSettings(llm_model="local-model"))
    assert service.model_name == "local-model"


def test_openai_provider_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        build_chat_model(ModelSettings(llm_provider="openai"))


def test_embedding_gateway_checks_dimension():
    gateway = EmbeddingGateway(DeterministicFakeEmbedding(size=4), EMBEDDING_SIZE)
    with pytest.raises(EmbeddingError):
        gateway.embed("risk")


def test_embedding_gateway_wraps_failures():
    gateway = EmbeddingGateway(FailingEmbedding(size=EMBEDDING_SIZE), EMBEDDING_SIZE)
    with pytest.raises(EmbeddingError):
        gateway.embed_many(["a", "b"])


def test_embed_many_is_deterministic():
    gateway = EmbeddingGateway(DeterministicFakeEmbedding(size=EMBEDDING_SIZE), EMBEDDING_SIZE)
    first, second = gateway.embed_many(["phishing", "phishing"])
    assert first == second
    assert gateway.embed("phishing") == first
    assert gateway.embed_many([]) == []
