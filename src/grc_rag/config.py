"""Centralized configuration for the retrieval and RAG core."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DOTENV_PATH = Path(__file__).resolve().parents[2] / ".env"
if DOTENV_PATH.exists():
    load_dotenv(dotenv_path=DOTENV_PATH, override=False)
else:
    load_dotenv()

DEFAULT_NAMESPACES = ["risks", "incidents", "compliance", "documents"]


class Paths(BaseModel):
    project_root: Path = Field(default=Path(__file__).resolve().parents[2])
    data_dir: Path = Field(default=Path("data"))
    vector_dir: Path = Field(default=Path("data/vectorstore"))
    db_url: str = Field(default="sqlite:///data/records.db")


class ModelSettings(BaseModel):
    embed_model: str = Field(default="nomic-ai/nomic-embed-text-v1.5")
    embedding_dimension: int = Field(default=768)
    llm_model: str = Field(default="gpt-4o-mini")
    llm_base_url: str = Field(default="http://localhost:11434")
    llm_provider: Literal["ollama", "openai"] = Field(default="openai")
    openai_api_base: str | None = Field(default="https://api.openai.com/v1")
    max_input_tokens: int = Field(default=4096)
    max_output_tokens: int = Field(default=1500)


class VectorSettings(BaseModel):
    collection_name: str = Field(default="grc_records")
    chroma_host: str = Field(default="")  # empty = embedded persistent client
    chroma_port: int = Field(default=8000)


class SearchSettings(BaseModel):
    fusion_method: Literal["rrf", "weighted", "cascade"] = Field(default="rrf")
    semantic_weight: float = Field(default=0.85)
    keyword_weight: float = Field(default=0.15)
    min_semantic_score: float = Field(default=0.3)
    min_keyword_score: float = Field(default=0.2)
    rrf_k: int = Field(default=60)
    default_top_k: int = Field(default=10)
    branch_timeout_seconds: float = Field(default=10.0)


class CacheSettings(BaseModel):
    enabled: bool = Field(default=True)
    default_ttl: int = Field(default=3600)
    namespace_ttls: dict[str, int] = Field(
        default_factory=lambda: {
            "risks": 1800,
            "incidents": 900,
            "compliance": 7200,
            "documents": 3600,
        }
    )


class IndexingSettings(BaseModel):
    enabled: bool = Field(default=True)
    namespaces: list[str] = Field(default_factory=lambda: list(DEFAULT_NAMESPACES))
    max_retries: int = Field(default=3)
    polling_interval_seconds: float = Field(default=60.0)
    batch_size: int = Field(default=20)
    chunk_size: int = Field(default=512)
    chunk_overlap: int = Field(default=50)
    chunk_strategy: Literal["semantic", "paragraph", "fixed"] = Field(default="semantic")
    invalidate_cache_on_index: bool = Field(default=True)


class RAGSettings(BaseModel):
    default_preset: str = Field(default="detailed")
    use_hybrid: bool = Field(default=True)


class ObservabilitySettings(BaseModel):
    enable_tracing: bool = Field(default=False)
    otlp_endpoint: str = Field(default="http://localhost:4318/v1/traces")
    log_level: str = Field(default="INFO")


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RAG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    environment: str = Field(default="local")
    debug: bool = Field(default=False)
    paths: Paths = Paths()
    model: ModelSettings = ModelSettings()
    vector: VectorSettings = VectorSettings()
    search: SearchSettings = SearchSettings()
    cache: CacheSettings = CacheSettings()
    indexing: IndexingSettings = IndexingSettings()
    rag: RAGSettings = RAGSettings()
    observability: ObservabilitySettings = ObservabilitySettings()


@lru_cache
def get_settings() -> AppSettings:
    """Return cached settings instance."""

    settings = AppSettings()
    settings.paths.data_dir.mkdir(parents=True, exist_ok=True)
    settings.paths.vector_dir.mkdir(parents=True, exist_ok=True)
    return settings


settings = get_settings()
