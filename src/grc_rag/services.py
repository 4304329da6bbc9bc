"""Wires the retrieval core together from settings."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy import Engine

from .cache import QueryCache, SQLCacheStore
from .chunking import ChunkingOptions, DocumentChunker
from .config import AppSettings, get_settings
from .db import create_db_engine, init_schema
from .embeddings import EmbeddingGateway, build_embedder
from .fusion import FusionConfig, FusionMethod
from .indexing import AutoIndexingCoordinator, JobRepository
from .keyword import KeywordSearchEngine
from .llm import LLMService
from .namespaces import NamespaceRegistry
from .rag import RAGPipeline
from .records import RecordStore
from .search import HybridSearchEngine
from .vector_index import ChromaVectorIndex, VectorIndex


@dataclass
class Services:
    settings: AppSettings
    engine: Engine
    namespaces: NamespaceRegistry
    records: RecordStore
    cache: QueryCache
    search: HybridSearchEngine
    indexer: AutoIndexingCoordinator
    rag: RAGPipeline

    def close(self) -> None:
        self.indexer.stop_polling()
        self.search.close()
        self.engine.dispose()


def fusion_config_from(settings: AppSettings) -> FusionConfig:
    search = settings.search
    return FusionConfig(
        semantic_weight=search.semantic_weight,
        keyword_weight=search.keyword_weight,
        min_semantic_score=search.min_semantic_score,
        min_keyword_score=search.min_keyword_score,
        method=FusionMethod(search.fusion_method),
        rrf_k=search.rrf_k,
    )


def build_services(
    settings: AppSettings,
    embeddings: EmbeddingGateway | None = None,
    vector_index: VectorIndex | None = None,
    llm: LLMService | None = None,
) -> Services:
    """Build every component; tests pass fakes for the external models and the index."""

    engine = create_db_engine(settings.paths.db_url, echo=settings.debug)
    init_schema(engine)
    namespaces = NamespaceRegistry(enabled=settings.indexing.namespaces)
    records = RecordStore(engine, namespaces)

    embeddings = embeddings or EmbeddingGateway(build_embedder(settings.model), settings.model.embedding_dimension)
    if vector_index is None:
        vector_index = ChromaVectorIndex.from_settings(settings.paths, settings.vector)
    cache = QueryCache(
        SQLCacheStore(engine),
        default_ttl=settings.cache.default_ttl,
        namespace_ttls=settings.cache.namespace_ttls,
        enabled=settings.cache.enabled,
    )
    search = HybridSearchEngine(
        embeddings,
        vector_index,
        KeywordSearchEngine(records),
        cache=cache,
        config=fusion_config_from(settings),
        branch_timeout=settings.search.branch_timeout_seconds,
    )
    indexing = settings.indexing
    chunker = DocumentChunker(
        ChunkingOptions(
            chunk_size=indexing.chunk_size,
            chunk_overlap=indexing.chunk_overlap,
            strategy=indexing.chunk_strategy,
        )
    )
    indexer = AutoIndexingCoordinator(
        records,
        embeddings,
        vector_index,
        JobRepository(engine),
        chunker=chunker,
        cache=cache,
        max_retries=indexing.max_retries,
        polling_interval=indexing.polling_interval_seconds,
        batch_size=indexing.batch_size,
        invalidate_cache=indexing.invalidate_cache_on_index,
        enabled=indexing.enabled,
    )
    rag = RAGPipeline(
        search,
        records,
        llm or LLMService(model_settings=settings.model),
        namespaces,
        default_preset=settings.rag.default_preset,
        use_hybrid=settings.rag.use_hybrid,
    )
    return Services(settings, engine, namespaces, records, cache, search, indexer, rag)


@lru_cache
def get_services() -> Services:
    return build_services(get_settings())
