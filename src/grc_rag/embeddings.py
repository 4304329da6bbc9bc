"""Embedding gateway over a LangChain embedding model."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from langchain_community.embeddings import HuggingFaceEmbeddings
from langchain_core.embeddings import Embeddings

from .config import ModelSettings
from .errors import EmbeddingError

logger = logging.getLogger(__name__)


def build_embedder(model_settings: ModelSettings) -> Embeddings:
    """Create the default HuggingFace embedder used in deployments."""

    return HuggingFaceEmbeddings(
        model_name=model_settings.embed_model,
        model_kwargs={"trust_remote_code": True},
        encode_kwargs={"normalize_embeddings": True},
    )


class EmbeddingGateway:
    """Turns text into vectors of a fixed, deployment-wide dimension."""

    def __init__(self, embedder: Embeddings, dimension: int) -> None:
        self.embedder = embedder
        self.dimension = dimension

    def embed(self, text: str) -> list[float]:
        try:
            vector = self.embedder.embed_query(text)
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingError(f"Failed to generate embedding: {exc}") from exc
        return self._check(vector)

    def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self.embedder.embed_documents(list(texts))
        except Exception as exc:  # noqa: BLE001
            raise EmbeddingError(f"Failed to generate {len(texts)} embeddings: {exc}") from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(f"Expected {len(texts)} embeddings, got {len(vectors)}")
        logger.debug("Embedded %d texts", len(vectors))
        return [self._check(vector) for vector in vectors]

    def _check(self, vector: Sequence[float]) -> list[float]:
        if len(vector) != self.dimension:
            raise EmbeddingError(f"Embedding dimension {len(vector)} does not match configured {self.dimension}")
        return [float(value) for value in vector]
