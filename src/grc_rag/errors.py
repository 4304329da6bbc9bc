"""Exception hierarchy for the retrieval core."""
from __future__ import annotations


class RetrievalError(Exception):
    """Base class for all errors raised by grc_rag."""


class ConfigurationError(RetrievalError):
    """Unknown namespace, preset or invalid option."""


class EmbeddingError(RetrievalError):
    """The embedding model call failed or returned a vector of the wrong size."""


class VectorIndexError(RetrievalError):
    """The vector store rejected an upsert, query or delete."""


class KeywordQueryError(RetrievalError):
    """A keyword scoring query against the record store failed."""


class IndexingJobError(RetrievalError):
    """An indexing job could not reconcile a record into the vector index."""


class CacheUnavailableError(RetrievalError):
    """The cache store could not be reached. Caught by ``QueryCache``."""


class GenerationError(RetrievalError):
    """The generation model call failed."""
