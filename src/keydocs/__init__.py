"""keydocs - Documentation indexing, vector search and credential context ranking."""

from importlib.metadata import version, PackageNotFoundError

_pkg = __package__.split('.')[0]

try:
    __version__: str = version(_pkg)
except PackageNotFoundError:
    __version__: str = "0.0.1-dev"  # fallback for running directly from source

from .context import (
    ContextInfo,
    ContextRelevanceEngine,
    MLPrediction,
    RiskLevel,
    context_similarity,
)
from .errors import InvalidInputError, KeydocsError, NotFoundError, PersistenceError
from .indexer import BulkDocument, DocumentationIndexer
from .models import (
    ContentType,
    DocumentationChunk,
    DocumentationLibrary,
    DocumentationStatus,
    SearchResult,
)
from .search import VectorSearchEngine, VectorSearchParams, cosine_similarity
from .store import DocumentationStore

__all__ = [
    # Documentation
    "DocumentationStore",
    "DocumentationIndexer",
    "BulkDocument",
    "VectorSearchEngine",
    "VectorSearchParams",
    "cosine_similarity",
    # Context
    "ContextRelevanceEngine",
    "ContextInfo",
    "MLPrediction",
    "RiskLevel",
    "context_similarity",
    # Dataclasses
    "ContentType",
    "DocumentationChunk",
    "DocumentationLibrary",
    "DocumentationStatus",
    "SearchResult",
    # Errors
    "KeydocsError",
    "NotFoundError",
    "InvalidInputError",
    "PersistenceError",
]
