"""Vector similarity search over documentation chunks."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .errors import InvalidInputError
from .models import (
    ContentType,
    DocumentationChunk,
    DocumentationEmbedding,
    SearchResult,
    utcnow,
)

logger = logging.getLogger(__name__)


# --- Scoring Constants ---

DEFAULT_MIN_SIMILARITY = 0.7
DEFAULT_MAX_RESULTS = 10

# Recency boost: exp(-hours / half_life) * max_bonus
RECENCY_HALF_LIFE_HOURS = 168.0  # one week
RECENCY_MAX_BONUS = 0.1


@dataclass
class VectorSearchParams:
    """Filters and limits for a vector search."""
    query: str = ""  # Informational only; the caller supplies the embedding
    library_ids: Optional[list[str]] = None
    content_types: Optional[list[ContentType]] = None
    min_similarity: float = DEFAULT_MIN_SIMILARITY
    max_results: int = DEFAULT_MAX_RESULTS
    include_metadata: bool = True
    boost_recent: bool = False
    section_filter: Optional[list[str]] = None

    def __post_init__(self):
        if math.isnan(self.min_similarity):
            raise InvalidInputError("min_similarity must be a number")
        if self.max_results < 0:
            raise InvalidInputError(f"max_results must be non-negative, got {self.max_results}")
        if self.content_types is not None:
            self.content_types = [ContentType.parse(ct) for ct in self.content_types]
        if self.section_filter is not None:
            terms = [t.strip() for t in self.section_filter]
            if any(not t for t in terms):
                raise InvalidInputError("section_filter terms must be non-empty")
            self.section_filter = terms


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity clamped into [0.0, 1.0].

    Mismatched dimensions, empty vectors and zero vectors all yield 0.0.
    """
    if len(a) != len(b) or not a:
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))

    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return max(0.0, min(1.0, dot / (norm_a * norm_b)))


def recency_boost(
    created_at: Optional[datetime],
    now: Optional[datetime] = None,
    half_life_hours: float = RECENCY_HALF_LIFE_HOURS,
    max_bonus: float = RECENCY_MAX_BONUS,
) -> float:
    """Exponentially decaying bonus for recently created chunks."""
    if created_at is None:
        return 0.0
    if now is None:
        now = utcnow()
    hours = max(0.0, (now - created_at).total_seconds() / 3600.0)
    return math.exp(-hours / half_life_hours) * max_bonus


def matches_section(section_path: list[str], terms: list[str]) -> bool:
    """True if any path segment contains any term, case-insensitively."""
    lowered = [s.lower() for s in section_path]
    return any(term.lower() in segment for term in terms for segment in lowered)


class VectorSearchEngine:
    """Ranks chunks by cosine similarity under optional filters.

    The engine holds no state besides its tuning; callers pass in the chunk
    and embedding tables (or a snapshot of them) for each search.
    """

    def __init__(
        self,
        half_life_hours: float = RECENCY_HALF_LIFE_HOURS,
        max_bonus: float = RECENCY_MAX_BONUS,
    ):
        self.half_life_hours = half_life_hours
        self.max_bonus = max_bonus

    def search(
        self,
        query_embedding: list[float],
        params: VectorSearchParams,
        chunks: Mapping[str, DocumentationChunk],
        embeddings: Iterable[DocumentationEmbedding],
        now: Optional[datetime] = None,
    ) -> list[SearchResult]:
        """Rank chunks against ``query_embedding``.

        Args:
            query_embedding: Query vector; must be non-empty.
            params: Filters and limits.
            chunks: chunk_id -> chunk.
            embeddings: Stored embeddings; those without a chunk are skipped.
            now: Reference time for the recency boost.

        Returns:
            Results sorted by relevance (highest first), then chunk id.
        """
        if not query_embedding:
            raise InvalidInputError("query embedding must not be empty")

        if now is None:
            now = utcnow()

        library_filter = set(params.library_ids) if params.library_ids is not None else None
        type_filter = set(params.content_types) if params.content_types is not None else None

        results: list[SearchResult] = []
        for embedding in embeddings:
            chunk = chunks.get(embedding.chunk_id)
            if chunk is None:
                continue

            similarity = cosine_similarity(query_embedding, embedding.vector)
            if similarity < params.min_similarity:
                continue

            if library_filter is not None and chunk.library_id not in library_filter:
                continue
            if type_filter is not None and chunk.metadata.content_type not in type_filter:
                continue
            if params.section_filter and not matches_section(chunk.section_path, params.section_filter):
                continue

            relevance = similarity
            if params.boost_recent:
                relevance += recency_boost(
                    chunk.created_at, now, self.half_life_hours, self.max_bonus
                )

            results.append(
                SearchResult(
                    chunk_id=chunk.id,
                    library_id=chunk.library_id,
                    title=chunk.title,
                    content=chunk.content,
                    section_path=list(chunk.section_path),
                    similarity_score=similarity,
                    relevance_score=relevance,
                    content_type=chunk.metadata.content_type,
                    metadata=chunk.metadata if params.include_metadata else None,
                    url=chunk.metadata.source_url,
                )
            )

        results.sort(key=lambda r: (-r.relevance_score, r.chunk_id))
        results = results[: params.max_results]

        logger.debug(
            "Vector search %r returned %d result(s) (min_similarity=%.2f)",
            params.query,
            len(results),
            params.min_similarity,
        )
        return results
