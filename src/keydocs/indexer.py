"""Ingestion and query entry points.

``DocumentationIndexer`` ties the segmenter, an embedding backend and a
``DocumentationStore`` together: text goes in, chunks with embeddings are
stored, and query text comes back as ranked search results.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Optional

from .chunking import ChunkingConfig, count_words, derive_title, segment_document
from .config import Config, get_config
from .embeddings import EmbeddingBackend, get_embedder
from .errors import InvalidInputError, NotFoundError
from .models import (
    ChunkMetadata,
    ContentType,
    DocumentationChunk,
    DocumentationLibrary,
    DocumentationStatus,
    SearchResult,
)
from .search import VectorSearchEngine, VectorSearchParams
from .store import DocumentationStore

logger = logging.getLogger(__name__)

MANUAL_IMPORTANCE = 0.7
BULK_IMPORT_TAG = "bulk_import"


def compute_content_hash(content: str) -> str:
    """Hash of content for change detection."""
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass
class BulkDocument:
    """One entry of a bulk import."""
    title: str
    content: str
    section_path: list[str] = field(default_factory=list)
    content_type: str = "overview"
    tags: list[str] = field(default_factory=list)
    url: Optional[str] = None


@dataclass
class BulkImportResult:
    library_id: str
    imported: int
    failed: int
    chunk_ids: list[str] = field(default_factory=list)


class DocumentationIndexer:
    """Feeds documentation into a store and queries it back."""

    def __init__(
        self,
        store: Optional[DocumentationStore] = None,
        embedder: Optional[EmbeddingBackend] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.embedder = embedder or get_embedder(self.config)
        if store is None:
            store = DocumentationStore(
                dimensions=self.embedder.dimensions,
                search_engine=VectorSearchEngine(
                    half_life_hours=self.config.search.recency_half_life_hours,
                    max_bonus=self.config.search.recency_max_bonus,
                ),
            )
        self.store = store

    def _chunking_config(self, override: Optional[ChunkingConfig]) -> ChunkingConfig:
        if override is not None:
            return override
        return ChunkingConfig(**self.config.chunking)

    def _embed(self, text: str) -> list[float]:
        if not text.strip():
            raise InvalidInputError("cannot embed empty text")
        return self.embedder.embed(text)

    # --- Libraries ---

    def create_library(
        self,
        name: str,
        provider_id: Optional[str] = None,
        description: str = "",
        url: str = "",
        version: str = "latest",
        tags: Optional[list[str]] = None,
        status: DocumentationStatus = DocumentationStatus.PENDING,
    ) -> str:
        return self.store.add_library(
            DocumentationLibrary(
                name=name,
                description=description,
                provider_id=provider_id,
                url=url,
                version=version,
                tags=set(tags or []),
                status=status,
            )
        )

    # --- Ingestion ---

    def ingest_manual(
        self,
        provider_id: str,
        provider_name: str,
        content: str,
        section_path: Optional[list[str]] = None,
        content_type: str = "overview",
        tags: Optional[list[str]] = None,
        title: Optional[str] = None,
        importance_score: Optional[float] = None,
        source_url: Optional[str] = None,
    ) -> str:
        """Add one hand-written passage under the provider's library.

        The provider's first library is reused; if it has none, a
        "<provider_name> Documentation" library is created.

        Returns:
            The new chunk id.
        """
        if not content.strip():
            raise InvalidInputError("documentation content must not be empty")

        library_id, created = self.store.get_or_create_provider_library(
            provider_id,
            DocumentationLibrary(
                name=f"{provider_name} Documentation",
                description=f"Manual documentation for {provider_name}",
                url="manual",
                version="1.0",
                tags=set(tags or []),
                status=DocumentationStatus.INDEXED,
            ),
        )
        if created:
            self.store.update_library(library_id, content_hash=compute_content_hash(content))

        section_path = list(section_path or [])
        chunk = DocumentationChunk(
            library_id=library_id,
            title=title or derive_title(content, section_path),
            content=content,
            section_path=section_path,
            metadata=ChunkMetadata(
                word_count=count_words(content),
                content_type=ContentType.parse(content_type),
                importance_score=(
                    MANUAL_IMPORTANCE if importance_score is None else importance_score
                ),
                keywords=list(tags or []),
                source_url=source_url,
            ),
        )
        chunk_id = self.store.add_chunk_with_embedding(
            chunk, self._embed(content), self.embedder.model_name
        )
        logger.info("Added manual documentation chunk %s for %s", chunk_id, provider_name)
        return chunk_id

    def bulk_import(
        self,
        provider_id: str,
        provider_name: str,
        documents: list[BulkDocument],
    ) -> BulkImportResult:
        """Import many passages into a fresh library, skipping failures.

        Individual failures are logged and counted; they never abort the
        batch. The library ends ``Indexed``, or ``Failed`` when nothing
        could be imported.
        """
        library_id = self.create_library(
            name=f"{provider_name} Documentation (Bulk Import)",
            provider_id=provider_id,
            description=f"Bulk imported documentation for {provider_name}",
            url=BULK_IMPORT_TAG,
            version="1.0",
            tags=[BULK_IMPORT_TAG],
            status=DocumentationStatus.PROCESSING,
        )
        self.store.update_library(
            library_id,
            content_hash=compute_content_hash("\n".join(d.content for d in documents)),
        )

        chunk_ids: list[str] = []
        failed = 0
        for doc in documents:
            try:
                chunk = DocumentationChunk(
                    library_id=library_id,
                    title=doc.title,
                    content=doc.content,
                    section_path=list(doc.section_path),
                    metadata=ChunkMetadata(
                        word_count=count_words(doc.content),
                        content_type=ContentType.parse(doc.content_type),
                        importance_score=MANUAL_IMPORTANCE,
                        keywords=list(doc.tags),
                        source_url=doc.url,
                    ),
                )
                chunk_ids.append(
                    self.store.add_chunk_with_embedding(
                        chunk, self._embed(doc.content), self.embedder.model_name
                    )
                )
            except Exception as e:
                # One bad document never aborts the batch
                failed += 1
                logger.warning("Failed to import document %r: %s", doc.title, e)

        status = (
            DocumentationStatus.FAILED
            if documents and not chunk_ids
            else DocumentationStatus.INDEXED
        )
        self.store.update_library(library_id, status=status)

        logger.info(
            "Imported %d/%d documents for %s", len(chunk_ids), len(documents), provider_name
        )
        return BulkImportResult(
            library_id=library_id,
            imported=len(chunk_ids),
            failed=failed,
            chunk_ids=chunk_ids,
        )

    def ingest_document(
        self,
        library_id: str,
        content: str,
        source_url: Optional[str] = None,
        chunking: Optional[ChunkingConfig] = None,
    ) -> list[str]:
        """Segment a whole document and store every segment.

        Neighbouring chunks reference each other through
        ``related_chunks``. The library is marked ``Indexed`` with the
        document's content hash.
        """
        if self.store.get_library(library_id) is None:
            raise NotFoundError("Library", library_id)

        chunks, vectors, strategy = self._prepare_document(library_id, content, source_url, chunking)
        chunk_ids = self.store.add_chunks_with_embeddings(
            chunks, vectors, self.embedder.model_name, link_adjacent=True
        )

        self.store.update_library(
            library_id,
            content_hash=compute_content_hash(content),
            status=DocumentationStatus.INDEXED,
        )
        logger.info(
            "Indexed %d chunk(s) into %s using %s strategy", len(chunk_ids), library_id, strategy
        )
        return chunk_ids

    def _prepare_document(
        self,
        library_id: str,
        content: str,
        source_url: Optional[str],
        chunking: Optional[ChunkingConfig],
    ) -> tuple[list[DocumentationChunk], list[list[float]], str]:
        """Segment and embed ``content`` without touching the store."""
        result = segment_document(content, self._chunking_config(chunking))
        for warning in result.warnings:
            logger.warning("%s: %s", library_id, warning)

        chunks = [
            DocumentationChunk(
                library_id=library_id,
                title=segment.title or derive_title(segment.content, segment.section_path),
                content=segment.content,
                section_path=list(segment.section_path),
                metadata=segment.to_metadata(source_url),
            )
            for segment in result.segments
        ]
        vectors = self.embedder.embed_batch([c.content for c in chunks]) if chunks else []
        return chunks, vectors, result.strategy

    def refresh_library(
        self,
        library_id: str,
        content: str,
        source_url: Optional[str] = None,
        chunking: Optional[ChunkingConfig] = None,
    ) -> bool:
        """Re-index a library from new content if the content changed.

        The new content is segmented and embedded before the old chunks are
        dropped, and the swap is a single store transaction. On failure the
        library keeps its old chunks and is marked ``Failed``.

        Returns:
            False if the content hash is unchanged and nothing was done.
        """
        library = self.store.get_library(library_id)
        if library is None:
            raise NotFoundError("Library", library_id)

        if library.content_hash == compute_content_hash(content):
            logger.debug("Library %s unchanged, skipping refresh", library_id)
            return False

        self.store.update_library(library_id, status=DocumentationStatus.PROCESSING)
        try:
            chunks, vectors, strategy = self._prepare_document(
                library_id, content, source_url, chunking
            )
            chunk_ids = self.store.replace_library_chunks(
                library_id, chunks, vectors, self.embedder.model_name
            )
        except Exception:
            self.store.update_library(library_id, status=DocumentationStatus.FAILED)
            logger.exception("Failed to refresh library %s", library_id)
            raise

        self.store.update_library(
            library_id,
            content_hash=compute_content_hash(content),
            status=DocumentationStatus.INDEXED,
        )
        logger.info(
            "Refreshed %s with %d chunk(s) using %s strategy", library_id, len(chunk_ids), strategy
        )
        return True

    # --- Query ---

    def search(
        self,
        query: str,
        provider_id: Optional[str] = None,
        library_ids: Optional[list[str]] = None,
        content_types: Optional[list[str]] = None,
        section_filter: Optional[list[str]] = None,
        max_results: Optional[int] = None,
        min_similarity: Optional[float] = None,
        boost_recent: bool = True,
    ) -> list[SearchResult]:
        """Embed ``query`` and search the store.

        ``provider_id`` narrows the search to that provider's libraries
        (intersected with ``library_ids`` when both are given).
        """
        if not query.strip():
            raise InvalidInputError("search query must not be empty")

        if provider_id is not None:
            provider_libraries = [lib.id for lib in self.store.get_libraries_by_provider(provider_id)]
            if library_ids is not None:
                provider_libraries = [lid for lid in provider_libraries if lid in set(library_ids)]
            library_ids = provider_libraries
            if not library_ids:
                return []

        search_config = self.config.search
        params = VectorSearchParams(
            query=query,
            library_ids=library_ids,
            content_types=content_types,
            min_similarity=(
                search_config.ingest_search_min_similarity
                if min_similarity is None
                else min_similarity
            ),
            max_results=search_config.max_results if max_results is None else max_results,
            boost_recent=boost_recent,
            section_filter=section_filter,
        )
        return self.store.vector_search(params, self._embed(query))
