"""In-memory documentation store.

``DocumentationStore`` owns every documentation table (libraries, chunks,
embeddings, chat sessions and messages, generation history) together with
their secondary indexes. Callers only see the operations below and get
copies back, so the indexes cannot drift from the primary tables.

Locking: the documentation tables (libraries, chunks, embeddings and the
provider/library indexes) share one lock, the chat tables share a second,
and generation history has a third. A write holds its group's lock for the
whole logical transaction, so readers never observe a chunk without its
embedding or index entry. No operation holds two locks at once.
"""

from __future__ import annotations

import copy
import csv
import io
import json
import logging
import math
import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from .chunk_ids import (
    GENERATION_PREFIX,
    LIBRARY_PREFIX,
    MESSAGE_PREFIX,
    SESSION_PREFIX,
    generate_chunk_id,
    generate_id,
    is_chunk_id,
    is_library_id,
)
from .errors import InvalidInputError, NotFoundError
from .models import (
    ChatMessage,
    ChatSession,
    ChatSessionStatus,
    ContentType,
    DocumentationChunk,
    DocumentationEmbedding,
    DocumentationLibrary,
    DocumentationStatus,
    IntegrationGeneration,
    SearchResult,
    to_jsonable,
    utcnow,
)
from .search import VectorSearchEngine, VectorSearchParams

logger = logging.getLogger(__name__)

EMBEDDING_VERSION = "1.0"
EXPORT_FORMATS = ("json", "markdown", "csv")
UPDATABLE_LIBRARY_FIELDS = frozenset(
    {"name", "description", "url", "version", "language", "tags", "content_hash", "status"}
)


@dataclass
class LibraryStatistics:
    """Aggregate view of the store, computed on demand."""
    total_libraries: int
    total_chunks: int
    total_embeddings: int
    libraries_by_provider: dict[str, int] = field(default_factory=dict)
    chunks_by_content_type: dict[str, int] = field(default_factory=dict)
    average_chunk_size: float = 0.0  # words
    last_updated: Optional[datetime] = None


class DocumentationStore:
    """Concurrency-safe CRUD over the documentation tables."""

    def __init__(
        self,
        dimensions: Optional[int] = None,
        search_engine: Optional[VectorSearchEngine] = None,
    ):
        """
        Args:
            dimensions: Required embedding dimension. When None, the first
                stored embedding fixes it.
            search_engine: Ranking engine used by ``vector_search``.
        """
        self._dimensions = dimensions
        self._engine = search_engine or VectorSearchEngine()

        self._docs_lock = threading.RLock()
        self._libraries: dict[str, DocumentationLibrary] = {}
        self._chunks: dict[str, DocumentationChunk] = {}
        self._embeddings: dict[str, DocumentationEmbedding] = {}
        self._libraries_by_provider: dict[str, list[str]] = {}
        self._chunks_by_library: dict[str, list[str]] = {}
        self._next_chunk_index: dict[str, int] = {}

        self._chat_lock = threading.RLock()
        self._sessions: dict[str, ChatSession] = {}
        self._messages: dict[str, list[ChatMessage]] = {}
        self._sessions_by_user: dict[str, list[str]] = {}

        self._history_lock = threading.Lock()
        self._generations: dict[str, IntegrationGeneration] = {}

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    # --- Libraries ---

    def add_library(self, library: DocumentationLibrary) -> str:
        """Insert a library; id and timestamps supplied by the caller are ignored."""
        now = utcnow()
        stored = replace(
            copy.deepcopy(library),
            id=generate_id(LIBRARY_PREFIX),
            created_at=now,
            updated_at=now,
            chunk_count=0,
        )

        with self._docs_lock:
            self._libraries[stored.id] = stored
            self._chunks_by_library[stored.id] = []
            self._next_chunk_index[stored.id] = 0
            if stored.provider_id is not None:
                self._libraries_by_provider.setdefault(stored.provider_id, []).append(stored.id)

        logger.debug("Added library %s (%s)", stored.id, stored.name)
        return stored.id

    def get_library(self, library_id: str) -> Optional[DocumentationLibrary]:
        with self._docs_lock:
            library = self._libraries.get(library_id)
            return copy.deepcopy(library) if library else None

    def list_libraries(self) -> list[DocumentationLibrary]:
        """All libraries, oldest first."""
        with self._docs_lock:
            libraries = [copy.deepcopy(lib) for lib in self._libraries.values()]
        return sorted(libraries, key=lambda lib: (lib.created_at, lib.id))

    def get_libraries_by_provider(self, provider_id: str) -> list[DocumentationLibrary]:
        """Libraries registered under ``provider_id``, in insertion order."""
        with self._docs_lock:
            return [
                copy.deepcopy(self._libraries[library_id])
                for library_id in self._libraries_by_provider.get(provider_id, [])
                if library_id in self._libraries
            ]

    def get_or_create_provider_library(
        self, provider_id: str, library: DocumentationLibrary
    ) -> tuple[str, bool]:
        """Return the provider's first library, adding ``library`` if it has none.

        The lookup and the insert happen under one lock, so concurrent
        callers for the same provider end up sharing a single library.

        Returns:
            Tuple of (library id, whether it was created).
        """
        with self._docs_lock:
            for library_id in self._libraries_by_provider.get(provider_id, []):
                if library_id in self._libraries:
                    return library_id, False
            return self.add_library(replace(library, provider_id=provider_id)), True

    def update_library(self, library_id: str, **changes: Any) -> DocumentationLibrary:
        """Update library metadata and refresh ``updated_at``.

        Accepted fields: name, description, url, version, language, tags,
        content_hash, status.
        """
        unknown = set(changes) - UPDATABLE_LIBRARY_FIELDS
        if unknown:
            raise InvalidInputError(f"Cannot update library field(s): {', '.join(sorted(unknown))}")
        if "status" in changes:
            changes["status"] = DocumentationStatus(changes["status"])
        if "tags" in changes:
            changes["tags"] = set(changes["tags"] or ())

        with self._docs_lock:
            library = self._libraries.get(library_id)
            if library is None:
                raise NotFoundError("Library", library_id)
            for name, value in changes.items():
                setattr(library, name, value)
            library.updated_at = utcnow()
            return copy.deepcopy(library)

    def delete_library(self, library_id: str) -> int:
        """Delete a library with all of its chunks and embeddings.

        Returns:
            Number of chunks removed.
        """
        with self._docs_lock:
            library = self._libraries.pop(library_id, None)
            if library is None:
                raise NotFoundError("Library", library_id)

            chunk_ids = self._chunks_by_library.pop(library_id, [])
            for chunk_id in chunk_ids:
                self._chunks.pop(chunk_id, None)
                self._embeddings.pop(chunk_id, None)
            self._next_chunk_index.pop(library_id, None)

            if library.provider_id is not None:
                provider_libraries = self._libraries_by_provider.get(library.provider_id, [])
                if library_id in provider_libraries:
                    provider_libraries.remove(library_id)
                if not provider_libraries:
                    self._libraries_by_provider.pop(library.provider_id, None)

        logger.info("Deleted library %s and %d chunk(s)", library_id, len(chunk_ids))
        return len(chunk_ids)

    # --- Chunks and embeddings ---

    @staticmethod
    def _require_chunk_id(chunk_id: str) -> None:
        if not is_chunk_id(chunk_id):
            raise InvalidInputError(f"Not a chunk id: {chunk_id}")

    def _check_vector(self, vector: list[float]) -> list[float]:
        """Validate an embedding against the store's dimension. Caller holds the docs lock."""
        if not vector:
            raise InvalidInputError("embedding must not be empty")
        if any(not math.isfinite(v) for v in vector):
            raise InvalidInputError("embedding contains non-finite values")
        if self._dimensions is None:
            self._dimensions = len(vector)
        elif len(vector) != self._dimensions:
            raise InvalidInputError(
                f"Embedding dimensions mismatch: expected {self._dimensions}, got {len(vector)}"
            )
        return [float(v) for v in vector]

    def add_chunk_with_embedding(
        self,
        chunk: DocumentationChunk,
        embedding: list[float],
        model_name: str,
    ) -> str:
        """Store a chunk and its embedding and index it under its library.

        The store assigns the chunk id, ``chunk_index`` (next ordinal in the
        library) and ``created_at``.
        """
        return self.add_chunks_with_embeddings([chunk], [embedding], model_name)[0]

    def add_chunks_with_embeddings(
        self,
        chunks: list[DocumentationChunk],
        embeddings: list[list[float]],
        model_name: str,
        link_adjacent: bool = False,
    ) -> list[str]:
        """Store several chunks in one transaction.

        Either all chunks are stored or none are. With ``link_adjacent``,
        each chunk lists its neighbours in ``metadata.related_chunks``.
        """
        if len(chunks) != len(embeddings):
            raise InvalidInputError(
                f"Got {len(chunks)} chunk(s) but {len(embeddings)} embedding(s)"
            )
        if not chunks:
            return []

        now = utcnow()
        with self._docs_lock:
            staged, vectors, next_index = self._stage_chunks(chunks, embeddings, now, link_adjacent)
            self._commit_chunks(staged, vectors, next_index, model_name, now)
        return [chunk.id for chunk in staged]

    def replace_library_chunks(
        self,
        library_id: str,
        chunks: list[DocumentationChunk],
        embeddings: list[list[float]],
        model_name: str,
        link_adjacent: bool = True,
    ) -> list[str]:
        """Swap every chunk of a library for ``chunks`` in one transaction.

        The new chunks are validated before anything is removed; on any
        error the library keeps its old chunks. Chunk indexes continue from
        the old ones.
        """
        if len(chunks) != len(embeddings):
            raise InvalidInputError(
                f"Got {len(chunks)} chunk(s) but {len(embeddings)} embedding(s)"
            )
        if any(chunk.library_id != library_id for chunk in chunks):
            raise InvalidInputError(f"All chunks must belong to library {library_id}")

        now = utcnow()
        with self._docs_lock:
            if library_id not in self._libraries:
                raise NotFoundError("Library", library_id)
            staged, vectors, next_index = self._stage_chunks(chunks, embeddings, now, link_adjacent)

            old_ids = self._chunks_by_library[library_id]
            for chunk_id in old_ids:
                self._chunks.pop(chunk_id, None)
                self._embeddings.pop(chunk_id, None)
            self._chunks_by_library[library_id] = []

            self._commit_chunks(staged, vectors, next_index, model_name, now)
            library = self._libraries[library_id]
            library.chunk_count = len(self._chunks_by_library[library_id])
            library.updated_at = now

        logger.info(
            "Replaced %d chunk(s) of %s with %d", len(old_ids), library_id, len(staged)
        )
        return [chunk.id for chunk in staged]

    def _stage_chunks(
        self,
        chunks: list[DocumentationChunk],
        embeddings: list[list[float]],
        now: datetime,
        link_adjacent: bool,
    ) -> tuple[list[DocumentationChunk], list[list[float]], dict[str, int]]:
        """Validate and assign ids without touching the tables. Caller holds the docs lock."""
        dimensions = self._dimensions
        try:
            vectors = [self._check_vector(vector) for vector in embeddings]
        except InvalidInputError:
            self._dimensions = dimensions
            raise
        for chunk in chunks:
            if chunk.library_id not in self._libraries:
                self._dimensions = dimensions
                raise NotFoundError("Library", chunk.library_id)

        staged: list[DocumentationChunk] = []
        next_index = dict(self._next_chunk_index)
        for chunk in chunks:
            index = next_index[chunk.library_id]
            next_index[chunk.library_id] = index + 1
            staged.append(
                replace(
                    copy.deepcopy(chunk),
                    id=generate_chunk_id(chunk.library_id, index),
                    chunk_index=index,
                    created_at=now,
                )
            )

        if link_adjacent:
            for i, chunk in enumerate(staged):
                neighbours = [
                    staged[j].id
                    for j in (i - 1, i + 1)
                    if 0 <= j < len(staged) and staged[j].library_id == chunk.library_id
                ]
                for neighbour in neighbours:
                    if neighbour not in chunk.metadata.related_chunks:
                        chunk.metadata.related_chunks.append(neighbour)

        return staged, vectors, next_index

    def _commit_chunks(
        self,
        staged: list[DocumentationChunk],
        vectors: list[list[float]],
        next_index: dict[str, int],
        model_name: str,
        now: datetime,
    ) -> None:
        for chunk, vector in zip(staged, vectors):
            self._chunks[chunk.id] = chunk
            self._embeddings[chunk.id] = DocumentationEmbedding(
                chunk_id=chunk.id,
                vector=vector,
                model_name=model_name,
                embedding_version=EMBEDDING_VERSION,
                created_at=now,
            )
            self._chunks_by_library[chunk.library_id].append(chunk.id)

        self._next_chunk_index = next_index
        for library_id in {c.library_id for c in staged}:
            library = self._libraries[library_id]
            library.chunk_count = len(self._chunks_by_library[library_id])
            library.updated_at = now

    def get_chunk(self, chunk_id: str) -> Optional[DocumentationChunk]:
        with self._docs_lock:
            chunk = self._chunks.get(chunk_id)
            return copy.deepcopy(chunk) if chunk else None

    def get_embedding(self, chunk_id: str) -> Optional[DocumentationEmbedding]:
        with self._docs_lock:
            embedding = self._embeddings.get(chunk_id)
            return copy.deepcopy(embedding) if embedding else None

    def get_library_chunks(
        self,
        library_id: str,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> list[DocumentationChunk]:
        """Chunks of a library in ``chunk_index`` order, paginated."""
        if not is_library_id(library_id):
            raise InvalidInputError(f"Not a library id: {library_id}")
        if offset < 0 or (limit is not None and limit < 0):
            raise InvalidInputError("offset and limit must be non-negative")

        with self._docs_lock:
            if library_id not in self._libraries:
                raise NotFoundError("Library", library_id)
            chunk_ids = self._chunks_by_library.get(library_id, [])
            end = None if limit is None else offset + limit
            return [copy.deepcopy(self._chunks[cid]) for cid in chunk_ids[offset:end]]

    def update_chunk(
        self,
        chunk_id: str,
        embedding: list[float],
        model_name: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        section_path: Optional[list[str]] = None,
        keywords: Optional[list[str]] = None,
        importance_score: Optional[float] = None,
        content_type: Optional[ContentType] = None,
    ) -> DocumentationChunk:
        """Replace a chunk's content and its embedding together."""
        self._require_chunk_id(chunk_id)
        now = utcnow()
        with self._docs_lock:
            current = self._chunks.get(chunk_id)
            if current is None:
                raise NotFoundError("Chunk", chunk_id)
            vector = self._check_vector(embedding)

            metadata = copy.deepcopy(current.metadata)
            if content is not None:
                metadata.word_count = len(content.split())
            if keywords is not None:
                metadata.keywords = list(dict.fromkeys(keywords))
            if importance_score is not None:
                if not (0.0 <= importance_score <= 1.0):
                    raise InvalidInputError(
                        f"importance_score must be between 0.0 and 1.0, got {importance_score}"
                    )
                metadata.importance_score = importance_score
            if content_type is not None:
                metadata.content_type = ContentType.parse(content_type)

            updated = replace(
                copy.deepcopy(current),
                title=current.title if title is None else title,
                content=current.content if content is None else content,
                section_path=list(current.section_path if section_path is None else section_path),
                metadata=metadata,
            )
            self._chunks[chunk_id] = updated
            self._embeddings[chunk_id] = DocumentationEmbedding(
                chunk_id=chunk_id,
                vector=vector,
                model_name=model_name,
                embedding_version=EMBEDDING_VERSION,
                created_at=now,
            )
            self._libraries[updated.library_id].updated_at = now
            return copy.deepcopy(updated)

    def delete_chunk(self, chunk_id: str) -> None:
        self._require_chunk_id(chunk_id)
        with self._docs_lock:
            chunk = self._chunks.pop(chunk_id, None)
            if chunk is None:
                raise NotFoundError("Chunk", chunk_id)
            self._embeddings.pop(chunk_id, None)
            library_chunks = self._chunks_by_library.get(chunk.library_id, [])
            if chunk_id in library_chunks:
                library_chunks.remove(chunk_id)
            library = self._libraries.get(chunk.library_id)
            if library is not None:
                library.chunk_count = len(library_chunks)
                library.updated_at = utcnow()

    # --- Search ---

    def vector_search(
        self,
        params: VectorSearchParams,
        query_embedding: list[float],
    ) -> list[SearchResult]:
        """Rank stored chunks against ``query_embedding``.

        Only the table snapshot is taken under the lock; scoring runs
        outside it, so concurrent writes may or may not be reflected.
        """
        with self._docs_lock:
            chunks = dict(self._chunks)
            embeddings = list(self._embeddings.values())

        results = self._engine.search(query_embedding, params, chunks, embeddings)
        return copy.deepcopy(results)

    # --- Chat ---

    def create_chat_session(
        self,
        user_id: str,
        title: str,
        description: Optional[str] = None,
        context_library_ids: Optional[list[str]] = None,
    ) -> str:
        now = utcnow()
        session = ChatSession(
            id=generate_id(SESSION_PREFIX),
            user_id=user_id,
            title=title,
            description=description,
            context_libraries=list(context_library_ids or []),
            created_at=now,
            updated_at=now,
        )
        with self._chat_lock:
            self._sessions[session.id] = session
            self._messages[session.id] = []
            self._sessions_by_user.setdefault(user_id, []).append(session.id)
        return session.id

    def get_chat_session(self, session_id: str) -> Optional[ChatSession]:
        with self._chat_lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def update_chat_session_status(self, session_id: str, status: ChatSessionStatus) -> None:
        status = ChatSessionStatus(status)
        with self._chat_lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise NotFoundError("Session", session_id)
            session.status = status
            session.updated_at = utcnow()

    def add_chat_message(self, message: ChatMessage) -> str:
        """Append a message to its session; id and timestamp are assigned here."""
        now = utcnow()
        stored = replace(copy.deepcopy(message), id=generate_id(MESSAGE_PREFIX), created_at=now)

        with self._chat_lock:
            session = self._sessions.get(stored.session_id)
            if session is None:
                raise NotFoundError("Session", stored.session_id)
            messages = self._messages.setdefault(stored.session_id, [])
            messages.append(stored)
            session.message_count = len(messages)
            session.updated_at = now

        return stored.id

    def get_chat_messages(self, session_id: str) -> list[ChatMessage]:
        """Messages in append order; empty for unknown sessions."""
        with self._chat_lock:
            return copy.deepcopy(self._messages.get(session_id, []))

    def get_user_chat_sessions(self, user_id: str) -> list[ChatSession]:
        """Active sessions of a user, most recently updated first."""
        with self._chat_lock:
            sessions = [
                copy.deepcopy(self._sessions[session_id])
                for session_id in self._sessions_by_user.get(user_id, [])
                if session_id in self._sessions
                and self._sessions[session_id].status is ChatSessionStatus.ACTIVE
            ]
        sessions.sort(key=lambda s: (s.updated_at, s.id), reverse=True)
        return sessions

    # --- Generation history ---

    def store_integration_generation(self, generation: IntegrationGeneration) -> str:
        stored = replace(
            copy.deepcopy(generation),
            id=generate_id(GENERATION_PREFIX),
            created_at=utcnow(),
        )
        with self._history_lock:
            self._generations[stored.id] = stored
        return stored.id

    def get_integration_generation(self, generation_id: str) -> Optional[IntegrationGeneration]:
        with self._history_lock:
            generation = self._generations.get(generation_id)
            return copy.deepcopy(generation) if generation else None

    def list_integration_generations(
        self, session_id: Optional[str] = None
    ) -> list[IntegrationGeneration]:
        """Generation records in creation order, optionally for one session."""
        with self._history_lock:
            records = [
                copy.deepcopy(g)
                for g in self._generations.values()
                if session_id is None or g.session_id == session_id
            ]
        return records

    # --- Statistics and export ---

    def get_library_stats(self) -> dict[str, int]:
        with self._docs_lock:
            return {
                "total_libraries": len(self._libraries),
                "total_chunks": sum(len(ids) for ids in self._chunks_by_library.values()),
                "total_embeddings": len(self._embeddings),
            }

    def get_library_statistics(self) -> LibraryStatistics:
        """Detailed statistics: per-provider and per-content-type breakdowns."""
        with self._docs_lock:
            by_provider = {
                provider: len(ids) for provider, ids in self._libraries_by_provider.items() if ids
            }
            by_type = Counter(c.metadata.content_type.value for c in self._chunks.values())
            word_counts = [c.metadata.word_count for c in self._chunks.values()]
            stats = LibraryStatistics(
                total_libraries=len(self._libraries),
                total_chunks=len(self._chunks),
                total_embeddings=len(self._embeddings),
                libraries_by_provider=by_provider,
                chunks_by_content_type=dict(by_type),
                average_chunk_size=(sum(word_counts) / len(word_counts)) if word_counts else 0.0,
                last_updated=max(
                    (lib.updated_at for lib in self._libraries.values()), default=None
                ),
            )
        return stats

    def export_library(self, library_id: str, format: str = "json") -> str:
        """Serialize a library and its chunks as json, markdown or csv."""
        fmt = format.lower()
        if fmt not in EXPORT_FORMATS:
            raise InvalidInputError(f"Unsupported export format: {format}")

        library = self.get_library(library_id)
        if library is None:
            raise NotFoundError("Library", library_id)
        chunks = self.get_library_chunks(library_id)

        if fmt == "json":
            return json.dumps(
                {"library": to_jsonable(library), "chunks": to_jsonable(chunks)},
                indent=2,
            )

        if fmt == "markdown":
            lines = [f"# {library.name}", ""]
            if library.description:
                lines += [library.description, ""]
            lines += [f"Library ID: {library.id}", ""]
            for chunk in chunks:
                lines += [f"## {chunk.title}", ""]
                if chunk.section_path:
                    lines += [f"*Section: {' > '.join(chunk.section_path)}*", ""]
                lines += [chunk.content.strip(), ""]
            return "\n".join(lines)

        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["title", "content", "section_path", "content_type"])
        for chunk in chunks:
            writer.writerow([
                chunk.title,
                chunk.content,
                " > ".join(chunk.section_path),
                chunk.metadata.content_type.value,
            ])
        return buffer.getvalue()
