"""Tests for the in-memory documentation store."""

from __future__ import annotations

import csv
import io
import json
import threading

import pytest

from keydocs.chunk_ids import is_library_id, parse_chunk_id
from keydocs.embeddings import HashEmbeddingBackend
from keydocs.errors import InvalidInputError, NotFoundError
from keydocs.models import (
    ChatMessage,
    ChatSessionStatus,
    ChunkMetadata,
    ContentType,
    DocumentationChunk,
    DocumentationLibrary,
    DocumentationStatus,
    GeneratedCode,
    GenerationMetadata,
    IntegrationGeneration,
    MessageRole,
)
from keydocs.search import VectorSearchParams
from keydocs.store import DocumentationStore

DIMENSIONS = 64

hasher = HashEmbeddingBackend(DIMENSIONS)


def make_chunk(library_id: str, content: str, **metadata) -> DocumentationChunk:
    return DocumentationChunk(
        library_id=library_id,
        title=content[:20],
        content=content,
        section_path=["API"],
        metadata=ChunkMetadata(word_count=len(content.split()), **metadata),
    )


def add(store: DocumentationStore, library_id: str, content: str, **metadata) -> str:
    return store.add_chunk_with_embedding(
        make_chunk(library_id, content, **metadata), hasher.embed(content), hasher.model_name
    )


class TestLibraries:
    def test_add_assigns_id_and_timestamps(self, store):
        library = DocumentationLibrary(name="Stripe", id="caller-id", chunk_count=42)
        library_id = store.add_library(library)

        assert library_id != "caller-id"
        assert is_library_id(library_id)
        stored = store.get_library(library_id)
        assert stored.created_at is not None
        assert stored.updated_at == stored.created_at
        assert stored.chunk_count == 0

    def test_unique_ids_under_concurrency(self, store):
        ids: list[str] = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                library_id = store.add_library(DocumentationLibrary(name="x", provider_id="p"))
                with lock:
                    ids.append(library_id)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 400
        assert len(store.get_libraries_by_provider("p")) == 400

    def test_libraries_by_provider(self, store):
        """Two libraries under "openai" come back, nothing from other providers."""
        first = store.add_library(DocumentationLibrary(name="API", provider_id="openai"))
        second = store.add_library(DocumentationLibrary(name="Cookbook", provider_id="openai"))
        store.add_library(DocumentationLibrary(name="Stripe", provider_id="stripe"))
        store.add_library(DocumentationLibrary(name="Orphan"))

        libraries = store.get_libraries_by_provider("openai")
        assert [lib.id for lib in libraries] == [first, second]
        assert store.get_libraries_by_provider("missing") == []

    def test_get_returns_copy(self, store, library_id):
        store.get_library(library_id).name = "mutated"
        assert store.get_library(library_id).name == "OpenAI Documentation"

    def test_get_missing(self, store):
        assert store.get_library("LIBnope") is None

    def test_list_libraries(self, store, library_id):
        other = store.add_library(DocumentationLibrary(name="Other"))
        assert [lib.id for lib in store.list_libraries()] == [library_id, other]

    def test_update_library(self, store, library_id):
        before = store.get_library(library_id)
        updated = store.update_library(
            library_id, status="indexed", content_hash="abc", tags=["api"]
        )
        assert updated.status is DocumentationStatus.INDEXED
        assert updated.content_hash == "abc"
        assert updated.tags == {"api"}
        assert updated.updated_at >= before.updated_at

    def test_update_unknown_field(self, store, library_id):
        with pytest.raises(InvalidInputError):
            store.update_library(library_id, chunk_count=5)

    def test_update_missing(self, store):
        with pytest.raises(NotFoundError, match="Library not found"):
            store.update_library("LIBnope", name="x")

    def test_delete_cascades(self, store, library_id):
        """Deleting the owning library leaves no orphaned chunk or embedding."""
        chunk_id = add(store, library_id, "OAuth setup requires a client ID and secret")

        assert store.delete_library(library_id) == 1

        assert store.get_library(library_id) is None
        assert store.get_chunk(chunk_id) is None
        assert store.get_embedding(chunk_id) is None
        assert store.get_libraries_by_provider("openai") == []
        assert store.get_library_stats() == {
            "total_libraries": 0,
            "total_chunks": 0,
            "total_embeddings": 0,
        }
        results = store.vector_search(
            VectorSearchParams(min_similarity=0.0),
            hasher.embed("OAuth setup requires a client ID and secret"),
        )
        assert results == []

    def test_delete_missing(self, store):
        with pytest.raises(NotFoundError):
            store.delete_library("LIBnope")

    def test_get_or_create_provider_library(self, store):
        template = DocumentationLibrary(name="Stripe Documentation")
        first, created = store.get_or_create_provider_library("stripe", template)
        second, created_again = store.get_or_create_provider_library("stripe", template)

        assert created is True
        assert created_again is False
        assert first == second
        assert store.get_library(first).provider_id == "stripe"
        assert len(store.get_libraries_by_provider("stripe")) == 1


class TestChunks:
    def test_add_chunk_with_embedding(self, store, library_id):
        chunk_id = add(store, library_id, "Rate limits apply per key")

        parsed = parse_chunk_id(chunk_id)
        assert parsed.library_id == library_id
        assert parsed.chunk_index == 0

        chunk = store.get_chunk(chunk_id)
        assert chunk.id == chunk_id
        assert chunk.created_at is not None

        embedding = store.get_embedding(chunk_id)
        assert embedding.model_name == "hash-embedding"
        assert embedding.embedding_version == "1.0"
        assert embedding.dimensions == DIMENSIONS
        assert store.get_library(library_id).chunk_count == 1

    def test_chunk_index_is_ingestion_order(self, store, library_id):
        ids = [add(store, library_id, f"passage {i}") for i in range(3)]
        assert [parse_chunk_id(i).chunk_index for i in ids] == [0, 1, 2]

    def test_chunk_index_not_reused_after_delete(self, store, library_id):
        first = add(store, library_id, "one")
        store.delete_chunk(first)
        second = add(store, library_id, "two")
        assert parse_chunk_id(second).chunk_index == 1

    def test_missing_library(self, store):
        with pytest.raises(NotFoundError):
            add(store, "LIBnope", "text")

    def test_empty_embedding(self, store, library_id):
        with pytest.raises(InvalidInputError):
            store.add_chunk_with_embedding(make_chunk(library_id, "x"), [], "m")

    def test_dimension_mismatch(self, store, library_id):
        with pytest.raises(InvalidInputError, match="dimensions mismatch"):
            store.add_chunk_with_embedding(make_chunk(library_id, "x"), [1.0, 0.0], "m")
        assert store.get_library_stats()["total_chunks"] == 0

    def test_dimension_fixed_by_first_embedding(self):
        store = DocumentationStore()
        lib = store.add_library(DocumentationLibrary(name="x"))
        store.add_chunk_with_embedding(make_chunk(lib, "a"), [1.0, 0.0, 0.0], "m")
        assert store.dimensions == 3
        with pytest.raises(InvalidInputError):
            store.add_chunk_with_embedding(make_chunk(lib, "b"), [1.0, 0.0], "m")

    def test_batch_is_atomic(self, store, library_id):
        chunks = [make_chunk(library_id, "a"), make_chunk(library_id, "b")]
        with pytest.raises(InvalidInputError):
            store.add_chunks_with_embeddings(chunks, [hasher.embed("a"), [1.0]], "m")
        assert store.get_library_chunks(library_id) == []

    def test_batch_links_neighbours(self, store, library_id):
        chunks = [make_chunk(library_id, text) for text in ("a", "b", "c")]
        ids = store.add_chunks_with_embeddings(
            chunks, [hasher.embed(c.content) for c in chunks], "m", link_adjacent=True
        )
        assert store.get_chunk(ids[0]).metadata.related_chunks == [ids[1]]
        assert store.get_chunk(ids[1]).metadata.related_chunks == [ids[0], ids[2]]
        assert store.get_chunk(ids[2]).metadata.related_chunks == [ids[1]]

    def test_library_chunks_paginated(self, store, library_id):
        ids = [add(store, library_id, f"passage {i}") for i in range(5)]
        assert [c.id for c in store.get_library_chunks(library_id)] == ids
        assert [c.id for c in store.get_library_chunks(library_id, offset=1, limit=2)] == ids[1:3]

    def test_library_chunks_missing_library(self, store):
        with pytest.raises(NotFoundError):
            store.get_library_chunks("LIBnope")

    def test_update_chunk_re_embeds(self, store, library_id):
        chunk_id = add(store, library_id, "old text")
        updated = store.update_chunk(
            chunk_id,
            hasher.embed("brand new text here"),
            hasher.model_name,
            content="brand new text here",
            importance_score=0.9,
            content_type="example",
        )

        assert updated.content == "brand new text here"
        assert updated.metadata.word_count == 4
        assert updated.metadata.importance_score == 0.9
        assert updated.metadata.content_type is ContentType.EXAMPLE
        assert store.get_embedding(chunk_id).vector == pytest.approx(hasher.embed("brand new text here"))
        assert store.get_library_stats()["total_embeddings"] == 1

    def test_update_chunk_validates(self, store, library_id):
        chunk_id = add(store, library_id, "text")
        with pytest.raises(InvalidInputError):
            store.update_chunk(chunk_id, hasher.embed("x"), "m", importance_score=1.5)
        with pytest.raises(NotFoundError):
            store.update_chunk("LIBnope.0", hasher.embed("x"), "m")

    def test_delete_chunk(self, store, library_id):
        keep = add(store, library_id, "keep")
        drop = add(store, library_id, "drop")
        store.delete_chunk(drop)

        assert store.get_chunk(drop) is None
        assert store.get_embedding(drop) is None
        assert [c.id for c in store.get_library_chunks(library_id)] == [keep]
        assert store.get_library(library_id).chunk_count == 1
        with pytest.raises(NotFoundError):
            store.delete_chunk(drop)

    def test_malformed_ids_rejected(self, store):
        with pytest.raises(InvalidInputError, match="Not a chunk id"):
            store.delete_chunk("LIBnope")
        with pytest.raises(InvalidInputError, match="Not a chunk id"):
            store.update_chunk("not-a-chunk", hasher.embed("x"), "m")
        with pytest.raises(InvalidInputError, match="Not a library id"):
            store.get_library_chunks("CHSnope")

    def test_replace_library_chunks(self, store, library_id):
        old = [add(store, library_id, text) for text in ("one", "two")]
        other = store.add_library(DocumentationLibrary(name="Other"))
        kept = add(store, other, "untouched")

        chunks = [make_chunk(library_id, text) for text in ("three", "four", "five")]
        new = store.replace_library_chunks(
            library_id, chunks, [hasher.embed(c.content) for c in chunks], hasher.model_name
        )

        assert [parse_chunk_id(i).chunk_index for i in new] == [2, 3, 4]
        assert all(store.get_chunk(i) is None and store.get_embedding(i) is None for i in old)
        assert [c.id for c in store.get_library_chunks(library_id)] == new
        assert store.get_chunk(new[1]).metadata.related_chunks == [new[0], new[2]]
        assert store.get_library(library_id).chunk_count == 3
        assert store.get_chunk(kept) is not None
        assert store.get_library_stats()["total_embeddings"] == 4

    def test_replace_library_chunks_is_atomic(self, store, library_id):
        old = [add(store, library_id, text) for text in ("one", "two")]
        chunks = [make_chunk(library_id, "three"), make_chunk(library_id, "four")]

        with pytest.raises(InvalidInputError):
            store.replace_library_chunks(
                library_id, chunks, [hasher.embed("three"), [1.0, 0.0]], hasher.model_name
            )

        assert [c.id for c in store.get_library_chunks(library_id)] == old
        assert store.get_library(library_id).chunk_count == 2

    def test_replace_rejects_foreign_chunks(self, store, library_id):
        other = store.add_library(DocumentationLibrary(name="Other"))
        with pytest.raises(InvalidInputError):
            store.replace_library_chunks(
                library_id, [make_chunk(other, "x")], [hasher.embed("x")], hasher.model_name
            )

    def test_failed_batch_does_not_fix_dimensions(self):
        store = DocumentationStore()
        lib = store.add_library(DocumentationLibrary(name="x"))
        with pytest.raises(NotFoundError):
            store.add_chunk_with_embedding(make_chunk("LIBnope", "a"), [1.0, 0.0], "m")
        assert store.dimensions is None
        store.add_chunk_with_embedding(make_chunk(lib, "b"), [1.0, 0.0, 0.0], "m")
        assert store.dimensions == 3


class TestVectorSearch:
    def test_exact_text_found_first(self, store):
        """A chunk is found by the embedding of its own text at 0.99."""
        library_id = store.add_library(DocumentationLibrary(name="Auth"))
        text = "OAuth setup requires a client ID and secret"
        chunk_id = add(store, library_id, text, content_type=ContentType.CONFIGURATION)
        add(store, library_id, "Webhooks are signed with a shared secret")

        results = store.vector_search(VectorSearchParams(min_similarity=0.99), hasher.embed(text))

        assert results[0].chunk_id == chunk_id
        assert results[0].similarity_score == pytest.approx(1.0)
        assert results[0].content_type is ContentType.CONFIGURATION
        assert len(results) == 1

    def test_results_are_copies(self, store, library_id):
        chunk_id = add(store, library_id, "text")
        results = store.vector_search(VectorSearchParams(min_similarity=0.5), hasher.embed("text"))
        results[0].metadata.keywords.append("mutated")
        assert "mutated" not in store.get_chunk(chunk_id).metadata.keywords

    def test_search_does_not_mutate(self, store, library_id):
        add(store, library_id, "text")
        before = store.get_library_stats()
        store.vector_search(VectorSearchParams(min_similarity=0.0), hasher.embed("text"))
        assert store.get_library_stats() == before


class TestChat:
    def test_session_and_messages(self, store):
        session_id = store.create_chat_session("user1", "Stripe help", None, ["LIB1"])
        first = store.add_chat_message(
            ChatMessage(session_id=session_id, role=MessageRole.USER, content="How do I refund?")
        )
        second = store.add_chat_message(
            ChatMessage(
                session_id=session_id,
                role=MessageRole.ASSISTANT,
                content="Use the refunds endpoint.",
                context_chunks=["LIB1.0"],
            )
        )

        messages = store.get_chat_messages(session_id)
        assert [m.id for m in messages] == [first, second]
        assert messages[1].context_chunks == ["LIB1.0"]
        session = store.get_chat_session(session_id)
        assert session.message_count == 2
        assert session.context_libraries == ["LIB1"]

    def test_message_for_missing_session(self, store):
        with pytest.raises(NotFoundError, match="Session not found"):
            store.add_chat_message(
                ChatMessage(session_id="CHSnope", role=MessageRole.USER, content="hi")
            )

    def test_messages_for_unknown_session_empty(self, store):
        assert store.get_chat_messages("CHSnope") == []

    def test_user_sessions_active_most_recent_first(self, store):
        older = store.create_chat_session("user1", "older")
        newer = store.create_chat_session("user1", "newer")
        archived = store.create_chat_session("user1", "archived")
        store.create_chat_session("user2", "someone else")
        store.update_chat_session_status(archived, ChatSessionStatus.ARCHIVED)

        # Touch the older session so it becomes the most recent
        store.add_chat_message(ChatMessage(session_id=older, role=MessageRole.USER, content="bump"))

        sessions = store.get_user_chat_sessions("user1")
        assert [s.id for s in sessions] == [older, newer]

    def test_update_status_missing(self, store):
        with pytest.raises(NotFoundError):
            store.update_chat_session_status("CHSnope", ChatSessionStatus.DELETED)


class TestGenerationHistory:
    def make_record(self, session_id: str) -> IntegrationGeneration:
        return IntegrationGeneration(
            session_id=session_id,
            provider_name="stripe",
            framework="express",
            language="typescript",
            user_requirements="Create a checkout session",
            generated_code=GeneratedCode(language="typescript", framework="express"),
            generation_metadata=GenerationMetadata(llm_model="local"),
        )

    def test_store_and_list(self, store):
        first = store.store_integration_generation(self.make_record("CHS1"))
        second = store.store_integration_generation(self.make_record("CHS2"))

        assert first != second
        assert store.get_integration_generation(first).provider_name == "stripe"
        assert [g.id for g in store.list_integration_generations()] == [first, second]
        assert [g.id for g in store.list_integration_generations("CHS2")] == [second]
        assert store.get_integration_generation("GENnope") is None


class TestStatsAndExport:
    def test_stats(self, store, library_id):
        add(store, library_id, "one two three", content_type=ContentType.EXAMPLE)
        add(store, library_id, "four five", content_type=ContentType.REFERENCE)
        store.add_library(DocumentationLibrary(name="Stripe", provider_id="stripe"))

        assert store.get_library_stats() == {
            "total_libraries": 2,
            "total_chunks": 2,
            "total_embeddings": 2,
        }
        stats = store.get_library_statistics()
        assert stats.libraries_by_provider == {"openai": 1, "stripe": 1}
        assert stats.chunks_by_content_type == {"example": 1, "reference": 1}
        assert stats.average_chunk_size == pytest.approx(2.5)
        assert stats.last_updated is not None

    def test_empty_statistics(self, store):
        stats = store.get_library_statistics()
        assert stats.total_chunks == 0
        assert stats.average_chunk_size == 0.0
        assert stats.last_updated is None

    def test_export_json(self, store, library_id):
        add(store, library_id, "OAuth tokens expire after an hour")
        data = json.loads(store.export_library(library_id, "json"))
        assert data["library"]["name"] == "OpenAI Documentation"
        assert data["chunks"][0]["content"] == "OAuth tokens expire after an hour"

    def test_export_markdown(self, store, library_id):
        add(store, library_id, "OAuth tokens expire after an hour")
        text = store.export_library(library_id, "markdown")
        assert text.startswith("# OpenAI Documentation")
        assert "*Section: API*" in text

    def test_export_csv(self, store, library_id):
        add(store, library_id, "tokens, with a comma")
        rows = list(csv.reader(io.StringIO(store.export_library(library_id, "csv"))))
        assert rows[0] == ["title", "content", "section_path", "content_type"]
        assert rows[1][1] == "tokens, with a comma"

    def test_export_bad_format(self, store, library_id):
        with pytest.raises(InvalidInputError):
            store.export_library(library_id, "xml")

    def test_export_missing(self, store):
        with pytest.raises(NotFoundError):
            store.export_library("LIBnope")
