"""Centralized pytest fixtures and configuration.

This module provides shared fixtures for all tests, including:
- Configuration with isolated temp directories
- A counting embedder wrapping the deterministic hash backend
- Store, indexer and context engine fixtures
"""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from keydocs.config import Config, ContextConfig, EmbeddingConfig, SearchConfig
from keydocs.context import ContextRelevanceEngine
from keydocs.embeddings import HashEmbeddingBackend
from keydocs.indexer import DocumentationIndexer
from keydocs.models import DocumentationLibrary
from keydocs.store import DocumentationStore

if TYPE_CHECKING:
    from collections.abc import Generator


DIMENSIONS = 64


# -----------------------------------------------------------------------------
# Embedder Fixtures
# -----------------------------------------------------------------------------


class CountingEmbedder(HashEmbeddingBackend):
    """Hash embedder that counts calls, so tests can check embedding work."""

    def __init__(self, dimensions: int = DIMENSIONS) -> None:
        super().__init__(dimensions)
        self._call_count = 0

    def embed(self, text: str) -> list[float]:
        self._call_count += 1
        return super().embed(text)

    @property
    def call_count(self) -> int:
        """Number of times embed was called."""
        return self._call_count


@pytest.fixture
def embedder() -> CountingEmbedder:
    return CountingEmbedder()


# -----------------------------------------------------------------------------
# Configuration Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    The directory is automatically cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_config(temp_dir: Path) -> Config:
    """Configuration with the hash backend and a private cache directory.

    Checkpoints are not debounced so ``flush()`` sees every request.
    """
    return Config(
        embedding=EmbeddingConfig(backend="hash", dimensions=DIMENSIONS),
        search=SearchConfig(),
        context=ContextConfig(cache_dir=temp_dir / "ml_models", checkpoint_delay_seconds=0.0),
    )


# -----------------------------------------------------------------------------
# Component Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def store() -> DocumentationStore:
    return DocumentationStore(dimensions=DIMENSIONS)


@pytest.fixture
def indexer(
    store: DocumentationStore, embedder: CountingEmbedder, temp_config: Config
) -> DocumentationIndexer:
    return DocumentationIndexer(store=store, embedder=embedder, config=temp_config)


@pytest.fixture
def engine(temp_config: Config) -> Generator[ContextRelevanceEngine, None, None]:
    engine = ContextRelevanceEngine(temp_config.context)
    yield engine
    engine.close()


@pytest.fixture
def library_id(store: DocumentationStore) -> str:
    """A library registered under provider "openai"."""
    return store.add_library(
        DocumentationLibrary(name="OpenAI Documentation", provider_id="openai")
    )
