"""Embedding backends for keydocs.

Every backend turns text into a fixed-length vector. The store and the
indexer only depend on the ``EmbeddingBackend`` contract, so any model can
be swapped in.
"""

from __future__ import annotations

import hashlib
import math
import os
import threading
from abc import ABC, abstractmethod
from typing import Optional

from .config import Config, get_config


class EmbeddingBackend(ABC):
    """Turns text into fixed-length vectors for the store."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Embed a single passage."""
        pass

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed passages in order, one vector per input."""
        return [self.embed(t) for t in texts]

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Vector length produced by this backend."""
        pass

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Name recorded on stored embeddings."""
        pass


class HashEmbeddingBackend(EmbeddingBackend):
    """Deterministic hash-derived vectors.

    Identical texts map to identical unit vectors and unrelated texts are
    close to orthogonal. There is no semantic signal, so this is only
    suitable for tests and offline use.
    """

    def __init__(self, dimensions: int = 384):
        if dimensions <= 0:
            raise ValueError(f"dimensions must be positive, got {dimensions}")
        self._dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        """Expand SHA-256 digests of the text into a normalized vector."""
        values: list[float] = []
        block = 0
        while len(values) < self._dimensions:
            digest = hashlib.sha256(f"{block}:{text}".encode("utf-8")).digest()
            values.extend(b / 127.5 - 1.0 for b in digest)
            block += 1
        values = values[: self._dimensions]

        norm = math.sqrt(sum(v * v for v in values))
        if norm > 0.0:
            values = [v / norm for v in values]
        return values

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def model_name(self) -> str:
        return "hash-embedding"


class SentenceTransformersBackend(EmbeddingBackend):
    """Local sentence-transformers model."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str = None):
        self._model_name = model_name
        self.device = device
        self._model = None

    @property
    def model(self):
        """Model is loaded on first use."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            # CPU by default; CUDA builds are frequently mismatched on desktops
            device = self.device or "cpu"
            self._model = SentenceTransformer(self._model_name, device=device)
        return self._model

    def embed(self, text: str) -> list[float]:
        embedding = self.model.encode(text, convert_to_numpy=True)
        return embedding.tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        embeddings = self.model.encode(texts, convert_to_numpy=True)
        return [e.tolist() for e in embeddings]

    @property
    def dimensions(self) -> int:
        return self.model.get_sentence_embedding_dimension()

    @property
    def model_name(self) -> str:
        return self._model_name


class OpenAIBackend(EmbeddingBackend):
    """Embedding backend using the OpenAI API."""

    KNOWN_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
    ):
        self._model_name = model_name
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        self._client = None

    @property
    def client(self):
        """Lazy load the OpenAI client."""
        if self._client is None:
            if not self.api_key:
                raise ValueError(
                    "OpenAI API key not provided. Set via config or OPENAI_API_KEY environment variable."
                )
            try:
                from openai import OpenAI
            except ImportError:
                raise ImportError(
                    "OpenAI backend requires the 'openai' package. "
                    "Install with: pip install keydocs[openai]"
                )
            self._client = OpenAI(api_key=self.api_key)
        return self._client

    def embed(self, text: str) -> list[float]:
        response = self.client.embeddings.create(
            model=self._model_name,
            input=text,
        )
        return response.data[0].embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        response = self.client.embeddings.create(
            model=self._model_name,
            input=texts,
        )
        # Responses are not guaranteed to be in input order
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [d.embedding for d in sorted_data]

    @property
    def dimensions(self) -> int:
        return self.KNOWN_DIMENSIONS.get(self._model_name, 1536)

    @property
    def model_name(self) -> str:
        return self._model_name


def get_embedder(config: Optional[Config] = None) -> EmbeddingBackend:
    """Build the backend named by ``config.embedding.backend``."""
    if config is None:
        config = get_config()

    embedding_config = config.embedding

    if embedding_config.backend == "hash":
        return HashEmbeddingBackend(dimensions=embedding_config.dimensions)
    elif embedding_config.backend == "sentence-transformers":
        return SentenceTransformersBackend(model_name=embedding_config.model)
    elif embedding_config.backend == "openai":
        return OpenAIBackend(
            model_name=embedding_config.model,
            api_key=embedding_config.api_key,
        )
    else:
        raise ValueError(f"Unknown embedding backend: {embedding_config.backend}")


# Process-wide default backend
_embedder: Optional[EmbeddingBackend] = None
_embedder_lock = threading.Lock()


def get_default_embedder() -> EmbeddingBackend:
    """Return the shared embedder, creating it from the global config."""
    global _embedder
    with _embedder_lock:
        if _embedder is None:
            _embedder = get_embedder()
        return _embedder


def embed_text(text: str, config: Optional[Config] = None) -> list[float]:
    """Embed text with the process-wide default backend."""
    global _embedder
    with _embedder_lock:
        if _embedder is None or config is not None:
            _embedder = get_embedder(config)
        embedder = _embedder
    return embedder.embed(text)


def reload_embedder(config: Optional[Config] = None) -> None:
    """Drop the cached default backend and build a fresh one."""
    global _embedder
    with _embedder_lock:
        _embedder = get_embedder(config)
