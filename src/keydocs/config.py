"""Configuration management for keydocs."""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import yaml


# Default paths
DEFAULT_HOME_DIR = Path.home() / ".keydocs"
DEFAULT_CONFIG_PATH = DEFAULT_HOME_DIR / "config.yaml"
DEFAULT_CACHE_DIR = DEFAULT_HOME_DIR / "ml_models"


def _resolve_env(value: Optional[str]) -> Optional[str]:
    """Resolve a ``${VAR}`` reference to the environment value."""
    if value and value.startswith("${") and value.endswith("}"):
        return os.environ.get(value[2:-1])
    return value


@dataclass
class EmbeddingConfig:
    """Embedding model configuration."""
    backend: str = "hash"
    model: str = "all-MiniLM-L6-v2"
    api_key: Optional[str] = None
    dimensions: Optional[int] = None  # Auto-detected if not specified

    def __post_init__(self):
        self.api_key = _resolve_env(self.api_key)

        if self.dimensions is None:
            self.dimensions = self._default_dimensions()

    def _default_dimensions(self) -> int:
        """Return default dimensions for known models."""
        known_dimensions = {
            # sentence-transformers
            "all-MiniLM-L6-v2": 384,
            "all-mpnet-base-v2": 768,
            "paraphrase-MiniLM-L6-v2": 384,
            # OpenAI
            "text-embedding-3-small": 1536,
            "text-embedding-3-large": 3072,
            "text-embedding-ada-002": 1536,
        }
        return known_dimensions.get(self.model, 384)


@dataclass
class SearchConfig:
    """Vector search defaults."""
    min_similarity: float = 0.7
    max_results: int = 10
    recency_half_life_hours: float = 168.0
    recency_max_bonus: float = 0.1
    # Query-text searches run looser than raw vector searches
    ingest_search_min_similarity: float = 0.6


@dataclass
class ContextConfig:
    """Context relevance engine configuration.

    The weights and decay windows were chosen empirically; they are kept
    as defaults but can be tuned per installation.
    """
    cache_dir: Path = DEFAULT_CACHE_DIR
    max_suggestions: int = 5
    similarity_threshold: float = 0.3
    learning_rate: float = 0.1

    # Confidence weights
    frequency_weight: float = 0.3
    recency_weight: float = 0.2
    success_weight: float = 0.2
    context_weight: float = 0.3

    recency_decay_hours: float = 168.0
    usage_decay_hours: float = 24.0

    history_window: int = 10
    max_patterns_per_key: int = 100
    max_preferred_contexts: int = 10
    preferred_similarity_cutoff: float = 0.8

    checkpoint_delay_seconds: float = 1.0

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir).expanduser()


@dataclass
class Config:
    """Main configuration."""
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    chunking: dict = field(default_factory=dict)  # ChunkingConfig keyword arguments

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Read settings from YAML, falling back to defaults for missing keys."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        if not config_path.exists():
            return cls()

        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        embedding_data = data.get("embedding", {})
        embedding = EmbeddingConfig(
            backend=embedding_data.get("backend", "hash"),
            model=embedding_data.get("model", "all-MiniLM-L6-v2"),
            api_key=embedding_data.get("api_key"),
            dimensions=embedding_data.get("dimensions"),
        )

        search_defaults = SearchConfig()
        search_data = data.get("search", {})
        search = SearchConfig(
            min_similarity=search_data.get("min_similarity", search_defaults.min_similarity),
            max_results=search_data.get("max_results", search_defaults.max_results),
            recency_half_life_hours=search_data.get(
                "recency_half_life_hours", search_defaults.recency_half_life_hours
            ),
            recency_max_bonus=search_data.get(
                "recency_max_bonus", search_defaults.recency_max_bonus
            ),
            ingest_search_min_similarity=search_data.get(
                "ingest_search_min_similarity",
                search_defaults.ingest_search_min_similarity,
            ),
        )

        # Unknown keys are ignored so older files keep loading
        context_data = data.get("context", {})
        known = set(ContextConfig.__dataclass_fields__)
        context = ContextConfig(**{k: v for k, v in context_data.items() if k in known})

        return cls(
            embedding=embedding,
            search=search,
            context=context,
            chunking=data.get("chunking", {}),
        )

    def save(self, config_path: Optional[Path] = None) -> None:
        """Write settings back to YAML."""
        if config_path is None:
            config_path = DEFAULT_CONFIG_PATH

        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "embedding": {
                "backend": self.embedding.backend,
                "model": self.embedding.model,
            },
            "search": {
                "min_similarity": self.search.min_similarity,
                "max_results": self.search.max_results,
                "recency_half_life_hours": self.search.recency_half_life_hours,
                "recency_max_bonus": self.search.recency_max_bonus,
                "ingest_search_min_similarity": self.search.ingest_search_min_similarity,
            },
            "context": {**asdict(self.context), "cache_dir": str(self.context.cache_dir)},
        }

        if self.embedding.api_key:
            data["embedding"]["api_key"] = self.embedding.api_key
        if self.embedding.dimensions:
            data["embedding"]["dimensions"] = self.embedding.dimensions
        if self.chunking:
            data["chunking"] = self.chunking

        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)


# Loaded on first get_config()
_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = Config.load()
    return _config


def reload_config() -> Config:
    """Re-read the configuration file and replace the cached instance."""
    global _config
    _config = Config.load()
    return _config
