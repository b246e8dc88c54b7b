"""Entity types for the documentation library.

Statuses, content types and roles are closed enums; every branch that
interprets them should handle each member explicitly.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from .errors import InvalidInputError


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class DocumentationStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    INDEXED = "indexed"
    FAILED = "failed"
    OUTDATED = "outdated"


class ContentType(str, Enum):
    OVERVIEW = "overview"
    TUTORIAL = "tutorial"
    REFERENCE = "reference"
    EXAMPLE = "example"
    CONFIGURATION = "configuration"
    TROUBLESHOOTING = "troubleshooting"
    MIGRATION = "migration"
    CHANGELOG = "changelog"

    @classmethod
    def parse(cls, value: "str | ContentType | None") -> "ContentType":
        """Parse a content type name, falling back to OVERVIEW."""
        if isinstance(value, ContentType):
            return value
        if not value:
            return cls.OVERVIEW
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.OVERVIEW


class ChatSessionStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class GenerationStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    USER_MODIFIED = "user_modified"


class CodeFileType(str, Enum):
    CONFIGURATION = "configuration"
    COMPONENT = "component"
    SERVICE = "service"
    UTILITY = "utility"
    TYPE = "type"
    TEST = "test"
    DOCUMENTATION = "documentation"


# --- Documentation ---


@dataclass
class DocumentationLibrary:
    """A provider's documentation set.

    ``id``, ``created_at`` and ``updated_at`` are assigned by the store.
    """
    name: str
    description: str = ""
    provider_id: Optional[str] = None
    url: str = ""
    version: str = "latest"
    language: str = "en"
    tags: set[str] = field(default_factory=set)
    content_hash: str = ""
    chunk_count: int = 0
    status: DocumentationStatus = DocumentationStatus.PENDING
    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.tags = set(self.tags or ())


@dataclass
class ChunkMetadata:
    """Descriptive metadata attached to a chunk."""
    word_count: int = 0
    content_type: ContentType = ContentType.OVERVIEW
    importance_score: float = 0.5
    keywords: list[str] = field(default_factory=list)
    related_chunks: list[str] = field(default_factory=list)  # Soft references
    source_url: Optional[str] = None
    line_numbers: Optional[tuple[int, int]] = None

    def __post_init__(self):
        if not (0.0 <= self.importance_score <= 1.0):
            raise InvalidInputError(
                f"importance_score must be between 0.0 and 1.0, got {self.importance_score}"
            )
        if self.word_count < 0:
            raise InvalidInputError(f"word_count must be non-negative, got {self.word_count}")
        self.content_type = ContentType.parse(self.content_type)
        # Keywords behave as an ordered set
        self.keywords = list(dict.fromkeys(self.keywords))


@dataclass
class DocumentationChunk:
    """A unit of documentation text; the atom of retrieval."""
    library_id: str
    title: str
    content: str
    section_path: list[str] = field(default_factory=list)
    metadata: ChunkMetadata = field(default_factory=ChunkMetadata)
    chunk_index: int = 0  # Assigned by the store in ingestion order
    id: str = ""
    created_at: Optional[datetime] = None


@dataclass
class DocumentationEmbedding:
    """The vector for one chunk."""
    chunk_id: str
    vector: list[float]
    model_name: str
    embedding_version: str = "1.0"
    created_at: Optional[datetime] = None

    @property
    def dimensions(self) -> int:
        return len(self.vector)


@dataclass
class SearchResult:
    """A chunk ranked against a query embedding."""
    chunk_id: str
    library_id: str
    title: str
    content: str
    section_path: list[str]
    similarity_score: float
    relevance_score: float
    content_type: ContentType
    metadata: Optional[ChunkMetadata] = None
    url: Optional[str] = None

    def __post_init__(self):
        if not (0.0 <= self.similarity_score <= 1.0):
            raise ValueError(
                f"similarity_score must be between 0.0 and 1.0, got {self.similarity_score}"
            )


# --- Chat ---


@dataclass
class ChatSession:
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    context_libraries: list[str] = field(default_factory=list)
    message_count: int = 0
    status: ChatSessionStatus = ChatSessionStatus.ACTIVE
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CodeBlock:
    filename: str
    content: str
    description: str = ""
    file_type: CodeFileType = CodeFileType.SERVICE


@dataclass
class GeneratedCode:
    language: str
    framework: str
    code_blocks: list[CodeBlock] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    configuration: dict[str, str] = field(default_factory=dict)
    test_cases: Optional[str] = None
    documentation: Optional[str] = None


@dataclass
class MessageMetadata:
    token_count: Optional[int] = None
    processing_time_ms: Optional[int] = None
    context_relevance: Optional[float] = None
    generated_code: Optional[GeneratedCode] = None
    search_queries: list[str] = field(default_factory=list)
    confidence_score: Optional[float] = None


@dataclass
class ChatMessage:
    """One message in a session; ``id`` and ``created_at`` are assigned on append."""
    session_id: str
    role: MessageRole
    content: str
    context_chunks: list[str] = field(default_factory=list)
    metadata: MessageMetadata = field(default_factory=MessageMetadata)
    id: str = ""
    created_at: Optional[datetime] = None


# --- Integration generation history ---


@dataclass
class UserFeedback:
    rating: int  # 1-5 stars
    comments: Optional[str] = None
    improvement_suggestions: list[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not (1 <= self.rating <= 5):
            raise InvalidInputError(f"rating must be between 1 and 5, got {self.rating}")


@dataclass
class GenerationMetadata:
    llm_model: str
    template_used: Optional[str] = None
    context_tokens: int = 0
    generation_tokens: int = 0
    quality_score: Optional[float] = None
    user_feedback: Optional[UserFeedback] = None


@dataclass
class IntegrationGeneration:
    """Audit record of one code generation event."""
    session_id: str
    provider_name: str
    framework: str
    language: str
    user_requirements: str
    generated_code: GeneratedCode
    generation_metadata: GenerationMetadata
    context_chunks: list[str] = field(default_factory=list)
    status: GenerationStatus = GenerationStatus.SUCCESS
    id: str = ""
    created_at: Optional[datetime] = None


def to_jsonable(obj: Any) -> Any:
    """Convert dataclasses, enums, sets and datetimes into JSON-friendly values."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Path):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(to_jsonable(v) for v in obj)
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}
    return obj
