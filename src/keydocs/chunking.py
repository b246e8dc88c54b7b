"""Documentation segmentation for keydocs.

Splits scraped or manually entered documentation into segments ready for
embedding. Strategies:
- headers: Split on markdown headers, tracking the header hierarchy as the
  segment's section path
- delimiter: Split on a regex pattern (horizontal rules by default)
- fixed: Fixed-size segments with overlap
- single / none: Keep the whole text as one segment
- auto: Pick one of the above from the text's structure

Each segment also gets heuristic metadata: word count, content type,
importance and keywords.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional

from .models import ChunkMetadata, ContentType

logger = logging.getLogger(__name__)

HEADER_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9_\-]*[A-Za-z0-9]")

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all", "can", "had",
    "her", "was", "one", "our", "out", "day", "get", "has", "him", "his",
    "how", "its", "may", "new", "now", "old", "see", "two", "way", "who",
    "did", "she", "use", "your", "from", "they", "know", "want", "been",
    "good", "much", "some", "time", "very", "when", "come", "here", "just",
    "like", "long", "make", "many", "over", "such", "take", "than", "them",
    "well", "were", "this", "that", "with", "will", "into", "each", "also",
})

MAX_KEYWORDS = 10
MAX_SPLIT_DEPTH = 3
DEFAULT_SECTION = "General"
DEFAULT_TITLE = "Documentation Section"

# Checked in order; the first matching rule wins
CONTENT_TYPE_RULES: list[tuple[tuple[str, ...], ContentType]] = [
    (("example", "```"), ContentType.EXAMPLE),
    (("tutorial", "getting started"), ContentType.TUTORIAL),
    (("config", "setup"), ContentType.CONFIGURATION),
    (("error", "troubleshoot"), ContentType.TROUBLESHOOTING),
    (("api reference", "endpoint"), ContentType.REFERENCE),
    (("migrat", "upgrade guide"), ContentType.MIGRATION),
    (("changelog", "release notes"), ContentType.CHANGELOG),
]


@dataclass
class ChunkingConfig:
    """Configuration for documentation segmentation."""

    strategy: str = "auto"  # "auto", "headers", "delimiter", "fixed", "single", "none"

    # Size constraints (in tokens, estimated as chars/4)
    min_chunk_size: int = 50
    max_chunk_size: int = 800

    header_split_levels: list[int] = field(default_factory=lambda: [1, 2, 3])

    delimiter_pattern: Optional[str] = None  # Regex, defaults to horizontal rules

    fixed_chunk_size: int = 500
    fixed_overlap: int = 50

    complete_sentences: bool = True

    def __post_init__(self):
        if self.min_chunk_size >= self.max_chunk_size:
            raise ValueError(
                f"min_chunk_size ({self.min_chunk_size}) must be less than "
                f"max_chunk_size ({self.max_chunk_size})"
            )


@dataclass
class Segment:
    """One segment of a document, before it is stored as a chunk."""

    index: int
    content: str
    title: Optional[str]
    section_path: list[str]
    start_line: int
    end_line: int
    token_count: int
    is_continuation: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def word_count(self) -> int:
        return count_words(self.content)

    def to_metadata(self, source_url: Optional[str] = None) -> ChunkMetadata:
        """Derive chunk metadata from the segment text."""
        return ChunkMetadata(
            word_count=self.word_count,
            content_type=classify_content_type(self.content),
            importance_score=score_importance(self.content),
            keywords=extract_keywords(self.content),
            source_url=source_url,
            line_numbers=(self.start_line, self.end_line),
        )


@dataclass
class SegmentationResult:
    """Result of segmenting a document."""

    total_tokens: int
    strategy: str
    strategy_reason: str
    segments: list[Segment]
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> dict:
        """Return summary statistics."""
        if not self.segments:
            return {"total_segments": 0, "avg_tokens": 0, "min_tokens": 0, "max_tokens": 0}
        tokens = [s.token_count for s in self.segments]
        return {
            "total_segments": len(self.segments),
            "avg_tokens": sum(tokens) // len(tokens),
            "min_tokens": min(tokens),
            "max_tokens": max(tokens),
        }


# --- Text heuristics ---


def estimate_tokens(text: str) -> int:
    """Estimate token count. Approximation: chars / 4."""
    return len(text) // 4


def count_words(text: str) -> int:
    return len(text.split())


def classify_content_type(content: str) -> ContentType:
    """Guess the content type of a piece of documentation from keywords."""
    lowered = content.lower()
    for needles, content_type in CONTENT_TYPE_RULES:
        if any(needle in lowered for needle in needles):
            return content_type
    return ContentType.OVERVIEW


def score_importance(content: str) -> float:
    """Heuristic importance in [0, 1]."""
    lowered = content.lower()
    if "important" in lowered or "note" in lowered:
        return 0.9
    if "example" in lowered or "```" in content:
        return 0.8
    if count_words(content) > 100:
        return 0.7
    return 0.5


def extract_keywords(content: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """First distinct non-stop-words longer than three characters."""
    keywords: list[str] = []
    seen: set[str] = set()
    for match in WORD_RE.finditer(content):
        word = match.group(0).lower()
        if len(word) <= 3 or word in STOP_WORDS or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def _clean_header(text: str) -> str:
    cleaned = text.strip()
    cleaned = re.sub(r"\*\*([^*]+)\*\*", r"\1", cleaned)  # **bold**
    cleaned = re.sub(r"\*([^*]+)\*", r"\1", cleaned)  # *italic*
    cleaned = re.sub(r"`([^`]+)`", r"\1", cleaned)  # `code`
    cleaned = re.sub(r"\s*\{#[^}]+\}\s*$", "", cleaned)  # {#anchor}
    return cleaned.strip()


def derive_section_path(content: str) -> list[str]:
    """Section path for text that did not come out of a header split.

    Uses the first markdown header in the opening lines, then the first
    words of the first non-empty line, then ``["General"]``.
    """
    for line in content.splitlines()[:10]:
        match = HEADER_RE.match(line)
        if match:
            title = _clean_header(match.group(2))
            if title:
                return [title]

    for line in content.splitlines():
        words = line.split()
        if words:
            return [" ".join(words[:5])]

    return [DEFAULT_SECTION]


def derive_title(content: str, section_path: list[str]) -> str:
    """Pick a display title for a segment."""
    for line in content.splitlines()[:5]:
        trimmed = line.strip()
        match = HEADER_RE.match(trimmed)
        if match:
            title = _clean_header(match.group(2))
            if title and len(title) < 100:
                return title
            continue

        # Short lines without terminal punctuation read like titles
        if (
            5 < len(trimmed) < 80
            and not trimmed.endswith((".", "!", "?"))
            and "```" not in trimmed
        ):
            return trimmed

    if section_path:
        return section_path[-1]
    return DEFAULT_TITLE


# --- Strategies ---


def detect_strategy(content: str, config: ChunkingConfig) -> tuple[str, str]:
    """Detect the best chunking strategy for content.

    Returns:
        Tuple of (strategy, reason)
    """
    tokens = estimate_tokens(content)

    if tokens < config.min_chunk_size * 2:
        return "single", f"document small enough for single segment ({tokens} tokens)"

    headers = [line for line in content.splitlines() if HEADER_RE.match(line)]
    if len(headers) >= 2:
        return "headers", f"found {len(headers)} markdown headers"

    for pattern, name in [(r"^---+$", "horizontal rules"), (r"^\*\*\*+$", "asterisk rules")]:
        matches = len(re.findall(pattern, content, re.MULTILINE))
        if matches >= 2:
            return "delimiter", f"found {matches} {name}"

    return "fixed", "no clear structure detected"


def split_by_headers(content: str, config: ChunkingConfig) -> list[Segment]:
    """Split on markdown headers; the header stack becomes the section path."""
    lines = content.split("\n")
    segments: list[Segment] = []

    header_stack: list[tuple[int, str]] = []  # [(level, title), ...]
    current_lines: list[str] = []
    current_start = 0
    current_title: Optional[str] = None
    current_path: list[str] = []

    def flush(end_line: int) -> None:
        text = "\n".join(current_lines)
        if not text.strip():
            return
        segments.append(
            Segment(
                index=len(segments),
                content=text,
                title=current_title,
                section_path=list(current_path),
                start_line=current_start,
                end_line=end_line,
                token_count=estimate_tokens(text),
            )
        )

    for i, line in enumerate(lines):
        match = HEADER_RE.match(line)
        if not match:
            current_lines.append(line)
            continue

        level = len(match.group(1))
        title = _clean_header(match.group(2))

        # Pop headers at the same or a deeper level
        while header_stack and header_stack[-1][0] >= level:
            header_stack.pop()
        header_stack.append((level, title))

        if level in config.header_split_levels:
            flush(i - 1)
            current_lines = [line]
            current_start = i
            current_title = title
        else:
            current_lines.append(line)
            if current_title is None:
                current_title = title
        current_path = [h[1] for h in header_stack]

    flush(len(lines) - 1)
    return segments


def split_by_delimiter(content: str, config: ChunkingConfig) -> list[Segment]:
    """Split on a regex pattern."""
    pattern = re.compile(config.delimiter_pattern or r"^---+$", re.MULTILINE)

    segments: list[Segment] = []
    current_line = 0

    for part in pattern.split(content):
        part_lines = part.count("\n") + 1
        stripped = part.strip()
        if stripped:
            segments.append(
                Segment(
                    index=len(segments),
                    content=stripped,
                    title=None,
                    section_path=derive_section_path(stripped),
                    start_line=current_line,
                    end_line=current_line + part_lines - 1,
                    token_count=estimate_tokens(stripped),
                )
            )
        current_line += part_lines

    return segments


def _split_at_sentence(lines: list[str]) -> tuple[list[str], list[str]]:
    """Split lines at the last sentence boundary."""
    text = "\n".join(lines)
    enders = list(re.finditer(r"[.!?]\s", text))
    if not enders:
        return lines, []

    boundary = enders[-1].end()
    before, after = text[:boundary], text[boundary:]
    return before.split("\n"), after.split("\n") if after.strip() else []


def split_fixed_size(content: str, config: ChunkingConfig) -> list[Segment]:
    """Split into fixed-size segments with line overlap."""
    lines = content.split("\n")
    segments: list[Segment] = []

    chars_per_segment = config.fixed_chunk_size * 4
    chars_overlap = config.fixed_overlap * 4

    current_lines: list[str] = []
    current_chars = 0
    current_start = 0
    overlap_lines: list[str] = []

    def emit(body: list[str], end_line: int) -> None:
        text = "\n".join(overlap_lines + body)
        if not text.strip():
            return
        segments.append(
            Segment(
                index=len(segments),
                content=text,
                title=None,
                section_path=derive_section_path(text),
                start_line=current_start,
                end_line=end_line,
                token_count=estimate_tokens(text),
                is_continuation=bool(segments),
            )
        )

    for i, line in enumerate(lines):
        line_chars = len(line) + 1

        if current_chars + line_chars > chars_per_segment and current_lines:
            if config.complete_sentences:
                body, remainder = _split_at_sentence(current_lines)
            else:
                body, remainder = current_lines, []
            emit(body, i - 1)

            overlap_lines = []
            overlap_chars = 0
            for previous in reversed(body):
                if overlap_chars + len(previous) > chars_overlap:
                    break
                overlap_lines.insert(0, previous)
                overlap_chars += len(previous)

            current_lines = remainder + [line]
            current_chars = sum(len(part) + 1 for part in current_lines)
            current_start = max(0, i - len(remainder))
        else:
            current_lines.append(line)
            current_chars += line_chars

    if current_lines:
        emit(current_lines, len(lines) - 1)

    return segments


def _split_by_characters(content: str, config: ChunkingConfig) -> list[Segment]:
    """Character windows for text with no usable line breaks."""
    size = config.fixed_chunk_size * 4
    overlap = min(config.fixed_overlap * 4, size // 2)
    segments: list[Segment] = []

    start = 0
    while start < len(content):
        end = min(start + size, len(content))
        if config.complete_sentences and end < len(content):
            boundary = max(content.rfind(p, max(start, end - 200), end) for p in (". ", "! ", "? "))
            if boundary > start:
                end = boundary + 1

        text = content[start:end].strip()
        if text:
            segments.append(
                Segment(
                    index=len(segments),
                    content=text,
                    title=None,
                    section_path=derive_section_path(text),
                    start_line=0,
                    end_line=0,
                    token_count=estimate_tokens(text),
                    is_continuation=bool(segments),
                )
            )
        start = max(end - overlap, start + 1) if end < len(content) else end

    return segments


def _whole_document(content: str) -> list[Segment]:
    if not content.strip():
        return []
    section_path = derive_section_path(content)
    return [
        Segment(
            index=0,
            content=content,
            title=derive_title(content, section_path),
            section_path=section_path,
            start_line=0,
            end_line=content.count("\n"),
            token_count=estimate_tokens(content),
        )
    ]


# --- Post-processing ---


def _split_oversized(
    segments: list[Segment], config: ChunkingConfig, depth: int = 0
) -> list[Segment]:
    """Sub-split segments above max_chunk_size, keeping their section path."""
    result: list[Segment] = []

    for segment in segments:
        if segment.token_count <= config.max_chunk_size:
            result.append(segment)
            continue

        if depth >= MAX_SPLIT_DEPTH:
            segment.warnings.append("max_depth_exceeded")
            logger.warning(
                "Max split depth (%d) exceeded for segment with %d tokens",
                MAX_SPLIT_DEPTH,
                segment.token_count,
            )
            result.append(segment)
            continue

        sub_config = ChunkingConfig(
            strategy="fixed",
            min_chunk_size=config.min_chunk_size,
            max_chunk_size=config.max_chunk_size,
            fixed_chunk_size=max(1, config.max_chunk_size - 50),
            fixed_overlap=config.fixed_overlap,
            complete_sentences=config.complete_sentences,
        )
        parts = split_fixed_size(segment.content, sub_config)
        if len(parts) == 1 and parts[0].token_count > config.max_chunk_size:
            parts = _split_by_characters(segment.content, sub_config)
        parts = _split_oversized(parts, config, depth + 1)

        for n, part in enumerate(parts):
            part.section_path = list(segment.section_path)
            part.title = f"{segment.title} (part {n + 1})" if segment.title else None
            part.is_continuation = n > 0 or segment.is_continuation
            part.start_line += segment.start_line
            part.end_line += segment.start_line
            result.append(part)

    return result


def _merge_undersized(segments: list[Segment], config: ChunkingConfig) -> list[Segment]:
    """Merge each undersized segment into the one after it.

    Section boundaries are not respected: the merged segment takes the
    section path of the later segment and the title of the earlier one.
    """
    if len(segments) <= 1:
        return segments

    result: list[Segment] = []
    i = 0
    while i < len(segments):
        segment = segments[i]
        if segment.token_count < config.min_chunk_size and i + 1 < len(segments):
            following = segments[i + 1]
            combined = segment.token_count + following.token_count
            if combined <= config.max_chunk_size:
                result.append(
                    Segment(
                        index=0,
                        content=segment.content + "\n\n" + following.content,
                        title=segment.title or following.title,
                        section_path=following.section_path or segment.section_path,
                        start_line=segment.start_line,
                        end_line=following.end_line,
                        token_count=combined,
                    )
                )
                i += 2
                continue
        result.append(segment)
        i += 1

    return result


def segment_document(
    content: str,
    config: Optional[ChunkingConfig] = None,
) -> SegmentationResult:
    """Segment documentation text according to configuration.

    Args:
        content: Raw documentation text (markdown or plain).
        config: Chunking configuration (defaults applied if None).

    Returns:
        SegmentationResult with ordered segments and their metadata.
    """
    if config is None:
        config = ChunkingConfig()

    strategy = config.strategy
    strategy_reason = "user specified"
    if strategy == "auto":
        strategy, strategy_reason = detect_strategy(content, config)

    if strategy in ("none", "single"):
        segments = _whole_document(content)
    elif strategy == "headers":
        segments = split_by_headers(content, config)
    elif strategy == "delimiter":
        segments = split_by_delimiter(content, config)
    elif strategy == "fixed":
        segments = split_fixed_size(content, config)
    else:
        raise ValueError(f"Unknown strategy: {strategy}")

    if strategy not in ("none", "single"):
        segments = _split_oversized(segments, config)
        segments = _merge_undersized(segments, config)

    for i, segment in enumerate(segments):
        segment.index = i
        if not segment.section_path:
            segment.section_path = derive_section_path(segment.content)
        if not segment.title:
            segment.title = derive_title(segment.content, segment.section_path)
        if segment.token_count > config.max_chunk_size:
            segment.warnings.append("oversized")

    oversized = sum(1 for s in segments if "oversized" in s.warnings)
    warnings = [f"{oversized} segment(s) exceed max size"] if oversized else []

    return SegmentationResult(
        total_tokens=estimate_tokens(content),
        strategy=strategy,
        strategy_reason=strategy_reason,
        segments=segments,
        warnings=warnings,
    )
