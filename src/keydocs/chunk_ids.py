"""Identifier helpers.

Entity ids are ULIDs with a short type prefix (``LIB``, ``CHS``, ``MSG``,
``GEN``). Chunk ids are structural: ``<library_id>.<chunk_index>``.
Example: LIB01KCPN9VWAZNSKYVHPCWVPXA2C.3

Because the store hands out chunk indexes per library in ingestion order,
the structural form is unique without any extra bookkeeping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ulid import ULID

LIBRARY_PREFIX = "LIB"
SESSION_PREFIX = "CHS"
MESSAGE_PREFIX = "MSG"
GENERATION_PREFIX = "GEN"


def generate_id(prefix: str) -> str:
    """Generate a new prefixed ULID."""
    return f"{prefix}{ULID()}"


@dataclass
class ParsedChunkId:
    """Parsed chunk ID components."""
    library_id: str
    chunk_index: int

    @property
    def chunk_id(self) -> str:
        return f"{self.library_id}.{self.chunk_index}"


def generate_chunk_id(library_id: str, chunk_index: int) -> str:
    """Generate a chunk ID from library ID and index."""
    return f"{library_id}.{chunk_index}"


def parse_chunk_id(chunk_id: str) -> Optional[ParsedChunkId]:
    """Parse a chunk ID into components.

    Returns:
        ParsedChunkId if valid, None if invalid format.
    """
    if "." not in chunk_id:
        return None

    library_id, index_str = chunk_id.rsplit(".", 1)

    # ULIDs never contain dots
    if not library_id or "." in library_id:
        return None

    try:
        chunk_index = int(index_str)
    except ValueError:
        return None

    if chunk_index < 0:
        return None

    return ParsedChunkId(library_id=library_id, chunk_index=chunk_index)


def is_chunk_id(id_str: str) -> bool:
    """Check if a string is a chunk ID (contains .N suffix)."""
    return parse_chunk_id(id_str) is not None


def is_library_id(id_str: str) -> bool:
    """Check if a string is a library ID (LIB prefix, no .N suffix)."""
    return id_str.startswith(LIBRARY_PREFIX) and "." not in id_str
