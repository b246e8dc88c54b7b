"""Exception types raised by keydocs."""

from __future__ import annotations


class KeydocsError(Exception):
    """Base class for all keydocs errors."""


class NotFoundError(KeydocsError, KeyError):
    """A referenced library, chunk or session does not exist."""

    def __init__(self, kind: str, entity_id: str):
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} not found: {entity_id}")

    def __str__(self) -> str:
        # KeyError.__str__ would quote the message
        return f"{self.kind} not found: {self.entity_id}"


class InvalidInputError(KeydocsError, ValueError):
    """Malformed input: empty or mis-sized embeddings, bad filters, bad formats."""


class PersistenceError(KeydocsError):
    """A checkpoint could not be read or written.

    Only raised inside the checkpoint machinery, which logs and drops it.
    """
