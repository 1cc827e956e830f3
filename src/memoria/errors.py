"""Error taxonomy for the memory pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .memory.models import Relation


class MemoriaError(Exception):
    """Base class for every error raised by memoria."""


class NotFoundError(MemoriaError):
    """Raised when an entry key does not exist."""

    def __init__(self, key: str) -> None:
        super().__init__(f'Entry "{key}" not found')
        self.key = key


class HasRelationsError(MemoriaError):
    """Raised when deleting an entry that is still linked to others."""

    def __init__(self, key: str, relations: list[Relation]) -> None:
        super().__init__(f'Entry "{key}" still has {len(relations)} relation(s)')
        self.key = key
        self.relations = relations


class EmbeddingUnavailableError(MemoriaError):
    """Raised when the embedding provider failed after all retries."""


class AgentTimeoutError(MemoriaError):
    """Raised when an agentic run exceeds its time budget."""


class AgentParseError(MemoriaError):
    """Raised when an agentic run produced no usable structured output."""


class GateError(MemoriaError):
    """Raised when the gate could not evaluate an exchange."""
