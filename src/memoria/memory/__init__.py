"""Entry store, hybrid search and context assembly."""

from .context import ContextAssembler
from .embeddings import EmbeddingService, refresh_dirty_embeddings
from .models import Entry, Exchange, Relation, SearchHit
from .search import MemorySearcher
from .settings import InjectionLimits, load_limits, save_limits
from .store import EntryStore

__all__ = [
    "ContextAssembler",
    "EmbeddingService",
    "Entry",
    "EntryStore",
    "Exchange",
    "InjectionLimits",
    "MemorySearcher",
    "Relation",
    "SearchHit",
    "load_limits",
    "refresh_dirty_embeddings",
    "save_limits",
]
