"""Embedding-aware hybrid search over the entry store."""

import logging

from ..errors import EmbeddingUnavailableError
from .embeddings import EmbeddingService
from .models import SearchHit
from .store import EntryStore

logger = logging.getLogger(__name__)


class MemorySearcher:
    """Embeds the query, then runs the store's hybrid search.

    When no embedder is configured or the provider fails, search degrades to
    keyword-only ranking instead of raising.
    """

    def __init__(self, store: EntryStore, embedder: EmbeddingService | None = None) -> None:
        self.store = store
        self.embedder = embedder

    async def embed_query(self, query: str) -> list[float] | None:
        """Embed a query, returning None when embeddings are unavailable."""
        if self.embedder is None:
            return None
        try:
            return await self.embedder.generate(query)
        except EmbeddingUnavailableError as e:
            logger.warning("Query embedding unavailable, using keyword search: %s", e)
            return None

    async def search(
        self,
        query: str,
        limit: int = 10,
        category: str | None = None,
    ) -> list[SearchHit]:
        """Hybrid search with graceful keyword fallback."""
        embedding = await self.embed_query(query)
        return self.store.hybrid_search(query, embedding, limit=limit, category=category)
