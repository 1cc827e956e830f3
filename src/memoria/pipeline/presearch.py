"""Synchronous best-effort retrieval run before the main reply."""

import asyncio
import logging
import time

from ..agent.llm_client import LLMClient
from ..agent.prompts import REFORMULATE_SYSTEM_PROMPT, build_reformulate_prompt
from ..memory.formatting import truncate
from ..memory.models import SearchHit
from ..memory.search import MemorySearcher

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH = 5
MAX_QUERIES = 4
CONTENT_PREVIEW = 200
RELATED_PREVIEW = 100

HEADER = """# Pre-Search Results

Additional memory entries found via automatic search (vector/text similarity). These may not all be relevant, use your judgment. To investigate further, use the search_memory tool."""


class PreSearch:
    """Embed the raw message, hybrid-search, reformulate when results are weak.

    Reformulation runs only when the first search is empty or its best score
    is under min_score, and only when the embedding provider answered.
    """

    def __init__(
        self,
        searcher: MemorySearcher,
        reformulator: LLMClient | None = None,
        limit: int = 8,
        candidates: int = 15,
        min_score: float = 0.55,
        reformulations: int = 3,
    ) -> None:
        self.searcher = searcher
        self.reformulator = reformulator
        self.limit = limit
        self.candidates = candidates
        self.min_score = min_score
        self.reformulations = reformulations

    async def run(self, text: str, document: str | None = None) -> str | None:
        """Find entries relevant to text that are not in the current document.

        Args:
            text: Raw user message.
            document: Current context document, for deduplication.

        Returns:
            Markdown block, or None when nothing new was found or on any error.
        """
        if not text or len(text.strip()) < MIN_MESSAGE_LENGTH:
            return None
        started = time.monotonic()
        try:
            return await self._run(text, document or "", started)
        except Exception:
            logger.exception("Pre-search failed")
            return None

    async def _run(self, text: str, document: str, started: float) -> str | None:
        store = self.searcher.store
        embedding = await self.searcher.embed_query(text)
        hits = store.hybrid_search(text, embedding, limit=self.candidates)
        best = max((h.score for h in hits), default=0.0)
        logger.debug("Pre-search basic: %d found, best %.3f", len(hits), best)

        if embedding is not None and (not hits or best < self.min_score):
            queries = await self._reformulate(text)
            if queries:
                extra = await asyncio.gather(*(self._search(q) for q in queries))
                seen = {h.entry.key for h in hits}
                for results in extra:
                    for hit in results:
                        if hit.entry.key not in seen:
                            seen.add(hit.entry.key)
                            hits.append(hit)
                logger.debug("Pre-search after reformulation: %d total", len(hits))

        fresh = [h for h in hits if f"**{h.entry.key}**" not in document]
        if not fresh:
            logger.debug("Pre-search found nothing new in %.0fms", (time.monotonic() - started) * 1000)
            return None
        fresh.sort(key=lambda h: h.score, reverse=True)
        fresh = fresh[: self.limit]

        lines = [self._format(hit) for hit in fresh]
        logger.info(
            "Pre-search: %d entries in %.0fms", len(fresh), (time.monotonic() - started) * 1000
        )
        return f"{HEADER}\n\n" + "\n".join(lines)

    async def _search(self, query: str) -> list[SearchHit]:
        embedding = await self.searcher.embed_query(query)
        return self.searcher.store.hybrid_search(query, embedding, limit=self.candidates)

    async def _reformulate(self, text: str) -> list[str]:
        if self.reformulator is None:
            return []
        try:
            answer = await self.reformulator.complete(
                build_reformulate_prompt(text),
                system=REFORMULATE_SYSTEM_PROMPT.format(count=self.reformulations),
            )
        except Exception as e:
            logger.warning("Query reformulation failed: %s", e)
            return []
        queries = [line.strip() for line in answer.splitlines() if len(line.strip()) > 2]
        return queries[:MAX_QUERIES]

    def _format(self, hit: SearchHit) -> str:
        store = self.searcher.store
        entry = hit.entry
        lines = [
            f"- **{entry.key}** [{entry.category}] (score: {hit.score:.3f}): "
            f"{truncate(entry.content, CONTENT_PREVIEW)}"
        ]
        for relation in store.get_relations(entry.key):
            other = store.get(relation.other(entry.key))
            if other is None:
                continue
            lines.append(
                f"  -> [{relation.label_for(entry.key)}] **{other.key}** "
                f"[{other.category}]: {truncate(other.content, RELATED_PREVIEW)}"
            )
        return "\n".join(lines)
