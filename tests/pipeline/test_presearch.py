"""Tests for the synchronous pre-search."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from memoria.memory import EntryStore, MemorySearcher
from memoria.pipeline import PreSearch


@pytest.fixture
def marie(store: EntryStore) -> EntryStore:
    store.upsert("people", "marie", "The user's sister, loves climbing")
    store.upsert("goals", "cadeau-marie", "Find a birthday gift for Marie")
    store.add_relation("cadeau-marie", "marie", "involves")
    return store


def reformulator(text: str = "climbing gear\nbirthday present\n-") -> AsyncMock:
    llm = AsyncMock()
    llm.complete.return_value = text
    return llm


class TestPreSearch:
    """Tests for PreSearch.run."""

    @pytest.mark.asyncio
    async def test_short_message_skipped(self, marie: EntryStore):
        assert await PreSearch(MemorySearcher(marie)).run("hey") is None

    @pytest.mark.asyncio
    async def test_keyword_results_without_embeddings(self, marie: EntryStore):
        llm = reformulator()
        presearch = PreSearch(MemorySearcher(marie), llm)

        text = await presearch.run("Any idea for Marie's birthday gift?")

        assert text.startswith("# Pre-Search Results\n")
        assert "- **cadeau-marie** [goals] (score: " in text
        assert "  -> [involves] **marie** [people]: The user's sister" in text
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_entries_in_document_are_dropped(self, marie: EntryStore):
        presearch = PreSearch(MemorySearcher(marie))
        document = "- **cadeau-marie** (mentioned 1x, last: 2026-03-10): Gift"

        text = await presearch.run("birthday gift", document)
        assert text is None

    @pytest.mark.asyncio
    async def test_weak_results_trigger_reformulation(self, marie: EntryStore, embedder):
        llm = reformulator()
        presearch = PreSearch(MemorySearcher(marie, embedder), llm, reformulations=3)

        text = await presearch.run("what should I buy her")

        llm.complete.assert_awaited_once()
        assert "Generate 3 different search queries" in llm.complete.call_args.kwargs["system"]
        assert "**marie**" in text
        assert "**cadeau-marie**" in text
        # original query plus the two usable reformulations
        assert len(embedder.calls) == 3

    @pytest.mark.asyncio
    async def test_reformulation_failure_keeps_basic_results(self, marie: EntryStore, embedder):
        llm = AsyncMock()
        llm.complete.side_effect = RuntimeError("model offline")
        presearch = PreSearch(MemorySearcher(marie, embedder), llm)

        text = await presearch.run("birthday gift for my sister")
        assert "**cadeau-marie**" in text

    @pytest.mark.asyncio
    async def test_limit(self, store: EntryStore):
        for i in range(6):
            store.upsert("facts", f"tennis-{i}", f"Tennis fact {i}")
        text = await PreSearch(MemorySearcher(store), limit=2).run("tennis results")
        assert text.count("- **tennis-") == 2

    @pytest.mark.asyncio
    async def test_errors_return_none(self):
        searcher = MagicMock()
        searcher.embed_query = AsyncMock(side_effect=RuntimeError("db locked"))
        assert await PreSearch(searcher).run("anything about Marie") is None
