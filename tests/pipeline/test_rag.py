"""Tests for the agentic retrieval stage."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from memoria.agent import AgentLoop
from memoria.errors import AgentParseError
from memoria.memory import EntryStore, Exchange, MemorySearcher
from memoria.pipeline import RagAgent, RagResult, parse_rag_output


def exchange() -> Exchange:
    return Exchange(
        channel="telegram",
        conversation_name="main",
        user_message="I still need a gift for Marie",
        assistant_response="What does she like?",
        conversation_id="chat-1",
    )


def answer(priority: str, keys: list[str], reasoning: str = "found it", **extra) -> str:
    body = {
        "priority": priority,
        "reasoning": reasoning,
        "relevant_entries": [{"key": k, "reason": "mentioned"} for k in keys],
        **extra,
    }
    return f"Here is my analysis.\n```json\n{json.dumps(body)}\n```"


@pytest.fixture
def marie(store: EntryStore) -> EntryStore:
    store.upsert("people", "marie", "The user's sister, loves climbing")
    store.upsert("goals", "cadeau-marie", "Find a birthday gift for Marie")
    store.add_relation("cadeau-marie", "marie", "involves")
    return store


class TestParseRagOutput:
    """Tests for parse_rag_output."""

    def test_fenced_block(self):
        assert parse_rag_output(answer("normal", []))["priority"] == "normal"

    def test_raw_json(self):
        assert parse_rag_output('{"priority": "critical"}') == {"priority": "critical"}

    def test_embedded_object(self):
        text = 'Result: {"priority": "important", "reasoning": "x"} done'
        assert parse_rag_output(text)["priority"] == "important"

    def test_unparseable(self):
        with pytest.raises(AgentParseError):
            parse_rag_output("I could not find anything relevant.")


class TestRagAgent:
    """Tests for RagAgent.run."""

    @pytest.mark.asyncio
    async def test_important_result_with_pre_context(self, marie: EntryStore, scripted_groq):
        client = scripted_groq([
            [("search_memory", {"query": "Marie gift"})],
            answer("important", ["marie", "cadeau-marie"]),
        ])
        loop = AgentLoop(groq_client=client)
        agent = RagAgent(loop, MemorySearcher(marie))

        result = await agent.run("exch-0", exchange(), [], document=None)

        assert result.priority == "important"
        assert result.needs_injection
        assert result.relevant_keys == ["marie", "cadeau-marie"]
        assert result.reasoning == "found it"
        assert "- **marie** [people]: The user's sister, loves climbing" in result.pre_context
        assert "  - involved_in **cadeau-marie** [goals]" in result.pre_context
        assert result.tool_calls == [
            {"name": "search_memory", "args": {"query": "Marie gift"}, "success": True}
        ]
        assert result.error is None
        assert loop._sessions == {}

    @pytest.mark.asyncio
    async def test_read_only_tools(self, store: EntryStore, scripted_groq):
        client = scripted_groq([answer("normal", [])])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store))
        await agent.run("exch-0", exchange(), [])

        names = [tool["function"]["name"] for tool in client.requests[0]["tools"]]
        assert names == ["search_memory", "get_entry", "list_category"]

    @pytest.mark.asyncio
    async def test_pre_context_skips_keys_already_in_document(
        self, marie: EntryStore, scripted_groq
    ):
        client = scripted_groq([answer("normal", ["marie"], pre_context="agent text")])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(marie))
        document = "## People\n- **marie** (mentioned 1x, last: 2026-03-10): Sister"

        result = await agent.run("exch-0", exchange(), [], document=document)
        assert result.pre_context == ""

    @pytest.mark.asyncio
    async def test_only_missing_keys_in_pre_context(self, marie: EntryStore, scripted_groq):
        client = scripted_groq([answer("important", ["marie", "cadeau-marie"])])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(marie))
        document = "- **marie** (mentioned 1x, last: 2026-03-10): Sister"

        result = await agent.run("exch-0", exchange(), [], document=document)
        assert result.pre_context.startswith("- **cadeau-marie** [goals]")
        assert "- **marie** [people]" not in result.pre_context

    @pytest.mark.asyncio
    async def test_agent_text_used_when_no_key_resolves(self, store: EntryStore, scripted_groq):
        client = scripted_groq([answer("important", ["ghost"], pre_context="From the agent")])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store))
        result = await agent.run("exch-0", exchange(), [])
        assert result.pre_context == "From the agent"

    @pytest.mark.asyncio
    async def test_unknown_priority_is_normal(self, store: EntryStore, scripted_groq):
        client = scripted_groq([answer("urgent!!", [])])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store))
        result = await agent.run("exch-0", exchange(), [])
        assert result.priority == "normal"

    @pytest.mark.asyncio
    async def test_repair_turn_recovers(self, store: EntryStore, scripted_groq):
        client = scripted_groq([
            "Marie is the user's sister, nothing new.",
            '{"priority": "critical", "reasoning": "date changed", "relevant_entries": []}',
        ])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store))

        result = await agent.run("exch-0", exchange(), [])

        assert result.priority == "critical"
        repair_request = client.requests[1]
        assert "tools" not in repair_request
        assert repair_request["messages"][-2] == {
            "role": "assistant",
            "content": "Marie is the user's sister, nothing new.",
        }

    @pytest.mark.asyncio
    async def test_unparseable_twice_falls_back(self, store: EntryStore, scripted_groq):
        client = scripted_groq(["no json here", "still no json"])
        loop = AgentLoop(groq_client=client)
        result = await RagAgent(loop, MemorySearcher(store)).run("exch-0", exchange(), [])

        assert result.priority == "normal"
        assert result.relevant_keys == []
        assert result.error == "Failed to parse RAG output"
        assert loop._sessions == {}

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self, store: EntryStore):
        client = AsyncMock()

        async def slow(**kwargs):
            await asyncio.sleep(1)

        client.chat.completions.create.side_effect = slow
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store), timeout=0.01)

        result = await agent.run("exch-0", exchange(), [])
        assert result.priority == "normal"
        assert result.error == "RAG agent timed out"

    @pytest.mark.asyncio
    async def test_provider_error_falls_back(self, store: EntryStore, scripted_groq):
        client = scripted_groq([RuntimeError("rate limited")])
        agent = RagAgent(AgentLoop(groq_client=client), MemorySearcher(store))
        result = await agent.run("exch-0", exchange(), [])
        assert result.priority == "normal"
        assert result.error == "RAG error: rate limited"


class TestRagResult:
    def test_needs_injection(self):
        for priority, expected in (("normal", False), ("important", True), ("critical", True)):
            result = RagResult("exch-0", exchange(), priority=priority)
            assert result.needs_injection is expected

    def test_fallback(self):
        result = RagResult.fallback("exch-0", exchange(), "boom")
        assert result.priority == "normal"
        assert result.pre_context == ""
        assert result.error == "boom"
