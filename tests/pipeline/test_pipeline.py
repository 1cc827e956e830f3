"""Tests for MemoryPipeline orchestration."""

import asyncio
import json
from pathlib import Path

import pytest
import pytest_asyncio

from memoria.config import MemoriaConfig
from memoria.memory import Exchange
from memoria.pipeline import GateDecision, MemoryPipeline, RagResult, WriterResult
from memoria.tools import ToolResult


class StubGate:
    """Skips exchanges whose user message starts with 'skip'."""

    async def evaluate(self, exchange, recent):
        if exchange.user_message.startswith("skip"):
            return GateDecision(process=False, reason="small talk")
        return GateDecision(process=True, reason="new information")


class StubRag:
    """Retrieval stand-in; priority comes from the user message prefix."""

    def __init__(self):
        self.blockers: dict[str, asyncio.Event] = {}
        self.finished: list[str] = []

    def block(self, message: str) -> asyncio.Event:
        event = asyncio.Event()
        self.blockers[message] = event
        return event

    async def run(self, exchange_id, exchange, recent, document=None, on_tool_call=None):
        message = exchange.user_message
        if message in self.blockers:
            await self.blockers[message].wait()
        self.finished.append(message)
        priority = message.split(":", 1)[0] if ":" in message else "normal"
        if on_tool_call is not None:
            on_tool_call("search_memory", {"query": message}, _ok(), 1.0)
        return RagResult(
            exchange_id=exchange_id,
            exchange=exchange,
            priority=priority,
            reasoning=f"retrieved for {message}",
            relevant_keys=["marie"],
            pre_context="- **marie** [people]: The user's sister",
        )


class StubWriter:
    """Writer stand-in recording batches and what it was shown."""

    def __init__(self, fail: bool = False, store=None):
        self.fail = fail
        self.store = store
        self.batches: list[list[str]] = []
        self.previous: list[list[str]] = []

    async def process(self, batch, previous=None, on_tool_call=None):
        self.batches.append([r.exchange.user_message for r in batch])
        self.previous.append([e.user_message for e in previous or []])
        if self.fail:
            raise RuntimeError("writer exploded")
        if self.store is not None:
            for r in batch:
                self.store.upsert("facts", f"fact-{len(self.batches)}", r.exchange.user_message)
        summary = f"Processed {len(batch)} exchange(s)"
        for r in batch:
            r.exchange.memory_summary = summary
        return WriterResult(summary=summary, turns=3, cost_usd=0.002)


def _ok() -> ToolResult:
    return ToolResult(success=True, output="ok")


def make_exchange(message: str, conversation: str = "main", conversation_id: str = "chat-1") -> Exchange:
    return Exchange(
        channel="telegram",
        conversation_name=conversation,
        user_message=message,
        assistant_response="Okay.",
        conversation_id=conversation_id,
    )


def read_trace_lines(config: MemoriaConfig) -> list[dict]:
    if not config.traces_path.exists():
        return []
    return [json.loads(line) for line in config.traces_path.read_text().splitlines()]


@pytest.fixture
def config(tmp_path: Path) -> MemoriaConfig:
    return MemoriaConfig(memory_dir=tmp_path / "memory", gate_enabled=False, reset_wait_timeout=1.0)


@pytest.fixture
def rag() -> StubRag:
    return StubRag()


@pytest.fixture
def writer() -> StubWriter:
    return StubWriter()


@pytest_asyncio.fixture
async def pipeline(config: MemoriaConfig, rag: StubRag, writer: StubWriter):
    pipeline = MemoryPipeline(config, gate=StubGate(), rag=rag, writer=writer)
    await pipeline.init()
    yield pipeline
    await pipeline.shutdown()


class TestLifecycle:
    """Tests for init and feeding before init."""

    def test_feed_before_init_raises(self, config: MemoriaConfig):
        pipeline = MemoryPipeline(config, rag=StubRag(), writer=StubWriter())
        with pytest.raises(RuntimeError):
            pipeline.feed_exchange(make_exchange("hello"))

    @pytest.mark.asyncio
    async def test_init_creates_document(self, pipeline: MemoryPipeline, config: MemoriaConfig):
        assert config.db_path.exists()
        assert pipeline.get_context_document() == "# Memory Context\n"

    @pytest.mark.asyncio
    async def test_exchange_ids(self, pipeline: MemoryPipeline):
        first = pipeline.feed_exchange(make_exchange("one"))
        second = pipeline.feed_exchange(make_exchange("two"))
        assert first.startswith("exch-0-")
        assert second.startswith("exch-1-")
        assert await pipeline.wait_idle(1)


class TestOrdering:
    """Writer batches follow admission order whatever the retrieval timing."""

    @pytest.mark.asyncio
    async def test_out_of_order_retrieval(
        self, pipeline: MemoryPipeline, rag: StubRag, writer: StubWriter
    ):
        first = rag.block("m0")
        second = rag.block("m1")
        for message in ("m0", "m1", "m2"):
            pipeline.feed_exchange(make_exchange(message))

        await asyncio.sleep(0.01)
        assert writer.batches == []
        second.set()
        await asyncio.sleep(0.01)
        assert writer.batches == []
        first.set()

        assert await pipeline.wait_idle(1)
        assert rag.finished == ["m2", "m1", "m0"]
        assert [m for batch in writer.batches for m in batch] == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_results_during_batch_join_next_batch(
        self, pipeline: MemoryPipeline, writer: StubWriter
    ):
        started = asyncio.Event()
        release = asyncio.Event()
        original = writer.process

        async def slow_process(batch, previous=None, on_tool_call=None):
            started.set()
            await release.wait()
            return await original(batch, previous, on_tool_call)

        writer.process = slow_process
        pipeline.feed_exchange(make_exchange("a"))
        await started.wait()
        pipeline.feed_exchange(make_exchange("b"))
        pipeline.feed_exchange(make_exchange("c"))
        await asyncio.sleep(0.01)

        status = pipeline.get_processing_status()
        assert status.processing
        assert status.queue_length == 2
        release.set()

        assert await pipeline.wait_idle(1)
        assert writer.batches == [["a"], ["b", "c"]]


class TestStatus:
    @pytest.mark.asyncio
    async def test_pending_and_completed(self, pipeline: MemoryPipeline, rag: StubRag):
        assert pipeline.get_processing_status().to_dict() == {
            "processing": False,
            "queue_length": 0,
            "pending_rag": 0,
            "last_completed_at": None,
        }
        gate = rag.block("slow")
        pipeline.feed_exchange(make_exchange("slow"))
        await asyncio.sleep(0.01)
        assert pipeline.get_processing_status().pending_rag == 1

        gate.set()
        assert await pipeline.wait_idle(1)
        status = pipeline.get_processing_status()
        assert status.pending_rag == 0
        assert not status.processing
        assert status.last_completed_at is not None

    @pytest.mark.asyncio
    async def test_queue_length_counts_results_held_behind_gap(
        self, pipeline: MemoryPipeline, rag: StubRag
    ):
        first = rag.block("m0")
        pipeline.feed_exchange(make_exchange("m0"))
        pipeline.feed_exchange(make_exchange("m1"))
        await asyncio.sleep(0.01)

        status = pipeline.get_processing_status()
        assert rag.finished == ["m1"]
        assert pipeline.state.sequencer.waiting == 1
        assert status.queue_length == 1
        assert status.pending_rag == 1

        first.set()
        assert await pipeline.wait_idle(1)
        assert pipeline.get_processing_status().queue_length == 0

    @pytest.mark.asyncio
    async def test_wait_idle_timeout(self, pipeline: MemoryPipeline, rag: StubRag):
        gate = rag.block("stuck")
        pipeline.feed_exchange(make_exchange("stuck"))
        assert await pipeline.wait_idle(0.05) is False
        gate.set()
        assert await pipeline.wait_idle(1)


class TestGate:
    @pytest.mark.asyncio
    async def test_skipped_exchange_is_traced_and_not_written(
        self, config: MemoriaConfig, rag: StubRag, writer: StubWriter
    ):
        config.gate_enabled = True
        pipeline = MemoryPipeline(config, gate=StubGate(), rag=rag, writer=writer)
        await pipeline.init()
        try:
            pipeline.feed_exchange(make_exchange("skip: thanks!"))
            pipeline.feed_exchange(make_exchange("Marie moved to Lyon"))
            assert await pipeline.wait_idle(1)
        finally:
            await pipeline.shutdown()

        assert writer.batches == [["Marie moved to Lyon"]]
        assert rag.finished == ["Marie moved to Lyon"]
        skipped, processed = read_trace_lines(config)
        assert skipped["gate"] == {"process": False, "reason": "small talk", "error": None}
        assert "rag" not in skipped
        assert "context_agent" not in skipped
        assert processed["gate"]["process"] is True

    @pytest.mark.asyncio
    async def test_skip_does_not_stall_later_exchanges(
        self, config: MemoriaConfig, rag: StubRag, writer: StubWriter
    ):
        config.gate_enabled = True
        pipeline = MemoryPipeline(config, gate=StubGate(), rag=rag, writer=writer)
        await pipeline.init()
        try:
            for message in ("skip: hi", "a", "b", "c"):
                pipeline.feed_exchange(make_exchange(message))
            assert await pipeline.wait_idle(1)
            status = pipeline.get_processing_status()
        finally:
            await pipeline.shutdown()

        assert [m for batch in writer.batches for m in batch] == ["a", "b", "c"]
        assert status.queue_length == 0
        assert status.pending_rag == 0
        traces = {t["exchange"]["user_message"]: t for t in read_trace_lines(config)}
        assert sorted(traces) == ["a", "b", "c", "skip: hi"]
        assert "context_agent" not in traces["skip: hi"]
        assert all("context_agent" in traces[m] for m in ("a", "b", "c"))


class TestInjection:
    """Urgent files and critical callbacks."""

    @pytest.mark.asyncio
    async def test_important_writes_urgent_file(self, pipeline: MemoryPipeline):
        pipeline.feed_exchange(make_exchange("important: wedding moved"))
        assert await pipeline.wait_idle(1)

        content = await pipeline.urgent.consume("chat-1")
        assert content.startswith("# Urgent Memory Update\nretrieved for important: wedding moved")
        assert "- **marie** [people]: The user's sister" in content

    @pytest.mark.asyncio
    async def test_normal_writes_nothing(self, pipeline: MemoryPipeline, config: MemoriaConfig):
        pipeline.feed_exchange(make_exchange("just chatting"))
        assert await pipeline.wait_idle(1)
        assert not pipeline.urgent.path_for("chat-1").exists()
        [trace] = read_trace_lines(config)
        assert trace["injection"]["urgent_context_written"] is False

    @pytest.mark.asyncio
    async def test_critical_callbacks(self, pipeline: MemoryPipeline, config: MemoriaConfig):
        seen = []

        async def notify(exchange):
            seen.append(exchange.user_message)

        def broken(exchange):
            raise RuntimeError("notifier down")

        pipeline.on_critical(broken)
        pipeline.on_critical(notify)
        pipeline.feed_exchange(make_exchange("critical: flight cancelled"))
        pipeline.feed_exchange(make_exchange("important: new address"))
        assert await pipeline.wait_idle(1)

        assert seen == ["critical: flight cancelled"]
        critical, important = read_trace_lines(config)
        assert critical["injection"] == {
            "urgent_context_written": True,
            "urgent_context_file": "urgent-context-chat-1.md",
            "critical_callback": True,
        }
        assert important["injection"]["critical_callback"] is False


class TestWriterStage:
    @pytest.mark.asyncio
    async def test_traces_flushed_with_writer_outcome(
        self, pipeline: MemoryPipeline, config: MemoriaConfig
    ):
        pipeline.feed_exchange(make_exchange("Marie moved to Lyon"))
        assert await pipeline.wait_idle(1)

        [trace] = read_trace_lines(config)
        assert trace["rag"]["reasoning"] == "retrieved for Marie moved to Lyon"
        assert trace["rag"]["tool_calls"][0]["tool"] == "search_memory"
        assert trace["context_agent"]["summary"] == "Processed 1 exchange(s)"
        assert trace["context_agent"]["turns"] == 3
        assert trace["context_agent"]["cost_usd"] == pytest.approx(0.002)

    @pytest.mark.asyncio
    async def test_writer_failure_is_traced(self, config: MemoriaConfig, rag: StubRag):
        pipeline = MemoryPipeline(config, rag=rag, writer=StubWriter(fail=True))
        await pipeline.init()
        try:
            pipeline.feed_exchange(make_exchange("first"))
            assert await pipeline.wait_idle(1)
            pipeline.feed_exchange(make_exchange("second"))
            assert await pipeline.wait_idle(1)
        finally:
            await pipeline.shutdown()

        traces = read_trace_lines(config)
        assert [t["context_agent"]["error"] for t in traces] == ["writer exploded"] * 2
        assert pipeline.state.last_completed_at is not None

    @pytest.mark.asyncio
    async def test_previous_exchanges_passed_to_writer(
        self, pipeline: MemoryPipeline, writer: StubWriter
    ):
        pipeline.feed_exchange(make_exchange("first"))
        assert await pipeline.wait_idle(1)
        pipeline.feed_exchange(make_exchange("elsewhere", conversation="work"))
        assert await pipeline.wait_idle(1)
        pipeline.feed_exchange(make_exchange("second"))
        assert await pipeline.wait_idle(1)

        assert writer.previous == [[], [], ["first"]]

    @pytest.mark.asyncio
    async def test_document_and_snapshot_after_changes(
        self, config: MemoriaConfig, rag: StubRag
    ):
        pipeline = MemoryPipeline(config, rag=rag)
        pipeline._writer = StubWriter(store=pipeline.store)
        await pipeline.init()
        try:
            pipeline.feed_exchange(make_exchange("The user runs marathons"))
            assert await pipeline.wait_idle(1)
            document = pipeline.get_context_document()
        finally:
            await pipeline.shutdown()

        assert "## Facts" in document
        assert "**fact-1**" in document
        assert len(list(config.snapshots_dir.glob("*.db"))) == 1

    @pytest.mark.asyncio
    async def test_rag_disabled(self, config: MemoriaConfig, rag: StubRag, writer: StubWriter):
        config.rag_enabled = False
        pipeline = MemoryPipeline(config, rag=rag, writer=writer)
        await pipeline.init()
        try:
            pipeline.feed_exchange(make_exchange("critical: ignored"))
            assert await pipeline.wait_idle(1)
        finally:
            await pipeline.shutdown()

        assert rag.finished == []
        assert writer.batches == [["critical: ignored"]]
        [trace] = read_trace_lines(config)
        assert "rag" not in trace


class TestReset:
    @pytest.mark.asyncio
    async def test_reset_wipes_everything(
        self, config: MemoriaConfig, rag: StubRag
    ):
        pipeline = MemoryPipeline(config, rag=rag)
        pipeline._writer = StubWriter(store=pipeline.store)
        await pipeline.init()
        try:
            pipeline.feed_exchange(make_exchange("important: Marie moved"))
            assert await pipeline.wait_idle(1)
            assert pipeline.store.count() == 1

            blocker = rag.block("in flight")
            pipeline.feed_exchange(make_exchange("in flight"))
            await asyncio.sleep(0.01)

            await pipeline.reset()

            assert pipeline.store.count() == 0
            assert pipeline.get_context_document() == "# Memory Context\n"
            assert not pipeline.urgent.path_for("chat-1").exists()
            assert pipeline.get_processing_status().pending_rag == 0
            assert pipeline.traces.pending == 0
            blocker.set()

            exchange_id = pipeline.feed_exchange(make_exchange("after reset"))
            assert exchange_id.startswith("exch-0-")
            assert await pipeline.wait_idle(1)
        finally:
            await pipeline.shutdown()


class TestQueries:
    @pytest.mark.asyncio
    async def test_limits_regenerate_document(self, pipeline: MemoryPipeline):
        pipeline.store.upsert("people", "marie", "Sister")
        pipeline.store.upsert("people", "paul", "Brother")

        limits = pipeline.save_limits(people=1)

        assert limits.people == 1
        assert pipeline.get_limits().people == 1
        assert pipeline.get_context_document().count("- **") == 1

    @pytest.mark.asyncio
    async def test_read_traces(self, pipeline: MemoryPipeline):
        pipeline.feed_exchange(make_exchange("one"))
        pipeline.feed_exchange(make_exchange("two", conversation="work"))
        assert await pipeline.wait_idle(1)
        assert len(pipeline.read_traces()) == 2
        assert [t["exchange"]["user_message"] for t in pipeline.read_traces(conversation="work")] == [
            "two"
        ]
