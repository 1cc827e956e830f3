"""The memory pipeline: gate, retrieval, ordered writer queue, context refresh."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from groq import AsyncGroq

from ..agent.llm_client import GroqLLMClient
from ..agent.loop import AgentConfig, AgentLoop
from ..config import MemoriaConfig
from ..memory.context import ContextAssembler
from ..memory.embeddings import EmbeddingService, refresh_dirty_embeddings
from ..memory.models import Exchange, utc_now
from ..memory.search import MemorySearcher
from ..memory.settings import InjectionLimits, load_limits, save_limits
from ..memory.store import EntryStore
from ..tools import ToolResult
from ..trace import TraceRecorder
from .gate import Gate
from .presearch import PreSearch
from .rag import RagAgent, RagResult
from .sequencer import OrderedRelease
from .urgent import UrgentContextInjector
from .writer import ContextAgent

logger = logging.getLogger(__name__)

CriticalCallback = Callable[[Exchange], Awaitable[None] | None]


@dataclass
class ProcessingStatus:
    """Snapshot of pipeline activity, polled before destructive operations."""

    processing: bool
    queue_length: int
    pending_rag: int
    last_completed_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PipelineState:
    """Everything in flight for one pipeline instance."""

    recent_size: int = 20
    sequencer: OrderedRelease[RagResult] = field(default_factory=OrderedRelease)
    pending: dict[str, int] = field(default_factory=dict)
    queue: list[RagResult] = field(default_factory=list)
    recent: deque[Exchange] = field(init=False)
    processing: bool = False
    last_completed_at: str | None = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    writer_task: asyncio.Task | None = None

    def __post_init__(self) -> None:
        self.recent = deque(maxlen=self.recent_size)

    def in_flight(self) -> list[asyncio.Task]:
        tasks = [t for t in self.tasks if not t.done()]
        if self.writer_task is not None and not self.writer_task.done():
            tasks.append(self.writer_task)
        return tasks


class MemoryPipeline:
    """Owns the store and every stage processing exchanges into it.

    Ingestion never blocks: feed_exchange() schedules the gate and retrieval
    as a task and returns. Retrieval results reach the writer in admission
    order, and at most one writer batch runs at a time; results arriving
    during a batch are drained into the next one.

    Agent components are created lazily from the configuration unless
    injected, so read-only uses (status, traces, limits) need no API key.
    """

    def __init__(
        self,
        config: MemoriaConfig,
        groq_client: AsyncGroq | None = None,
        embedder: EmbeddingService | None = None,
        gate: Gate | None = None,
        rag: RagAgent | None = None,
        writer: ContextAgent | None = None,
        presearch: PreSearch | None = None,
    ) -> None:
        self.config = config
        self.store = EntryStore(config.db_path)
        if embedder is None and config.embedding_api_key:
            embedder = EmbeddingService(
                config.embedding_api_key,
                base_url=config.embedding_base_url,
                model=config.embedding_model,
                timeout=config.embedding_timeout,
                max_attempts=config.embedding_max_attempts,
                backoff_base=config.embedding_backoff,
            )
        self.embedder = embedder
        self.searcher = MemorySearcher(self.store, embedder)
        self.assembler = ContextAssembler(self.store, config.settings_path, config.context_path)
        self.urgent = UrgentContextInjector(
            config.urgent_dir, config.urgent_ttl, config.urgent_sweep_interval
        )
        self.traces = TraceRecorder(config.traces_path, rag_model=config.rag_model)
        self.state = PipelineState(recent_size=config.recent_exchanges_buffer)

        self._client = groq_client
        self._gate = gate
        self._rag = rag
        self._writer = writer
        self._presearch = presearch
        self._loops: list[AgentLoop] = []
        self._semaphore = asyncio.Semaphore(max(1, config.rag_concurrency))
        self._critical_callbacks: list[CriticalCallback] = []
        self._initialized = False

    # -- lazily built components ------------------------------------------

    def _groq(self) -> AsyncGroq:
        if self._client is None:
            self._client = AsyncGroq(api_key=self.config.groq_api_key)
        return self._client

    def _agent_loop(self, model: str) -> AgentLoop:
        loop = AgentLoop(
            AgentConfig(
                model=model,
                input_price_per_mtok=self.config.input_price_per_mtok,
                output_price_per_mtok=self.config.output_price_per_mtok,
            ),
            self._groq(),
        )
        self._loops.append(loop)
        return loop

    @property
    def gate(self) -> Gate:
        if self._gate is None:
            self._gate = Gate(
                GroqLLMClient(self._groq(), self.config.gate_model, max_tokens=50),
                self.config.gate_context_exchanges,
            )
        return self._gate

    @property
    def rag(self) -> RagAgent:
        if self._rag is None:
            self._rag = RagAgent(
                self._agent_loop(self.config.rag_model),
                self.searcher,
                timeout=self.config.rag_timeout,
                max_turns=self.config.rag_max_turns,
            )
        return self._rag

    @property
    def writer(self) -> ContextAgent:
        if self._writer is None:
            self._writer = ContextAgent(
                self._agent_loop(self.config.writer_model),
                self.searcher,
                timeout=self.config.writer_timeout,
                max_turns=self.config.writer_max_turns,
            )
        return self._writer

    @property
    def presearch(self) -> PreSearch:
        if self._presearch is None:
            self._presearch = PreSearch(
                self.searcher,
                GroqLLMClient(self._groq(), self.config.reformulate_model),
                limit=self.config.pre_search_limit,
                candidates=self.config.pre_search_candidates,
                min_score=self.config.pre_search_min_score,
                reformulations=self.config.pre_search_reformulations,
            )
        return self._presearch

    # -- lifecycle ---------------------------------------------------------

    async def init(self) -> None:
        """Open the store, build the initial document and start the sweeper."""
        self.config.memory_dir.mkdir(parents=True, exist_ok=True)
        self.store.init_db()
        if self.assembler.read_document() is None:
            self.assembler.generate()
        self.urgent.start()
        self._initialized = True
        logger.info(
            "Memory pipeline ready (%d entries, gate: %s, RAG: %s)",
            self.store.count(),
            "on" if self.config.gate_enabled else "off",
            "on" if self.config.rag_enabled else "off",
        )

    async def reset(self) -> None:
        """Wipe everything and start again from an empty store.

        Waits up to reset_wait_timeout for an in-flight writer batch, then
        cancels whatever is still running and proceeds.
        """
        await self._stop_tasks()
        logger.info("Resetting memory (full wipe)")
        self.traces.discard_all()
        self.store.close()
        db_path = self.config.db_path
        for suffix in ("", "-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)
        self.config.context_path.unlink(missing_ok=True)
        self.urgent.clear_all()
        for loop in self._loops:
            loop.clear_sessions()
        self.state = PipelineState(recent_size=self.config.recent_exchanges_buffer)

        self.store.init_db()
        self.assembler.generate()
        logger.info("Memory reset complete")

    async def shutdown(self) -> None:
        """Stop background work and close the store."""
        await self._stop_tasks()
        await self.urgent.stop()
        self.store.close()
        if self.embedder is not None:
            await self.embedder.aclose()
        self._initialized = False
        logger.info("Memory pipeline stopped")

    async def _stop_tasks(self) -> None:
        state = self.state
        writer_task = state.writer_task
        if writer_task is not None and not writer_task.done():
            logger.warning(
                "Writer batch in flight, waiting up to %.0fs", self.config.reset_wait_timeout
            )
            _, still_running = await asyncio.wait(
                {writer_task}, timeout=self.config.reset_wait_timeout
            )
            if still_running:
                logger.warning("Writer batch did not finish in time, cancelling it")
        tasks = state.in_flight()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no exchange is being gated, retrieved or written.

        Returns:
            True when idle, False if the timeout expired first.
        """
        async def _until_idle() -> None:
            while True:
                tasks = self.state.in_flight()
                if not tasks:
                    return
                await asyncio.wait(tasks)

        try:
            await asyncio.wait_for(_until_idle(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # -- ingestion ---------------------------------------------------------

    def feed_exchange(self, exchange: Exchange) -> str:
        """Submit an exchange for processing and return immediately.

        Must be called from within the running event loop.

        Returns:
            The exchange id used in traces.
        """
        if not self._initialized:
            raise RuntimeError("MemoryPipeline.init() must be awaited first")
        state = self.state
        recent = [
            e for e in state.recent if e.conversation_name == exchange.conversation_name
        ][-self.config.recent_exchanges_per_conversation:]
        state.recent.append(exchange)

        sequence = state.sequencer.admit()
        exchange_id = f"exch-{sequence}-{int(time.time() * 1000)}"
        self.traces.start(exchange_id, exchange, len(recent))
        state.pending[exchange_id] = sequence

        task = asyncio.create_task(self._admit(state, exchange_id, sequence, exchange, recent))
        state.tasks.add(task)
        task.add_done_callback(state.tasks.discard)
        return exchange_id

    async def _admit(
        self,
        state: PipelineState,
        exchange_id: str,
        sequence: int,
        exchange: Exchange,
        recent: list[Exchange],
    ) -> None:
        result: RagResult | None = None
        try:
            admitted = True
            if self.config.gate_enabled:
                decision = await self.gate.evaluate(exchange, recent)
                self.traces.gate(exchange_id, decision.process, decision.reason, decision.error)
                admitted = decision.process

            if not admitted:
                # result stays None: the slot is completed without a batch item
                self.traces.skip_rag(exchange_id)
                self.traces.flush(exchange_id)
            elif self.config.rag_enabled:
                result = await self._retrieve(exchange_id, exchange, recent)
                await self._inject(result)
            else:
                self.traces.skip_rag(exchange_id)
                result = RagResult(exchange_id=exchange_id, exchange=exchange, reasoning="RAG disabled")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Admission failed for %s", exchange_id)
            result = RagResult.fallback(exchange_id, exchange, f"RAG error: {e}")
        finally:
            state.pending.pop(exchange_id, None)

        if state is self.state:
            self._release(sequence, result)

    async def _retrieve(
        self, exchange_id: str, exchange: Exchange, recent: list[Exchange]
    ) -> RagResult:
        def record(name: str, args: dict[str, Any], outcome: ToolResult, duration_ms: float) -> None:
            self.traces.rag_tool_call(exchange_id, name, args, duration_ms, outcome.success)

        async with self._semaphore:
            result = await self.rag.run(
                exchange_id,
                exchange,
                recent,
                self.assembler.read_document(),
                on_tool_call=record,
            )
        self.traces.rag_result(
            exchange_id,
            result.priority,
            result.relevant_keys,
            result.reasoning,
            result.duration_ms,
            result.cost_usd,
            result.error,
        )
        return result

    async def _inject(self, result: RagResult) -> None:
        if not result.needs_injection:
            self.traces.injection(result.exchange_id, written=False)
            return
        try:
            path = await self.urgent.write(result)
        except OSError as e:
            logger.error("Failed to write urgent context for %s: %s", result.exchange_id, e)
            self.traces.injection(result.exchange_id, written=False)
            return

        notified = False
        if result.priority == "critical":
            for callback in self._critical_callbacks:
                notified = True
                try:
                    outcome = callback(result.exchange)
                    if asyncio.iscoroutine(outcome):
                        await outcome
                except Exception:
                    logger.exception("Critical injection callback failed")
        self.traces.injection(result.exchange_id, True, path.name, notified)

    def _release(self, sequence: int, result: RagResult | None) -> None:
        released = self.state.sequencer.complete(sequence, result)
        if not released:
            return
        self.state.queue.extend(released)
        writer_task = self.state.writer_task
        if writer_task is None or writer_task.done():
            self.state.writer_task = asyncio.create_task(self._drain_writer(self.state))

    # -- writer ------------------------------------------------------------

    async def _drain_writer(self, state: PipelineState) -> None:
        while state.queue and state is self.state:
            batch = list(state.queue)
            state.queue.clear()
            state.processing = True
            try:
                await self._process_batch(batch)
            finally:
                state.processing = False
                state.last_completed_at = utc_now()

    async def _process_batch(self, batch: list[RagResult]) -> None:
        ids = [r.exchange_id for r in batch]
        channels = ", ".join(sorted({r.exchange.channel for r in batch}))
        logger.info("Processing %d exchange(s) from %s", len(batch), channels)
        for exchange_id in ids:
            self.traces.context_start(exchange_id)

        def record(name: str, args: dict[str, Any], outcome: ToolResult, duration_ms: float) -> None:
            for exchange_id in ids:
                self.traces.context_tool_call(exchange_id, name, args, duration_ms, outcome.success)

        started = time.monotonic()
        changes_before = self.store.total_changes
        try:
            result = await self.writer.process(
                batch, self._previous_exchanges(batch), on_tool_call=record
            )
            self.assembler.generate()
            refreshed = await refresh_dirty_embeddings(self.store, self.embedder)
            if self.store.total_changes != changes_before:
                snapshot = self.store.snapshot(
                    self.config.snapshots_dir, self.config.snapshot_keep
                )
                logger.debug("Snapshot written to %s", snapshot.name)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Writer batch failed")
            for exchange_id in ids:
                self.traces.context_error(exchange_id, str(e))
            return

        duration_ms = (time.monotonic() - started) * 1000
        for exchange_id in ids:
            self.traces.context_result(
                exchange_id,
                duration_ms,
                result.cost_usd,
                result.turns,
                refreshed,
                result.summary or None,
            )
        logger.info("Batch done in %.0fms (%d embeddings refreshed)", duration_ms, refreshed)

    def _previous_exchanges(self, batch: list[RagResult]) -> list[Exchange]:
        conversations = {r.exchange.conversation_name for r in batch}
        in_batch = {id(r.exchange) for r in batch}
        per_conversation: dict[str, list[Exchange]] = {}
        for exchange in self.state.recent:
            if (
                exchange.conversation_name in conversations
                and id(exchange) not in in_batch
                and exchange.memory_summary
            ):
                per_conversation.setdefault(exchange.conversation_name, []).append(exchange)
        keep = {
            id(e)
            for exchanges in per_conversation.values()
            for e in exchanges[-self.config.recent_exchanges_per_conversation:]
        }
        return [e for e in self.state.recent if id(e) in keep]

    # -- queries -----------------------------------------------------------

    def get_processing_status(self) -> ProcessingStatus:
        state = self.state
        return ProcessingStatus(
            processing=state.processing,
            queue_length=len(state.queue) + state.sequencer.waiting,
            pending_rag=len(state.pending),
            last_completed_at=state.last_completed_at,
        )

    async def run_pre_search(self, text: str) -> str | None:
        """Best-effort retrieval for a raw message, before the reply exists."""
        return await self.presearch.run(text, self.assembler.read_document())

    def on_critical(self, callback: CriticalCallback) -> None:
        """Call callback with the exchange whenever retrieval finds something critical."""
        self._critical_callbacks.append(callback)

    def get_context_document(self) -> str | None:
        return self.assembler.read_document()

    def get_limits(self) -> InjectionLimits:
        return load_limits(self.config.settings_path)

    def save_limits(self, **partial: Any) -> InjectionLimits:
        """Persist new limits (clamped) and regenerate the document."""
        limits = save_limits(self.config.settings_path, **partial)
        if self._initialized:
            self.assembler.generate(limits)
        return limits

    def read_traces(self, limit: int = 50, conversation: str | None = None) -> list[dict[str, Any]]:
        return self.traces.read(limit, conversation)
