"""Append-only JSONL trace of each exchange's journey through the pipeline.

One line per exchange in traces.jsonl, written once the exchange leaves the
pipeline (writer done, skipped by the gate, or batch failure). A trace still
in memory when the process dies is lost, never replayed.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .memory.models import Exchange, utc_now

logger = logging.getLogger(__name__)


@dataclass
class TraceToolCall:
    tool: str
    input: dict[str, Any]
    duration_ms: float | None = None
    success: bool | None = None


@dataclass
class TraceGate:
    process: bool
    reason: str = ""
    error: str | None = None


@dataclass
class TraceRag:
    model: str
    recent_exchanges_count: int = 0
    duration_ms: float = 0.0
    cost_usd: float | None = None
    tool_calls: list[TraceToolCall] = field(default_factory=list)
    priority: str = "normal"
    relevant_keys: list[str] = field(default_factory=list)
    reasoning: str = ""
    error: str | None = None


@dataclass
class TraceInjection:
    urgent_context_written: bool = False
    urgent_context_file: str | None = None
    critical_callback: bool = False


@dataclass
class TraceContextAgent:
    duration_ms: float = 0.0
    cost_usd: float | None = None
    turns: int = 0
    tool_calls: list[TraceToolCall] = field(default_factory=list)
    embeddings_refreshed: int = 0
    summary: str | None = None
    error: str | None = None


@dataclass
class TraceEntry:
    """Everything recorded about one exchange."""

    id: str
    exchange: dict[str, Any]
    timestamp: str = field(default_factory=utc_now)
    gate: TraceGate | None = None
    rag: TraceRag | None = None
    injection: TraceInjection = field(default_factory=TraceInjection)
    context_agent: TraceContextAgent | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict, excluding None sections."""
        return {k: v for k, v in asdict(self).items() if v is not None}


class TraceRecorder:
    """Collects trace sections in memory and appends them to a JSONL file."""

    def __init__(self, path: Path, rag_model: str = "") -> None:
        self.path = path
        self.rag_model = rag_model
        self._pending: dict[str, TraceEntry] = {}

    @property
    def pending(self) -> int:
        return len(self._pending)

    def start(self, exchange_id: str, exchange: Exchange, recent_count: int) -> None:
        self._pending[exchange_id] = TraceEntry(
            id=exchange_id,
            exchange={
                "channel": exchange.channel,
                "conversation": exchange.conversation_name,
                "conversation_id": exchange.conversation_id,
                "user_message": exchange.user_message,
                "assistant_response": exchange.assistant_response,
                "timestamp": exchange.timestamp,
            },
            rag=TraceRag(model=self.rag_model, recent_exchanges_count=recent_count),
        )

    def gate(self, exchange_id: str, process: bool, reason: str = "", error: str | None = None) -> None:
        trace = self._pending.get(exchange_id)
        if trace is not None:
            trace.gate = TraceGate(process=process, reason=reason, error=error)

    def rag_tool_call(
        self,
        exchange_id: str,
        tool: str,
        args: dict[str, Any],
        duration_ms: float | None = None,
        success: bool | None = None,
    ) -> None:
        trace = self._pending.get(exchange_id)
        if trace is not None and trace.rag is not None:
            trace.rag.tool_calls.append(TraceToolCall(tool, args, duration_ms, success))

    def rag_result(
        self,
        exchange_id: str,
        priority: str,
        relevant_keys: list[str],
        reasoning: str,
        duration_ms: float,
        cost_usd: float | None = None,
        error: str | None = None,
    ) -> None:
        trace = self._pending.get(exchange_id)
        if trace is None or trace.rag is None:
            return
        trace.rag.priority = priority
        trace.rag.relevant_keys = list(relevant_keys)
        trace.rag.reasoning = reasoning
        trace.rag.duration_ms = duration_ms
        trace.rag.cost_usd = cost_usd
        trace.rag.error = error

    def skip_rag(self, exchange_id: str) -> None:
        """Drop the retrieval section (RAG disabled or exchange skipped)."""
        trace = self._pending.get(exchange_id)
        if trace is not None:
            trace.rag = None

    def injection(
        self,
        exchange_id: str,
        written: bool,
        file: str | None = None,
        critical_callback: bool = False,
    ) -> None:
        trace = self._pending.get(exchange_id)
        if trace is not None:
            trace.injection = TraceInjection(written, file, critical_callback)

    def context_start(self, exchange_id: str) -> None:
        trace = self._pending.get(exchange_id)
        if trace is not None:
            trace.context_agent = TraceContextAgent()

    def context_tool_call(
        self,
        exchange_id: str,
        tool: str,
        args: dict[str, Any],
        duration_ms: float | None = None,
        success: bool | None = None,
    ) -> None:
        trace = self._pending.get(exchange_id)
        if trace is not None and trace.context_agent is not None:
            trace.context_agent.tool_calls.append(TraceToolCall(tool, args, duration_ms, success))

    def context_result(
        self,
        exchange_id: str,
        duration_ms: float,
        cost_usd: float | None,
        turns: int,
        embeddings_refreshed: int,
        summary: str | None = None,
    ) -> None:
        """Record the writer outcome and flush the trace."""
        trace = self._pending.get(exchange_id)
        if trace is None:
            return
        if trace.context_agent is None:
            trace.context_agent = TraceContextAgent()
        trace.context_agent.duration_ms = duration_ms
        trace.context_agent.cost_usd = cost_usd
        trace.context_agent.turns = turns
        trace.context_agent.embeddings_refreshed = embeddings_refreshed
        trace.context_agent.summary = summary
        self.flush(exchange_id)

    def context_error(self, exchange_id: str, error: str) -> None:
        """Record a writer failure and flush whatever was collected."""
        trace = self._pending.get(exchange_id)
        if trace is None:
            return
        if trace.context_agent is None:
            trace.context_agent = TraceContextAgent()
        trace.context_agent.error = error
        self.flush(exchange_id)

    def flush(self, exchange_id: str) -> None:
        """Append a pending trace to the file and forget it."""
        trace = self._pending.pop(exchange_id, None)
        if trace is None:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(trace.to_dict(), ensure_ascii=False) + "\n")
        except OSError as e:
            logger.error("Failed to write trace %s: %s", exchange_id, e)

    def discard_all(self) -> None:
        """Forget every pending trace without writing it."""
        self._pending.clear()

    def read(self, limit: int = 50, conversation: str | None = None) -> list[dict[str, Any]]:
        return read_traces(self.path, limit, conversation)


def read_traces(path: Path, limit: int = 50, conversation: str | None = None) -> list[dict[str, Any]]:
    """Most recent traces first, optionally for one conversation.

    Malformed lines are skipped.
    """
    if limit <= 0 or not path.exists():
        return []
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as e:
        logger.warning("Cannot read traces from %s: %s", path, e)
        return []

    traces: list[dict[str, Any]] = []
    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            trace = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(trace, dict):
            continue
        if conversation and trace.get("exchange", {}).get("conversation") != conversation:
            continue
        traces.append(trace)
        if len(traces) >= limit:
            break
    return traces
