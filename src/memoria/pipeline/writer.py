"""Four-phase writer agent reconciling the store with a batch of exchanges."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..agent.loop import AgentLoop, AgentRun, StopReason, ToolCallCallback
from ..agent.prompts import (
    ACTIONS_PROMPT,
    BUMPS_PROMPT,
    SUMMARY_PROMPT,
    WRITER_SYSTEM_PROMPT,
    build_audit_prompt,
)
from ..memory.models import Exchange
from ..memory.search import MemorySearcher
from ..memory.tools import ToolAccess, build_memory_registry
from .rag import RagResult

logger = logging.getLogger(__name__)


@dataclass
class WriterPhase:
    """One phase of the writer run."""

    name: str
    prompt: str
    access: ToolAccess
    max_turns: int | None = None


@dataclass
class WriterResult:
    """Outcome of one writer batch."""

    summary: str
    turns: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    stop_reasons: dict[str, str] = field(default_factory=dict)


class ContextAgent:
    """Runs audit, actions, bumps and summary over one batch.

    Phase 1 starts a fresh session; phases 2 to 4 resume it so they see the
    audit and every earlier tool result. The session is discarded when the
    batch ends, so nothing carries over between batches except the store.
    Failures propagate to the caller, which owns logging and trace flushing.
    """

    def __init__(
        self,
        loop: AgentLoop,
        searcher: MemorySearcher,
        timeout: float = 300.0,
        max_turns: int = 25,
    ) -> None:
        self.loop = loop
        self.searcher = searcher
        self.timeout = timeout
        self.max_turns = max_turns
        self._registries = {
            access: build_memory_registry(searcher, access) for access in ToolAccess
        }

    def phases(self, batch: list[RagResult], previous: list[Exchange]) -> list[WriterPhase]:
        return [
            WriterPhase("audit", build_audit_prompt(batch, previous), ToolAccess.READ_ONLY),
            WriterPhase("actions", ACTIONS_PROMPT, ToolAccess.FULL),
            WriterPhase("bumps", BUMPS_PROMPT, ToolAccess.BUMP),
            WriterPhase("summary", SUMMARY_PROMPT, ToolAccess.NONE, max_turns=1),
        ]

    async def process(
        self,
        batch: list[RagResult],
        previous: list[Exchange] | None = None,
        on_tool_call: ToolCallCallback | None = None,
    ) -> WriterResult:
        """Process a batch and attach the summary to each of its exchanges.

        Args:
            batch: Retrieval results in admission order.
            previous: Earlier exchanges of the same conversations, with their
                memory summaries.
            on_tool_call: Forwarded to the agent loop (trace recording).

        Returns:
            WriterResult with the summary and accumulated cost.

        Raises:
            AgentTimeoutError: If a phase exceeds the timeout.
        """
        started = time.monotonic()
        result = WriterResult(summary="")
        session_id: str | None = None
        run: AgentRun | None = None
        try:
            for phase in self.phases(batch, previous or []):
                run = await self.loop.invoke(
                    WRITER_SYSTEM_PROMPT,
                    phase.prompt,
                    self._registries[phase.access],
                    session_id=session_id,
                    timeout=self.timeout,
                    max_turns=phase.max_turns or self.max_turns,
                    on_tool_call=on_tool_call,
                )
                session_id = run.session_id
                result.turns += run.turns
                result.cost_usd += run.cost_usd
                result.tool_calls.extend(run.tool_calls)
                result.stop_reasons[phase.name] = run.stop_reason.value
                logger.info(
                    "Writer %s: %d tool calls, %d turns, $%.4f",
                    phase.name,
                    len(run.tool_calls),
                    run.turns,
                    run.cost_usd,
                )
        finally:
            self.loop.discard_session(session_id)

        if run is not None and run.stop_reason is StopReason.COMPLETE:
            result.summary = run.response.strip()
        for item in batch:
            item.exchange.memory_summary = result.summary or None
        result.duration_ms = (time.monotonic() - started) * 1000
        return result
