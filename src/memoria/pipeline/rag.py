"""Agentic retrieval stage run for each admitted exchange."""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from ..agent.loop import AgentLoop, ToolCallCallback
from ..agent.prompts import RAG_REPAIR_PROMPT, RAG_SYSTEM_PROMPT, build_rag_prompt
from ..errors import AgentParseError, AgentTimeoutError
from ..memory.formatting import format_pre_context
from ..memory.models import Exchange, utc_now
from ..memory.search import MemorySearcher
from ..memory.tools import ToolAccess, build_memory_registry

logger = logging.getLogger(__name__)

Priority = Literal["normal", "important", "critical"]
PRIORITIES: tuple[str, ...] = ("normal", "important", "critical")

_JSON_BLOCK = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)
_JSON_OBJECT = re.compile(r"\{.*\"priority\".*\}", re.DOTALL)


@dataclass
class RagResult:
    """What the retrieval stage found for one exchange."""

    exchange_id: str
    exchange: Exchange
    priority: Priority = "normal"
    reasoning: str = ""
    relevant_keys: list[str] = field(default_factory=list)
    pre_context: str = ""
    timestamp: str = field(default_factory=utc_now)
    duration_ms: float = 0.0
    cost_usd: float | None = None
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    @property
    def needs_injection(self) -> bool:
        return self.priority in ("important", "critical")

    @classmethod
    def fallback(cls, exchange_id: str, exchange: Exchange, reason: str) -> "RagResult":
        """Normal, empty result used whenever retrieval cannot complete."""
        return cls(exchange_id=exchange_id, exchange=exchange, reasoning=reason, error=reason)


def parse_rag_output(text: str) -> dict[str, Any]:
    """Extract the JSON answer of the retrieval agent.

    Tries a fenced block, then the whole text, then the outermost object
    containing a "priority" field.

    Raises:
        AgentParseError: If no JSON object can be recovered.
    """
    candidates = []
    match = _JSON_BLOCK.search(text)
    if match:
        candidates.append(match.group(1))
    candidates.append(text.strip())
    match = _JSON_OBJECT.search(text)
    if match:
        candidates.append(match.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise AgentParseError(f"No JSON object in retrieval output: {text[:200]!r}")


def _keys_from(data: dict[str, Any]) -> list[str]:
    keys: list[str] = []
    for item in data.get("relevant_entries") or []:
        key = item.get("key") if isinstance(item, dict) else item
        if isinstance(key, str) and key and key not in keys:
            keys.append(key)
    return keys


class RagAgent:
    """Read-only agent that searches memory for one exchange.

    The agent returns priority, reasoning and relevant keys. pre_context is
    rebuilt from the store for the relevant entries missing from the current
    document, so the writer always sees full content and relations; the
    agent's own pre_context text is kept only when no key resolves.
    """

    def __init__(
        self,
        loop: AgentLoop,
        searcher: MemorySearcher,
        timeout: float = 60.0,
        max_turns: int = 15,
    ) -> None:
        self.loop = loop
        self.searcher = searcher
        self.timeout = timeout
        self.max_turns = max_turns
        self.registry = build_memory_registry(searcher, ToolAccess.READ_ONLY)

    async def run(
        self,
        exchange_id: str,
        exchange: Exchange,
        recent: list[Exchange],
        document: str | None = None,
        on_tool_call: ToolCallCallback | None = None,
    ) -> RagResult:
        """Search memory for an exchange. Never raises except on cancellation.

        Args:
            exchange_id: Trace identifier of the exchange.
            exchange: The exchange to analyze.
            recent: Recent exchanges of the same conversation.
            document: Current context document, used to judge what is new.
            on_tool_call: Forwarded to the agent loop (trace recording).

        Returns:
            RagResult; a normal fallback on timeout, failure or unparseable output.
        """
        start = time.monotonic()
        session_id = None
        try:
            run = await self.loop.invoke(
                RAG_SYSTEM_PROMPT,
                build_rag_prompt(exchange, recent, document),
                self.registry,
                timeout=self.timeout,
                max_turns=self.max_turns,
                on_tool_call=on_tool_call,
            )
            session_id = run.session_id
            cost = run.cost_usd
            tool_calls = list(run.tool_calls)
            try:
                data = parse_rag_output(run.response)
            except AgentParseError as e:
                logger.warning("Retrieval output unparseable, asking once more: %s", e)
                repair = await self.loop.invoke(
                    RAG_SYSTEM_PROMPT,
                    RAG_REPAIR_PROMPT,
                    None,
                    session_id=session_id,
                    timeout=self.timeout,
                    max_turns=1,
                )
                cost += repair.cost_usd
                data = parse_rag_output(repair.response)
        except AgentTimeoutError as e:
            logger.warning("Retrieval timed out for %s: %s", exchange_id, e)
            return self._fallback(exchange_id, exchange, "RAG agent timed out", start)
        except AgentParseError as e:
            logger.warning("Retrieval output dropped for %s: %s", exchange_id, e)
            return self._fallback(exchange_id, exchange, "Failed to parse RAG output", start)
        except Exception as e:
            logger.exception("Retrieval failed for %s", exchange_id)
            return self._fallback(exchange_id, exchange, f"RAG error: {e}", start)
        finally:
            self.loop.discard_session(session_id)

        priority = data.get("priority")
        if priority not in PRIORITIES:
            priority = "normal"
        keys = _keys_from(data)
        result = RagResult(
            exchange_id=exchange_id,
            exchange=exchange,
            priority=priority,
            reasoning=str(data.get("reasoning") or ""),
            relevant_keys=keys,
            pre_context=self._pre_context(keys, document, data.get("pre_context")),
            duration_ms=(time.monotonic() - start) * 1000,
            cost_usd=cost,
            tool_calls=tool_calls,
        )
        logger.info(
            "RAG %s: priority=%s, keys=%d, %d tool calls, %.0fms",
            exchange_id,
            result.priority,
            len(keys),
            len(tool_calls),
            result.duration_ms,
        )
        return result

    def _pre_context(self, keys: list[str], document: str | None, agent_text: Any) -> str:
        missing = [k for k in keys if not document or f"**{k}**" not in document]
        if keys and not missing:
            return ""
        built = format_pre_context(self.searcher.store, missing)
        if built:
            return built
        return agent_text if isinstance(agent_text, str) else ""

    def _fallback(self, exchange_id: str, exchange: Exchange, reason: str, start: float) -> RagResult:
        result = RagResult.fallback(exchange_id, exchange, reason)
        result.duration_ms = (time.monotonic() - start) * 1000
        return result
