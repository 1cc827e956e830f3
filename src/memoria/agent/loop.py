"""Agentic tool-calling loop over Groq chat completions."""

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from groq import AsyncGroq

from ..errors import AgentTimeoutError
from ..tools import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

ToolCallCallback = Callable[[str, dict[str, Any], ToolResult, float], Awaitable[None] | None]


class StopReason(Enum):
    """Reasons for stopping the agent loop."""

    COMPLETE = "complete"
    MAX_TURNS = "max_turns"
    REPEATED_CALL = "repeated_call"
    CONSECUTIVE_ERRORS = "consecutive_errors"


@dataclass
class AgentConfig:
    """Configuration for the agent loop.

    Prices are USD per million tokens and only feed cost accounting.
    """

    model: str = "llama-3.1-70b-versatile"
    max_turns: int = 10
    max_consecutive_errors: int = 3
    max_repeated_calls: int = 2
    input_price_per_mtok: float = 0.59
    output_price_per_mtok: float = 0.79


@dataclass
class AgentRun:
    """Result of one invoke() call."""

    response: str
    stop_reason: StopReason
    turns: int
    session_id: str
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    cost_usd: float = 0.0


class AgentLoop:
    """Think -> act -> observe loop with resumable sessions.

    A session is the message history of previous runs (everything except the
    system prompt). Resuming a session replays that history under the new
    system prompt, so a later phase sees earlier tool results and reasoning.
    Sessions live in memory only and are discarded explicitly.
    """

    def __init__(
        self,
        config: AgentConfig | None = None,
        groq_client: AsyncGroq | None = None,
    ) -> None:
        self.config = config or AgentConfig()
        self.client = groq_client or AsyncGroq(api_key=os.getenv("GROQ_API_KEY"))
        self._sessions: dict[str, list[dict[str, Any]]] = {}

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def discard_session(self, session_id: str | None) -> None:
        """Forget a session's history."""
        if session_id is not None:
            self._sessions.pop(session_id, None)

    def clear_sessions(self) -> None:
        """Forget every session."""
        self._sessions.clear()

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        registry: ToolRegistry | None = None,
        session_id: str | None = None,
        timeout: float | None = None,
        max_turns: int | None = None,
        on_tool_call: ToolCallCallback | None = None,
    ) -> AgentRun:
        """Run the loop until the model answers without tool calls.

        Args:
            system_prompt: System prompt for this run.
            user_prompt: New user message appended to the session.
            registry: Tools available in this run. None or empty disables tools.
            session_id: Session to resume. A new session is created if None
                or unknown.
            timeout: Wall-clock limit in seconds for the whole run.
            max_turns: Overrides the configured turn limit.
            on_tool_call: Called after each tool execution with
                (name, args, result, duration_ms).

        Returns:
            AgentRun with the final text, stop reason and cost.

        Raises:
            AgentTimeoutError: If the run exceeds timeout.
        """
        session_id = session_id or uuid.uuid4().hex
        run = self._run(
            system_prompt,
            user_prompt,
            registry or ToolRegistry(),
            session_id,
            max_turns or self.config.max_turns,
            on_tool_call,
        )
        if timeout is None:
            return await run
        try:
            return await asyncio.wait_for(run, timeout)
        except asyncio.TimeoutError as e:
            raise AgentTimeoutError(f"Agent run exceeded {timeout:.0f}s") from e

    async def _run(
        self,
        system_prompt: str,
        user_prompt: str,
        registry: ToolRegistry,
        session_id: str,
        max_turns: int,
        on_tool_call: ToolCallCallback | None,
    ) -> AgentRun:
        history = self._sessions.setdefault(session_id, [])
        history.append({"role": "user", "content": user_prompt})
        tools_schema = registry.get_tools_schema()

        tool_calls_log: list[dict[str, Any]] = []
        cost = 0.0
        last_call: str | None = None
        repeated = 0
        consecutive_errors = 0
        final_response = ""

        def finish(response: str, reason: StopReason, turns: int) -> AgentRun:
            if reason is not StopReason.COMPLETE:
                logger.warning("Agent stopped (%s) after %d turns", reason.value, turns)
            return AgentRun(
                response=response,
                stop_reason=reason,
                turns=turns,
                session_id=session_id,
                tool_calls=tool_calls_log,
                cost_usd=cost,
            )

        for turn in range(max_turns):
            request: dict[str, Any] = {
                "model": self.config.model,
                "messages": [{"role": "system", "content": system_prompt}, *history],
            }
            if tools_schema:
                request["tools"] = tools_schema
                request["tool_choice"] = "auto"
            response = await self.client.chat.completions.create(**request)
            cost += self._cost(response)

            assistant_message = response.choices[0].message
            if not assistant_message.tool_calls:
                final_response = assistant_message.content or ""
                history.append({"role": "assistant", "content": final_response})
                return finish(final_response, StopReason.COMPLETE, turn + 1)

            history.append({
                "role": "assistant",
                "content": assistant_message.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {
                            "name": tc.function.name,
                            "arguments": tc.function.arguments,
                        },
                    }
                    for tc in assistant_message.tool_calls
                ],
            })

            pending = list(assistant_message.tool_calls)
            while pending:
                tool_call = pending.pop(0)
                tool_name = tool_call.function.name
                try:
                    tool_args = json.loads(tool_call.function.arguments or "{}")
                except json.JSONDecodeError:
                    tool_args = {}
                if not isinstance(tool_args, dict):
                    tool_args = {}

                call_record = {"name": tool_name, "args": tool_args}
                tool_calls_log.append(call_record)

                signature = json.dumps(call_record, sort_keys=True)
                if signature == last_call:
                    repeated += 1
                else:
                    last_call, repeated = signature, 1
                if repeated >= self.config.max_repeated_calls:
                    self._skip_calls(history, [tool_call, *pending], "repeated tool call")
                    return finish(
                        "Stopped: repeated tool call detected",
                        StopReason.REPEATED_CALL,
                        turn + 1,
                    )

                start_time = time.time()
                result = await registry.dispatch(tool_name, tool_args)
                duration_ms = (time.time() - start_time) * 1000
                call_record["success"] = result.success
                logger.debug(
                    "Tool %s -> %s (%.0fms)",
                    tool_name,
                    "ok" if result.success else result.error,
                    duration_ms,
                )
                if on_tool_call is not None:
                    await self._notify(on_tool_call, tool_name, tool_args, result, duration_ms)

                history.append({
                    "role": "tool",
                    "tool_call_id": tool_call.id,
                    "content": result.to_message(),
                })

                if result.success:
                    consecutive_errors = 0
                    continue
                consecutive_errors += 1
                if consecutive_errors >= self.config.max_consecutive_errors:
                    self._skip_calls(history, pending, "too many errors")
                    return finish(
                        f"Stopped: {self.config.max_consecutive_errors} consecutive errors",
                        StopReason.CONSECUTIVE_ERRORS,
                        turn + 1,
                    )

        return finish(final_response or "Max turns reached", StopReason.MAX_TURNS, max_turns)

    @staticmethod
    def _skip_calls(history: list[dict[str, Any]], calls: list[Any], reason: str) -> None:
        # Every tool call id needs an answer or the session cannot be resumed
        for tool_call in calls:
            history.append({
                "role": "tool",
                "tool_call_id": tool_call.id,
                "content": f"Skipped: {reason}",
            })

    async def _notify(
        self,
        callback: ToolCallCallback,
        name: str,
        args: dict[str, Any],
        result: ToolResult,
        duration_ms: float,
    ) -> None:
        try:
            outcome = callback(name, args, result, duration_ms)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception:
            logger.exception("Tool call callback failed for %s", name)

    def _cost(self, response: Any) -> float:
        usage = getattr(response, "usage", None)
        prompt_tokens = getattr(usage, "prompt_tokens", 0)
        completion_tokens = getattr(usage, "completion_tokens", 0)
        if not isinstance(prompt_tokens, int) or not isinstance(completion_tokens, int):
            return 0.0
        return (
            prompt_tokens * self.config.input_price_per_mtok
            + completion_tokens * self.config.output_price_per_mtok
        ) / 1_000_000
