"""Cheap pre-filter deciding whether an exchange is worth processing."""

import logging
from dataclasses import dataclass

from ..agent.llm_client import LLMClient
from ..agent.prompts import GATE_SYSTEM_PROMPT, build_gate_prompt
from ..errors import GateError
from ..memory.models import Exchange

logger = logging.getLogger(__name__)


@dataclass
class GateDecision:
    """Outcome of the gate for one exchange."""

    process: bool
    reason: str = ""
    error: str | None = None


class Gate:
    """Asks a small model whether an exchange carries lasting information.

    The gate fails open: when evaluation itself fails the exchange is
    processed. Only an explicit SKIP answer drops it.
    """

    def __init__(self, llm: LLMClient, context_exchanges: int = 3) -> None:
        self.llm = llm
        self.context_exchanges = context_exchanges

    async def _ask(self, exchange: Exchange, recent: list[Exchange]) -> str:
        context = recent[-self.context_exchanges:] if self.context_exchanges > 0 else []
        try:
            return await self.llm.complete(
                build_gate_prompt(exchange, context), system=GATE_SYSTEM_PROMPT
            )
        except Exception as e:
            raise GateError(str(e)) from e

    async def evaluate(self, exchange: Exchange, recent: list[Exchange]) -> GateDecision:
        """Decide whether to process an exchange.

        Args:
            exchange: Exchange to judge.
            recent: Prior exchanges of the same conversation, oldest first.

        Returns:
            GateDecision; process is True unless the model answered SKIP.
        """
        try:
            answer = await self._ask(exchange, recent)
        except GateError as e:
            logger.warning("Gate failed, processing anyway: %s", e)
            return GateDecision(process=True, reason="gate error", error=str(e))

        skip = "skip" in answer.lower()
        logger.info(
            "%s: [%s] %r -> %s",
            "SKIP" if skip else "PROCESS",
            exchange.conversation_name,
            exchange.user_message[:60],
            answer[:80],
        )
        return GateDecision(process=not skip, reason=answer.strip())
