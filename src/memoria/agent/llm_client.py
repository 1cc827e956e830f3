"""Single-shot completion client used by the gate and query reformulation."""

from typing import Any, Protocol

from groq import AsyncGroq


class LLMClient(Protocol):
    """Anything that turns a prompt into text."""

    async def complete(self, prompt: str, system: str | None = None) -> str: ...


class GroqLLMClient:
    """LLMClient implementation that wraps AsyncGroq.

    Example:
        from groq import AsyncGroq
        from memoria.agent.llm_client import GroqLLMClient

        llm = GroqLLMClient(AsyncGroq(api_key="..."), model="llama-3.1-8b-instant")
        answer = await llm.complete("Is this worth remembering?", system="...")
    """

    def __init__(
        self,
        client: AsyncGroq,
        model: str = "llama-3.1-8b-instant",
        max_tokens: int | None = None,
    ) -> None:
        """Initialize the Groq LLM client wrapper.

        Args:
            client: The AsyncGroq client instance to wrap.
            model: The model to use for completions.
            max_tokens: Optional completion cap.
        """
        self._client = client
        self._model = model
        self._max_tokens = max_tokens

    async def complete(self, prompt: str, system: str | None = None) -> str:
        """Complete a prompt and return the text response.

        Args:
            prompt: The user prompt to complete.
            system: Optional system prompt to set context.

        Returns:
            The LLM's text response.
        """
        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        request: dict[str, Any] = {"model": self._model, "messages": messages}
        if self._max_tokens:
            request["max_tokens"] = self._max_tokens
        response = await self._client.chat.completions.create(**request)
        return response.choices[0].message.content or ""

    @property
    def model(self) -> str:
        """Return the model being used."""
        return self._model
