"""Embedding generation via an OpenAI-compatible /embeddings endpoint."""

import asyncio
import logging

import httpx

from ..errors import EmbeddingUnavailableError
from .store import EntryStore

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "text-embedding-3-small"

# Rate limiting and server-side failures are worth retrying
RETRYABLE_STATUS = {408, 409, 429}


class EmbeddingService:
    """Async client for the embeddings API with timeout and retry.

    Transient failures (timeouts, transport errors, 429 and 5xx responses)
    are retried with exponential backoff up to max_attempts. Other client
    errors fail immediately. Every failure surfaces as
    EmbeddingUnavailableError so callers can fall back to keyword search.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
        )

    async def generate(self, text: str) -> list[float]:
        """Generate an embedding vector for text.

        Args:
            text: Text to embed.

        Returns:
            The embedding as a list of floats.

        Raises:
            EmbeddingUnavailableError: If no API key is configured, on a
                non-retryable error, or once retries are exhausted.
        """
        if not self.api_key:
            raise EmbeddingUnavailableError("No embedding API key configured")

        last_error = ""
        for attempt in range(self.max_attempts):
            if attempt:
                delay = self.backoff_base * (2 ** (attempt - 1))
                logger.debug("Retrying embedding in %.2fs (attempt %d)", delay, attempt + 1)
                await asyncio.sleep(delay)
            try:
                response = await self._client.post(
                    "/embeddings",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"model": self.model, "input": text},
                )
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
                continue
            except httpx.TransportError as e:
                last_error = f"transport error: {e}"
                continue

            status = response.status_code
            if status in RETRYABLE_STATUS or status >= 500:
                last_error = f"HTTP {status}"
                continue
            if status >= 400:
                raise EmbeddingUnavailableError(
                    f"Embedding request failed ({status}): {response.text[:200]}"
                )
            try:
                return [float(x) for x in response.json()["data"][0]["embedding"]]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise EmbeddingUnavailableError(f"Malformed embedding response: {e}") from e

        logger.warning(
            "Embedding failed after %d attempts: %s", self.max_attempts, last_error
        )
        raise EmbeddingUnavailableError(
            f"Embedding failed after {self.max_attempts} attempts: {last_error}"
        )

    async def aclose(self) -> None:
        """Close the underlying HTTP client if this service created it."""
        if self._owns_client:
            await self._client.aclose()


async def embed_entry(store: EntryStore, embedder: EmbeddingService | None, key: str) -> bool:
    """Embed one entry now, leaving it dirty if the provider is unavailable.

    Returns:
        True if the entry's embedding is up to date afterwards.
    """
    if embedder is None:
        return False
    text = store.build_embedding_text(key)
    try:
        vector = await embedder.generate(text)
    except EmbeddingUnavailableError as e:
        logger.warning("Embedding for %s deferred: %s", key, e)
        return False
    store.update_embedding(key, vector, text)
    return True


async def refresh_dirty_embeddings(store: EntryStore, embedder: EmbeddingService | None) -> int:
    """Regenerate embeddings of every dirty entry.

    Entries whose rebuilt embedding text matches the stored one keep their
    vector and are simply marked clean. Stops at the first provider failure,
    leaving the remaining entries dirty for the next run.

    Returns:
        Number of entries re-embedded.
    """
    if embedder is None:
        return 0
    refreshed = 0
    for key in store.dirty_keys():
        entry = store.get(key)
        if entry is None:
            continue
        text = store.build_embedding_text(key)
        if entry.embedding is not None and entry.embedding_text == text:
            store.mark_embedding_clean(key)
            continue
        try:
            vector = await embedder.generate(text)
        except EmbeddingUnavailableError as e:
            logger.warning("Embedding refresh stopped at %s: %s", key, e)
            break
        store.update_embedding(key, vector, text)
        refreshed += 1
    if refreshed:
        logger.info("Refreshed %d embeddings", refreshed)
    return refreshed
