"""Shared fixtures for memoria tests."""

import json
import zlib
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from memoria.errors import EmbeddingUnavailableError
from memoria.memory import EntryStore
from memoria.memory.store import tokenize

DIMENSIONS = 64


class FakeEmbedder:
    """Deterministic bag-of-words embedder standing in for the HTTP service."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[str] = []
        self.closed = False

    async def generate(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.fail:
            raise EmbeddingUnavailableError("provider down")
        vector = [0.0] * DIMENSIONS
        for token in tokenize(text):
            vector[zlib.crc32(token.encode()) % DIMENSIONS] += 1.0
        return vector

    async def aclose(self) -> None:
        self.closed = True


class ScriptedGroq:
    """AsyncGroq stand-in answering chat completions from a script.

    Each reply is a string (final answer), a list of (tool_name, args)
    pairs (tool calls), or an exception to raise.
    """

    def __init__(self, replies):
        self.replies = list(replies)
        self.requests: list[dict] = []
        self._ids = 0
        self.chat = MagicMock()
        self.chat.completions.create = AsyncMock(side_effect=self._create)

    async def _create(self, **kwargs):
        self.requests.append(kwargs)
        if not self.replies:
            raise AssertionError("no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return self._response(reply, None)
        calls = []
        for name, args in reply:
            self._ids += 1
            tc = MagicMock()
            tc.id = f"call-{self._ids}"
            tc.function = MagicMock()
            tc.function.name = name
            tc.function.arguments = json.dumps(args)
            calls.append(tc)
        return self._response(None, calls)

    @staticmethod
    def _response(content, tool_calls):
        message = MagicMock()
        message.content = content
        message.tool_calls = tool_calls
        choice = MagicMock()
        choice.message = message
        response = MagicMock()
        response.choices = [choice]
        response.usage = None
        return response


@pytest.fixture
def store(tmp_path: Path) -> EntryStore:
    """Create an EntryStore with a temporary database."""
    store = EntryStore(tmp_path / "memory.db")
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def failing_embedder() -> FakeEmbedder:
    return FakeEmbedder(fail=True)


@pytest.fixture
def scripted_groq():
    """Factory building a ScriptedGroq from a list of replies."""
    return ScriptedGroq
