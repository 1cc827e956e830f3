"""Short-lived, per-conversation urgent context files."""

import asyncio
import hashlib
import logging
import os
import re
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from .rag import RagResult

logger = logging.getLogger(__name__)

FILE_PREFIX = "urgent-context"
SEPARATOR = "\n\n---\n\n"
_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]+")


class UrgentContextInjector:
    """Writes important and critical retrieval findings for the next turn.

    Writes to the same conversation's file are serialized with a
    per-conversation lock that exists only while a write or consume uses
    it. Content accumulates with a separator until the file is consumed or
    swept after the TTL.
    """

    def __init__(self, directory: Path, ttl: float = 60.0, sweep_interval: float = 30.0) -> None:
        self.directory = directory
        self.ttl = ttl
        self.sweep_interval = sweep_interval
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._sweep_task: asyncio.Task | None = None

    def path_for(self, conversation_id: str | None) -> Path:
        """File path for a conversation; one shared file when there is no id.

        Ids that need sanitizing get a short hash suffix, so "a/b" and "a_b"
        never share a file.
        """
        if not conversation_id:
            return self.directory / f"{FILE_PREFIX}.md"
        safe = _UNSAFE.sub("_", conversation_id).strip("_") or "default"
        if safe != conversation_id:
            digest = hashlib.sha1(conversation_id.encode("utf-8")).hexdigest()[:8]
            safe = f"{safe}-{digest}"
        return self.directory / f"{FILE_PREFIX}-{safe}.md"

    @asynccontextmanager
    async def _locked(self, conversation_id: str | None) -> AsyncIterator[None]:
        key = conversation_id or ""
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def write(self, result: RagResult) -> Path:
        """Append a finding to its conversation's file.

        Returns:
            The path written.
        """
        conversation_id = result.exchange.conversation_id
        path = self.path_for(conversation_id)
        header = (
            "# CRITICAL Memory Update"
            if result.priority == "critical"
            else "# Urgent Memory Update"
        )
        block = f"{header}\n{result.reasoning}\n\n{result.pre_context}\n"

        async with self._locked(conversation_id):
            self.directory.mkdir(parents=True, exist_ok=True)
            try:
                existing = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                existing = ""
            content = f"{existing}{SEPARATOR}{block}" if existing else block
            tmp_path = path.with_name(path.name + ".tmp")
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, path)

        logger.info(
            "Urgent context written (%s): %d entries -> %s",
            result.priority,
            len(result.relevant_keys),
            path.name,
        )
        return path

    async def consume(self, conversation_id: str | None) -> str | None:
        """Return and delete the pending urgent context of a conversation."""
        path = self.path_for(conversation_id)
        async with self._locked(conversation_id):
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            path.unlink(missing_ok=True)
        return content

    def sweep(self, now: float | None = None) -> int:
        """Delete urgent files older than the TTL.

        Returns:
            Number of files deleted.
        """
        if not self.directory.exists():
            return 0
        now = now or time.time()
        removed = 0
        for path in self.directory.glob(f"{FILE_PREFIX}*.md"):
            try:
                if now - path.stat().st_mtime > self.ttl:
                    path.unlink()
                    removed += 1
                    logger.debug("Cleaned up stale %s", path.name)
            except FileNotFoundError:
                continue
        return removed

    def clear_all(self) -> None:
        """Delete every urgent file, expired or not."""
        if not self.directory.exists():
            return
        for path in self.directory.glob(f"{FILE_PREFIX}*"):
            path.unlink(missing_ok=True)

    def start(self) -> None:
        """Start the background sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except OSError as e:
                logger.warning("Urgent context sweep failed: %s", e)
