"""
Progress and Periodic Saves

- ProgressRegistry: per-(provider, type) {total, remaining} counters that
  observers (the jobs API) can sample while a pipeline runs.
- PeriodicSaver: accumulates documents and flushes them on a wall-clock
  cadence and once more on exit.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..core.logging import get_logger

logger = get_logger(__name__)


class ProgressRegistry:
    def __init__(self):
        self._entries: Dict[str, Dict[str, int]] = {}

    @staticmethod
    def key(provider_id: str, media_type: str) -> str:
        return f"{provider_id}:{media_type}"

    def register(self, key: str, total: int):
        self._entries[key] = {"total": total, "remaining": total}

    def advance(self, key: str, count: int = 1):
        entry = self._entries.get(key)
        if entry is not None:
            entry["remaining"] = max(0, entry["remaining"] - count)

    def unregister(self, key: str):
        self._entries.pop(key, None)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        return {k: dict(v) for k, v in self._entries.items()}


class PeriodicSaver:
    """
    Buffered writer flushed every ``interval`` seconds and on exit.

    Usage:
        async with PeriodicSaver(write_docs, 30, name="provider_titles") as saver:
            saver.add(doc)

    A failed background flush puts its documents back in the buffer; the
    final flush propagates errors.
    """

    def __init__(
        self,
        write: Callable[[List[Dict[str, Any]]], Awaitable[Any]],
        interval: float,
        name: str = "saver",
    ):
        self._write = write
        self.interval = interval
        self.name = name
        self._buffer: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.saved = 0

    def add(self, doc: Dict[str, Any]):
        self._buffer.append(doc)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def flush(self) -> int:
        async with self._lock:
            if not self._buffer:
                return 0
            docs, self._buffer = self._buffer, []
            try:
                await self._write(docs)
            except Exception:
                self._buffer = docs + self._buffer
                raise
            self.saved += len(docs)
            logger.debug("periodic_save_flushed", saver=self.name, count=len(docs))
            return len(docs)

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error("periodic_save_failed", saver=self.name, error=str(e))

    async def __aenter__(self) -> "PeriodicSaver":
        self._task = asyncio.create_task(self._loop())
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if exc_type is asyncio.CancelledError:
            # Keep what was already accumulated before unwinding
            await asyncio.shield(self.flush())
            return False
        await self.flush()
        return False
