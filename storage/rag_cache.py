"""Per-session cache of retrieved docs and examples."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Protocol

from core.models import CachedRAGResult

logger = logging.getLogger(__name__)


class RAGCache(Protocol):
    async def get(self, session_id: str) -> CachedRAGResult | None: ...

    async def set(self, session_id: str, result: CachedRAGResult) -> None: ...

    async def clear(self, session_id: str) -> None: ...


class InMemoryRAGCache:
    """Process-local RAG cache keyed by session id.

    Operations on one session are serialized; values are copied on the way
    in and out so callers never share state with the cache.
    """

    def __init__(self):
        self._entries: dict[str, CachedRAGResult] = {}
        # a lock lives only while some operation holds a reference to it
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def get(self, session_id: str) -> CachedRAGResult | None:
        async with self._lock(session_id):
            entry = self._entries.get(session_id)
            return entry.model_copy(deep=True) if entry else None

    async def set(self, session_id: str, result: CachedRAGResult) -> None:
        async with self._lock(session_id):
            self._entries[session_id] = result.model_copy(deep=True)
        logger.debug(
            "Cached %d docs, %d examples for session_id=%s",
            len(result.docs),
            len(result.examples),
            session_id,
        )

    async def clear(self, session_id: str) -> None:
        async with self._lock(session_id):
            self._entries.pop(session_id, None)
        logger.debug("Cleared RAG cache for session_id=%s", session_id)

    def __len__(self) -> int:
        return len(self._entries)
