"""In-memory registry of anonymous editor sessions with expiry sweeping."""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from core.config import settings
from core.errors import SessionExpiredError, SessionNotFoundError
from core.models import Message

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 16


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_id() -> str:
    """128-bit random id rendered as 32 hex characters."""
    return secrets.token_hex(SESSION_ID_BYTES)


@dataclass
class AnonymousSession:
    id: str
    created_at: datetime
    last_activity: datetime
    editor_state: str = ""
    conversation_history: list[Message] = field(default_factory=list)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class SessionRegistry:
    """Anonymous sessions keyed by id.

    A session is alive while less than `ttl` has passed since its last
    activity. Registry-wide operations take the registry lock; mutations of
    one session take that session's lock.
    """

    def __init__(
        self,
        ttl: timedelta | None = None,
        sweep_interval: float | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ttl = ttl if ttl is not None else timedelta(hours=settings.session_ttl_hours)
        self.sweep_interval = (
            sweep_interval if sweep_interval is not None else settings.session_sweep_interval_seconds
        )
        self._clock = clock
        self._sessions: dict[str, AnonymousSession] = {}
        self._lock = asyncio.Lock()
        self._sweeper: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def is_expired(self, session: AnonymousSession, now: datetime | None = None) -> bool:
        now = now or self._clock()
        return now - session.last_activity >= self.ttl

    async def create(self) -> AnonymousSession:
        now = self._clock()
        session = AnonymousSession(id=generate_session_id(), created_at=now, last_activity=now)
        async with self._lock:
            self._sessions[session.id] = session
        logger.info("Created anonymous session session_id=%s", session.id)
        return session

    async def get(self, session_id: str) -> AnonymousSession:
        """Return a live session.

        Raises:
            SessionNotFoundError: if no session has this id
            SessionExpiredError: if the session has expired
        """
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if self.is_expired(session):
            raise SessionExpiredError(session_id)
        return session

    async def update_session(
        self, session_id: str, history: list[Message], code: str
    ) -> AnonymousSession:
        """Replace history and code after a completed turn."""
        session = await self.get(session_id)
        async with session.lock:
            session.conversation_history = list(history)
            session.editor_state = code
            session.last_activity = self._clock()
        return session

    async def update_code(self, session_id: str, code: str) -> None:
        session = await self.get(session_id)
        async with session.lock:
            session.editor_state = code
            session.last_activity = self._clock()

    async def add_message(self, session_id: str, role: str, content: str) -> None:
        session = await self.get(session_id)
        async with session.lock:
            session.conversation_history.append(Message(role=role, content=content))
            session.last_activity = self._clock()

    async def touch(self, session_id: str) -> None:
        session = await self.get(session_id)
        async with session.lock:
            session.last_activity = self._clock()

    async def delete(self, session_id: str) -> None:
        async with self._lock:
            self._sessions.pop(session_id, None)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def sweep(self) -> int:
        """Remove every expired session. Returns the number removed."""
        now = self._clock()
        async with self._lock:
            expired = [sid for sid, s in self._sessions.items() if self.is_expired(s, now)]
            for session_id in expired:
                del self._sessions[session_id]
        if expired:
            logger.info("Swept %d expired anonymous sessions", len(expired))
        return len(expired)

    async def _sweep_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_interval)
            except asyncio.TimeoutError:
                await self.sweep()

    def start(self) -> None:
        """Start the background sweeper on the running loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._stop.clear()
        self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.debug("Session sweeper started (interval %.0fs)", self.sweep_interval)

    async def stop(self) -> None:
        """Signal the sweeper to exit and wait for it."""
        self._stop.set()
        if self._sweeper is not None:
            await self._sweeper
            self._sweeper = None
        logger.debug("Session sweeper stopped")
