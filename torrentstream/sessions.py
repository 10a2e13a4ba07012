# torrentstream/sessions.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from .engine import TrafficStats
from .errors import EngineStartError, NotFoundError, StartFailure, TorrentFileNotFoundError
from .media import FileEntry

log = logging.getLogger("sessions")


class EngineHandle(Protocol):
    name: str

    def list_files(self) -> List[FileEntry]: ...
    def select_file(self, index: int) -> None: ...
    async def open_reader(self, index: int, start: int = 0, length: Optional[int] = None): ...
    def stats(self) -> TrafficStats: ...
    async def stop(self) -> None: ...


HandleFactory = Callable[[], Awaitable[EngineHandle]]


@dataclass
class Session:
    id: str
    handle: EngineHandle
    name: str
    files: List[FileEntry]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stats: TrafficStats = field(default_factory=TrafficStats)
    active_streams: int = 0

    def file(self, index: int) -> FileEntry:
        if index < 0 or index >= len(self.files):
            raise TorrentFileNotFoundError("File not found")
        return self.files[index]

    def refresh(self) -> TrafficStats:
        self.stats = self.handle.stats()
        return self.stats


class SessionRegistry:
    """
    info hash -> Session, at most one engine per info hash.

    Creation is single-flight: the first caller runs the factory while later
    callers for the same id await the same future. A failed creation is
    delivered to every waiter and the slot is cleared so a retry starts over.
    Reads are lock-free; insert/remove go through ``_lock``.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def get_or_create(self, session_id: str, factory: HandleFactory) -> Tuple[Session, bool]:
        async with self._lock:
            existing = self._sessions.get(session_id)
            if existing is not None:
                return existing, False
            fut = self._pending.get(session_id)
            owner = fut is None
            if owner:
                fut = asyncio.get_running_loop().create_future()
                self._pending[session_id] = fut

        if not owner:
            return await asyncio.shield(fut), False

        try:
            handle = await factory()
            session = Session(
                id=session_id,
                handle=handle,
                name=handle.name,
                files=handle.list_files(),
            )
        except BaseException as e:
            async with self._lock:
                self._pending.pop(session_id, None)
            if isinstance(e, Exception):
                fut.set_exception(e)
            else:
                fut.set_exception(EngineStartError(StartFailure.transport_failure, "Session creation was cancelled"))
            # the owner re-raises below; waiters (if any) read it from the future
            fut.exception()
            raise

        async with self._lock:
            self._pending.pop(session_id, None)
            self._sessions[session_id] = session
        fut.set_result(session)
        log.info("session %s ready (%d files)", session_id, len(session.files))
        return session, True

    def lookup(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError("Torrent not found. Add it first via POST /sessions")
        return session

    def list(self) -> List[Session]:
        return list(self._sessions.values())

    async def remove(self, session_id: str) -> bool:
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            try:
                await session.handle.stop()
            finally:
                self._sessions.pop(session_id, None)
        log.info("session %s removed", session_id)
        return True

    async def close(self) -> None:
        for session_id in list(self._sessions):
            try:
                await self.remove(session_id)
            except Exception as e:
                log.warning("failed to stop session %s on shutdown: %s", session_id, e)
