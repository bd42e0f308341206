"""
Event Log
Durable, append-only, per-session event store (SQLite) with a bounded
in-memory tail for fast replay
"""
import asyncio
import json
import logging
from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

import aiosqlite

from core.errors import SessionNotFound, WriteConflict
from models.events import BaseEvent, EventType, make_event, utcnow
from models.session import Session
from utils.diagnostics import id_suffix

logger = logging.getLogger(__name__)


class EventLog:
    """
    Per-session ordered event store

    Appends for one session are serialized by that session's lock; appends
    for different sessions never wait on each other. Every event is written
    by a single autocommit INSERT before it becomes visible in the replay
    buffer, so readers only ever observe committed events.
    """

    def __init__(self, db_path: str = "proxy_events.db", buffer_size: int = 512):
        """
        Args:
            db_path: SQLite database file path
            buffer_size: Number of recent events kept in memory per session
        """
        self.db_path = db_path
        self.buffer_size = buffer_size
        self.connection: Optional[aiosqlite.Connection] = None
        self._locks: Dict[str, asyncio.Lock] = {}
        self._buffers: Dict[str, Deque[BaseEvent]] = {}
        self._last_ids: Dict[str, int] = {}
        self._init_lock = asyncio.Lock()

    async def init_db(self):
        """
        Open the database and create the tables
        """
        # Autocommit: each INSERT is its own durable transaction.
        connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        await connection.execute("PRAGMA journal_mode=WAL")
        await connection.execute("PRAGMA synchronous=FULL")

        await connection.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL,
                cwd TEXT,
                allowed_tools TEXT NOT NULL DEFAULT '[]',
                agent_session_id TEXT
            )
        """)
        await connection.execute("""
            CREATE TABLE IF NOT EXISTS events (
                session_id TEXT NOT NULL,
                event_id INTEGER NOT NULL,
                type TEXT NOT NULL,
                payload TEXT NOT NULL,
                received_at TEXT NOT NULL,
                PRIMARY KEY (session_id, event_id)
            )
        """)
        self.connection = connection

    async def _db(self) -> aiosqlite.Connection:
        if self.connection is None:
            async with self._init_lock:
                if self.connection is None:
                    await self.init_db()
        return self.connection

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _query_last_id(self, session_id: str) -> int:
        db = await self._db()
        cursor = await db.execute(
            "SELECT MAX(event_id) FROM events WHERE session_id = ?",
            (session_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row and row[0] is not None else 0

    async def append(self, session_id: str, event_type: EventType, payload: Dict[str, Any]) -> int:
        """
        Append one event and return its id

        Args:
            session_id: Owning session
            event_type: Kind of event
            payload: Opaque structured document

        Returns:
            The assigned event_id
        """
        event = await self.append_event(session_id, event_type, payload)
        return event.event_id

    async def append_event(self, session_id: str, event_type: EventType, payload: Dict[str, Any]) -> BaseEvent:
        """
        Append one event and return it once committed

        Once the INSERT is issued, the write and the id/buffer bookkeeping
        finish together even if the caller is cancelled, and the session
        lock is held until they have.

        Raises:
            WriteConflict: The id was already taken, which means appends for
                this session were not serialized
        """
        db = await self._db()
        async with self._lock_for(session_id):
            last_id = self._last_ids.get(session_id)
            if last_id is None:
                last_id = await self._query_last_id(session_id)

            event = make_event(event_type, last_id + 1, session_id, payload)
            commit = asyncio.ensure_future(self._commit(db, event, first=last_id == 0))
            try:
                return await asyncio.shield(commit)
            except asyncio.CancelledError:
                await asyncio.wait({commit})
                if not commit.cancelled() and commit.exception() is not None:
                    logger.error(f"Append failed after cancel conv={id_suffix(session_id)}: {commit.exception()}")
                raise

    async def _commit(self, db: aiosqlite.Connection, event: BaseEvent, first: bool) -> BaseEvent:
        session_id = event.session_id
        if first:
            await db.execute(
                "INSERT OR IGNORE INTO sessions (session_id, created_at) VALUES (?, ?)",
                (session_id, event.received_at.isoformat())
            )

        try:
            await db.execute(
                "INSERT INTO events (session_id, event_id, type, payload, received_at) VALUES (?, ?, ?, ?, ?)",
                (
                    session_id,
                    event.event_id,
                    event.type,
                    json.dumps(event.payload),
                    event.received_at.isoformat(),
                )
            )
        except aiosqlite.IntegrityError as e:
            # Next append re-reads the last id from storage
            self._last_ids.pop(session_id, None)
            raise WriteConflict(
                f"event_id {event.event_id} already exists for session {session_id}"
            ) from e

        self._last_ids[session_id] = event.event_id
        buffer = self._buffers.get(session_id)
        if buffer is None:
            buffer = self._buffers[session_id] = deque(maxlen=self.buffer_size)
        buffer.append(event)
        return event

    async def replay(self, session_id: str, since: int = 0) -> List[BaseEvent]:
        """
        Events with event_id > since, in increasing order

        Served from the in-memory buffer when since is inside its horizon,
        otherwise from durable storage.

        Raises:
            SessionNotFound: No event was ever appended for session_id
        """
        buffer = self._buffers.get(session_id)
        if buffer:
            snapshot = list(buffer)
            if since >= snapshot[0].event_id - 1:
                return [event for event in snapshot if event.event_id > since]

        if not await self.has_session(session_id):
            raise SessionNotFound(session_id)

        logger.info(f"Replay conv={id_suffix(session_id)} since={since} served from storage")
        db = await self._db()
        cursor = await db.execute(
            "SELECT event_id, type, payload, received_at FROM events "
            "WHERE session_id = ? AND event_id > ? ORDER BY event_id",
            (session_id, since)
        )
        rows = await cursor.fetchall()
        return [
            make_event(
                EventType(row[1]),
                row[0],
                session_id,
                json.loads(row[2]),
                datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]

    async def has_session(self, session_id: str) -> bool:
        if self._last_ids.get(session_id):
            return True
        db = await self._db()
        cursor = await db.execute(
            "SELECT 1 FROM events WHERE session_id = ? LIMIT 1",
            (session_id,)
        )
        return await cursor.fetchone() is not None

    async def last_event_id(self, session_id: str) -> int:
        """Highest committed event id for the session, 0 if it has none"""
        cached = self._last_ids.get(session_id)
        if cached is not None:
            return cached
        return await self._query_last_id(session_id)

    async def save_session(self, session: Session):
        """
        Insert or update session metadata
        """
        db = await self._db()
        await db.execute(
            """
            INSERT INTO sessions (session_id, created_at, cwd, allowed_tools, agent_session_id)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                cwd = excluded.cwd,
                allowed_tools = excluded.allowed_tools,
                agent_session_id = COALESCE(excluded.agent_session_id, sessions.agent_session_id)
            """,
            (
                session.session_id,
                session.created_at.isoformat(),
                session.cwd,
                json.dumps(session.allowed_tools),
                session.agent_session_id,
            )
        )

    async def get_session(self, session_id: str) -> Optional[Session]:
        db = await self._db()
        cursor = await db.execute(
            "SELECT session_id, created_at, cwd, allowed_tools, agent_session_id FROM sessions WHERE session_id = ?",
            (session_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return Session(
            session_id=row[0],
            created_at=datetime.fromisoformat(row[1]) if row[1] else utcnow(),
            cwd=row[2],
            allowed_tools=json.loads(row[3] or "[]"),
            agent_session_id=row[4],
        )

    async def close(self):
        """Close the database connection"""
        if self.connection:
            await self.connection.close()
            self.connection = None
