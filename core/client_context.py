"""
Client Context
Explicit client-side state: the current tunnel, the HTTP client bound to it,
and the stream cursors
"""
import asyncio
import json
import logging
import os
from typing import Awaitable, Callable, Dict, Optional

from config import ClientSettings
from core.connection import AuthenticatedConnection, SSHConnection
from core.stream_client import ProxyStreamClient
from core.tunnel import Tunnel
from models.session import StreamCursor
from utils.diagnostics import id_suffix

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Awaitable[AuthenticatedConnection]]


class CursorStore:
    """
    Last consumed event id per session

    Kept in memory, and mirrored to a JSON file when a path is given so a
    cursor survives the client process going away.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._cursors: Dict[str, int] = self._load()

    def _load(self) -> Dict[str, int]:
        if not self.path or not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable cursor file {self.path}: {e}")
            return {}
        return {str(k): int(v) for k, v in data.items()}

    def _write(self):
        if not self.path:
            return
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._cursors, f)
        os.replace(tmp_path, self.path)

    def get(self, session_id: str) -> StreamCursor:
        return StreamCursor(session_id=session_id, last_event_id=self._cursors.get(session_id, 0))

    def save(self, cursor: StreamCursor):
        self._cursors[cursor.session_id] = cursor.last_event_id
        self._write()

    def clear(self, session_id: str):
        if self._cursors.pop(session_id, None) is not None:
            self._write()


class ClientContext:
    """
    Owns the tunnel and the stream client of one client process

    The tunnel is opened on demand and reused while it is open. A failed or
    stopped tunnel is replaced by a new one over a fresh connection.
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        settings: Optional[ClientSettings] = None,
        cursor_store: Optional[CursorStore] = None,
    ):
        self.connection_factory = connection_factory
        self.settings = settings or ClientSettings()
        self.cursors = cursor_store or CursorStore(self.settings.cursor_path)
        self._tunnel: Optional[Tunnel] = None
        self._client: Optional[ProxyStreamClient] = None
        self._client_tunnel: Optional[Tunnel] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> "ClientContext":
        async def connect() -> AuthenticatedConnection:
            return await SSHConnection.from_settings(settings)

        return cls(connect, settings=settings)

    async def tunnel(self) -> Tunnel:
        """
        The open tunnel, opening a new one when there is none or it is dead

        Raises:
            ConnectFailed: The authenticated connection could not be made
        """
        async with self._lock:
            if self._tunnel is not None and self._tunnel.is_open:
                return self._tunnel

            if self._tunnel is not None:
                logger.info(f"Replacing {self._tunnel.state.value} tunnel")
                await self._discard_tunnel()

            connection = await self.connection_factory()
            self._tunnel = await Tunnel.open(
                connection,
                self.settings.remote_host,
                self.settings.remote_port,
            )
            return self._tunnel

    async def stream_client(self) -> ProxyStreamClient:
        """HTTP client bound to the current tunnel's local address"""
        tunnel = await self.tunnel()
        if self._client is None or self._client_tunnel is not tunnel:
            if self._client is not None:
                await self._client.close()
            host, port = tunnel.local_address
            self._client = ProxyStreamClient(
                f"http://{host}:{port}",
                idle_timeout=self.settings.stream_idle_timeout,
                connect_timeout=self.settings.connect_timeout,
            )
            self._client_tunnel = tunnel
        return self._client

    def save_cursor(self, cursor: StreamCursor):
        self.cursors.save(cursor)
        logger.debug(f"Cursor conv={id_suffix(cursor.session_id)} lastEventId={cursor.last_event_id}")

    async def _discard_tunnel(self):
        tunnel, self._tunnel = self._tunnel, None
        await tunnel.stop()
        tunnel.connection.close()

    async def close(self):
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._client_tunnel = None
        if self._tunnel is not None:
            await self._discard_tunnel()
