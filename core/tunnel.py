"""
Tunnel
Local listener that relays every accepted connection to one fixed remote
target over a single authenticated connection
"""
import asyncio
import logging
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from core.connection import AuthenticatedConnection
from core.errors import ConnectFailed, RelayFailed, TunnelClosed
from utils import diagnostics

logger = logging.getLogger(__name__)

RELAY_CHUNK_SIZE = 64 * 1024


class TunnelState(Enum):
    """
    Tunnel lifecycle
    """
    OPEN = "open"
    STOPPED = "stopped"
    FAILED = "failed"


class RelayChannel:
    """
    One accepted local connection paired with one forwarding channel

    Bytes are pumped in both directions until either side reaches EOF or
    fails; then both ends are closed. Other channels are not affected.
    """

    def __init__(self, channel_id: int, local_reader: asyncio.StreamReader, local_writer: asyncio.StreamWriter):
        self.channel_id = channel_id
        self.local_reader = local_reader
        self.local_writer = local_writer
        self.remote_writer: Optional[Any] = None
        self.bytes_up = 0
        self.bytes_down = 0

    async def run(self, connection: AuthenticatedConnection, remote_host: str, remote_port: int):
        try:
            try:
                remote_reader, self.remote_writer = await connection.open_channel(remote_host, remote_port)
            except ConnectFailed as e:
                logger.warning(f"[relay {self.channel_id}] {e}")
                return
            except OSError as e:
                logger.warning(f"[relay {self.channel_id}] {ConnectFailed(str(e))}")
                return

            diagnostics.log(f"relay {self.channel_id} open -> {remote_host}:{remote_port}")
            up = asyncio.create_task(self._pump(self.local_reader, self.remote_writer, "up"))
            down = asyncio.create_task(self._pump(remote_reader, self.local_writer, "down"))
            try:
                done, _ = await asyncio.wait({up, down}, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    exc = task.exception()
                    if exc is not None:
                        logger.info(f"[relay {self.channel_id}] {RelayFailed(str(exc))}")
            finally:
                for task in (up, down):
                    task.cancel()
                await asyncio.gather(up, down, return_exceptions=True)
        finally:
            self.close()
            diagnostics.log(f"relay {self.channel_id} closed up={self.bytes_up} down={self.bytes_down}")

    async def _pump(self, reader, writer, direction: str):
        while True:
            data = await reader.read(RELAY_CHUNK_SIZE)
            if not data:
                return
            writer.write(data)
            await writer.drain()
            if direction == "up":
                self.bytes_up += len(data)
            else:
                self.bytes_down += len(data)

    def close(self):
        self.local_writer.close()
        if self.remote_writer is not None:
            self.remote_writer.close()


class Tunnel:
    """
    Local port forwarder over one authenticated connection

    Use Tunnel.open() to bind an OS-assigned local port. stop() is
    idempotent. When the authenticated connection drops, every channel is
    closed and the tunnel turns FAILED; it never reconnects by itself.
    """

    def __init__(self, connection: AuthenticatedConnection, remote_host: str, remote_port: int):
        self.connection = connection
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.state = TunnelState.OPEN
        self.failure: Optional[TunnelClosed] = None
        self._server: Optional[asyncio.AbstractServer] = None
        self._local_address: Optional[Tuple[str, int]] = None
        self._channels: Dict[int, asyncio.Task] = {}
        self._next_channel_id = 0
        self._done = asyncio.Event()
        self._monitor_task: Optional[asyncio.Task] = None

    @classmethod
    async def open(
        cls,
        connection: AuthenticatedConnection,
        remote_host: str,
        remote_port: int,
        local_host: str = "127.0.0.1",
    ) -> "Tunnel":
        """
        Bind a local port and start accepting

        Args:
            connection: Authenticated connection to multiplex
            remote_host: Forwarding target host, as seen from the far side
            remote_port: Forwarding target port
            local_host: Local bind address

        Returns:
            An OPEN tunnel
        """
        tunnel = cls(connection, remote_host, remote_port)
        tunnel._server = await asyncio.start_server(tunnel._on_accept, host=local_host, port=0)
        tunnel._local_address = tunnel._server.sockets[0].getsockname()[:2]
        tunnel._monitor_task = asyncio.create_task(tunnel._monitor_connection())
        logger.info(f"Tunnel {tunnel._local_address[0]}:{tunnel._local_address[1]} -> {remote_host}:{remote_port}")
        return tunnel

    @property
    def local_address(self) -> Tuple[str, int]:
        return self._local_address

    @property
    def is_open(self) -> bool:
        return self.state is TunnelState.OPEN

    @property
    def active_channels(self) -> int:
        return len(self._channels)

    def _on_accept(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        if self.state is not TunnelState.OPEN:
            writer.close()
            return

        self._next_channel_id += 1
        channel_id = self._next_channel_id
        channel = RelayChannel(channel_id, reader, writer)
        task = asyncio.create_task(channel.run(self.connection, self.remote_host, self.remote_port))
        self._channels[channel_id] = task
        task.add_done_callback(lambda _: self._channels.pop(channel_id, None))

    async def _monitor_connection(self):
        await self.connection.wait_closed()
        if self.state is not TunnelState.OPEN:
            return
        self.state = TunnelState.FAILED
        self.failure = TunnelClosed("Authenticated connection dropped")
        logger.warning(f"Tunnel failed: {self.failure}, closing {len(self._channels)} channel(s)")
        try:
            await self._shutdown()
        finally:
            self._done.set()

    async def wait_failed(self) -> TunnelClosed:
        """
        Block until the tunnel stops serving

        Returns:
            The connection failure, or a TunnelClosed for a local stop()
        """
        await self._done.wait()
        return self.failure or TunnelClosed("Tunnel stopped")

    async def stop(self):
        """
        Stop accepting and force-close every live channel
        """
        if self.state is TunnelState.OPEN:
            self.state = TunnelState.STOPPED
            logger.info(f"Stopping tunnel with {len(self._channels)} channel(s)")

        monitor = self._monitor_task
        if monitor is not None and monitor is not asyncio.current_task() and not monitor.done():
            monitor.cancel()
            await asyncio.gather(monitor, return_exceptions=True)

        try:
            await self._shutdown()
        finally:
            self._done.set()

    async def _shutdown(self):
        server, self._server = self._server, None
        if server is not None:
            server.close()

        tasks = list(self._channels.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if server is not None:
            await server.wait_closed()
