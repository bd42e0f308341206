"""
Authenticated Connections
One authenticated remote connection that can open many independent
forwarding channels to a host:port on the far side
"""
import asyncio
import logging
from typing import Any, Optional, Protocol, Tuple

import asyncssh

from config import ClientSettings
from core.errors import ConnectFailed

logger = logging.getLogger(__name__)


class AuthenticatedConnection(Protocol):
    """
    What a tunnel needs from the connection it multiplexes

    open_channel returns a (reader, writer) pair with the asyncio stream
    interface: read(n), write(data), drain(), write_eof(), close().
    wait_closed returns once the connection itself has gone away.
    """

    async def open_channel(self, host: str, port: int) -> Tuple[Any, Any]:
        ...

    async def wait_closed(self):
        ...

    def close(self):
        ...


class SSHConnection:
    """
    SSH connection forwarding channels with direct-tcpip

    Credentials are supplied by the caller; host key checking follows the
    known_hosts argument passed through to asyncssh.
    """

    def __init__(self, conn: asyncssh.SSHClientConnection):
        self._conn = conn

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int = 22,
        username: Optional[str] = None,
        client_keys: Optional[list] = None,
        known_hosts: Any = (),
        connect_timeout: float = 10.0,
        **kwargs: Any,
    ) -> "SSHConnection":
        """
        Open and authenticate an SSH connection

        Args:
            host: SSH server host
            port: SSH server port
            username: Login user
            client_keys: Private key paths or key objects
            known_hosts: asyncssh known_hosts setting
            connect_timeout: Seconds allowed for connect and authentication

        Raises:
            ConnectFailed: Connection or authentication failed
        """
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    host,
                    port=port,
                    username=username,
                    client_keys=client_keys,
                    known_hosts=known_hosts,
                    **kwargs,
                ),
                timeout=connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectFailed(f"SSH connection to {host}:{port} timed out") from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectFailed(f"SSH connection to {host}:{port} failed: {e}") from e
        logger.info(f"SSH connection established to {host}:{port}")
        return cls(conn)

    @classmethod
    async def from_settings(cls, settings: ClientSettings) -> "SSHConnection":
        if not settings.ssh_host:
            raise ConnectFailed("SSH_HOST is not configured")
        client_keys = [settings.ssh_key_path] if settings.ssh_key_path else None
        return await cls.connect(
            settings.ssh_host,
            port=settings.ssh_port,
            username=settings.ssh_username,
            client_keys=client_keys,
            connect_timeout=settings.connect_timeout,
        )

    async def open_channel(self, host: str, port: int) -> Tuple[Any, Any]:
        try:
            return await self._conn.open_connection(host, port)
        except (OSError, asyncssh.Error) as e:
            raise ConnectFailed(f"direct-tcpip to {host}:{port} failed: {e}") from e

    async def wait_closed(self):
        await self._conn.wait_closed()

    def close(self):
        self._conn.close()
