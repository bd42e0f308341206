"""
Tunnel tests
Byte relay, channel independence, stop semantics and connection loss, using
a loopback echo server as the far side
"""
import asyncio

import pytest

from core.errors import ConnectFailed, TunnelClosed
from core.tunnel import Tunnel, TunnelState


class LoopbackConnection:
    """Authenticated connection stand-in that opens plain TCP channels"""

    def __init__(self):
        self.refuse = False
        self.opened = 0
        self._closed = asyncio.Event()

    async def open_channel(self, host, port):
        if self.refuse:
            raise ConnectFailed(f"channel to {host}:{port} refused")
        self.opened += 1
        return await asyncio.open_connection(host, port)

    async def wait_closed(self):
        await self._closed.wait()

    def close(self):
        self._closed.set()


async def _echo(reader, writer):
    try:
        while True:
            data = await reader.read(1024)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except ConnectionResetError:
        pass
    finally:
        writer.close()


@pytest.fixture
async def echo_port():
    server = await asyncio.start_server(_echo, "127.0.0.1", 0)
    yield server.sockets[0].getsockname()[1]
    server.close()


@pytest.fixture
async def tunnel(echo_port):
    connection = LoopbackConnection()
    opened = await Tunnel.open(connection, "127.0.0.1", echo_port)
    yield opened
    await opened.stop()


async def _connect(tunnel):
    return await asyncio.open_connection(*tunnel.local_address)


async def _read_eof(reader):
    try:
        return await asyncio.wait_for(reader.read(1024), timeout=2)
    except ConnectionResetError:
        return b""


async def _echo_round_trip(reader, writer, message):
    writer.write(message)
    await writer.drain()
    return await asyncio.wait_for(reader.readexactly(len(message)), timeout=2)


@pytest.mark.asyncio
async def test_bytes_are_relayed_both_ways(tunnel):
    host, port = tunnel.local_address
    assert host == "127.0.0.1"
    assert port > 0

    reader, writer = await _connect(tunnel)
    assert await _echo_round_trip(reader, writer, b"hello tunnel") == b"hello tunnel"
    writer.close()


@pytest.mark.asyncio
async def test_channels_are_independent(tunnel):
    first = await _connect(tunnel)
    second = await _connect(tunnel)

    assert await _echo_round_trip(*first, b"one") == b"one"
    first[1].close()

    assert await _echo_round_trip(*second, b"two") == b"two"
    assert tunnel.connection.opened == 2
    second[1].close()


@pytest.mark.asyncio
async def test_stop_closes_live_channels_and_refuses_new_ones(tunnel):
    clients = [await _connect(tunnel) for _ in range(3)]
    for n, (reader, writer) in enumerate(clients):
        assert await _echo_round_trip(reader, writer, f"ch{n}".encode()) == f"ch{n}".encode()
    assert tunnel.active_channels == 3

    await tunnel.stop()

    assert tunnel.state is TunnelState.STOPPED
    assert tunnel.active_channels == 0
    for reader, writer in clients:
        assert await _read_eof(reader) == b""
        writer.close()

    with pytest.raises(OSError):
        await _connect(tunnel)


@pytest.mark.asyncio
async def test_stop_is_idempotent(tunnel):
    await tunnel.stop()
    await tunnel.stop()
    assert tunnel.state is TunnelState.STOPPED


@pytest.mark.asyncio
async def test_failed_channel_open_keeps_tunnel_serving(tunnel):
    tunnel.connection.refuse = True
    reader, writer = await _connect(tunnel)
    assert await _read_eof(reader) == b""
    writer.close()
    assert tunnel.is_open

    tunnel.connection.refuse = False
    reader, writer = await _connect(tunnel)
    assert await _echo_round_trip(reader, writer, b"again") == b"again"
    writer.close()


@pytest.mark.asyncio
async def test_connection_drop_fails_tunnel(tunnel):
    reader, writer = await _connect(tunnel)
    assert await _echo_round_trip(reader, writer, b"ping") == b"ping"

    tunnel.connection.close()
    failure = await asyncio.wait_for(tunnel.wait_failed(), timeout=2)

    assert isinstance(failure, TunnelClosed)
    assert tunnel.state is TunnelState.FAILED
    assert not tunnel.is_open
    assert await _read_eof(reader) == b""
    writer.close()

    # stopping a failed tunnel leaves it failed
    await tunnel.stop()
    assert tunnel.state is TunnelState.FAILED


@pytest.mark.asyncio
async def test_stop_releases_failure_waiters(tunnel):
    """A local stop wakes anyone waiting for the tunnel to go down"""
    waiter = asyncio.create_task(tunnel.wait_failed())
    await asyncio.sleep(0)

    await tunnel.stop()
    failure = await asyncio.wait_for(waiter, timeout=2)

    assert isinstance(failure, TunnelClosed)
    assert tunnel.state is TunnelState.STOPPED
    # later waiters return at once
    assert isinstance(await asyncio.wait_for(tunnel.wait_failed(), timeout=1), TunnelClosed)


@pytest.mark.asyncio
async def test_remote_close_ends_only_that_channel():
    async def say_bye(reader, writer):
        writer.write(b"bye")
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(say_bye, "127.0.0.1", 0)
    bye_port = server.sockets[0].getsockname()[1]
    tunnel = await Tunnel.open(LoopbackConnection(), "127.0.0.1", bye_port)
    try:
        reader, writer = await _connect(tunnel)
        assert await asyncio.wait_for(reader.readexactly(3), timeout=2) == b"bye"
        assert await _read_eof(reader) == b""
        writer.close()
        assert tunnel.is_open
    finally:
        await tunnel.stop()
        server.close()
