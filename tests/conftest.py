"""Common test fixtures and utilities."""
import asyncio
import socket
from dataclasses import replace
from pathlib import Path
from typing import AsyncIterator, List, Optional

import pytest
import pytest_asyncio

from netx.certs import CertificateAuthority
from netx.channel import MemoryChannel
from netx.config import ProtocolVersion, Role, SessionConfig
from netx.http1 import RequestHead, iter_request_body, read_request_head
from netx.transport import ChunkSink, ConnectionRegistry


def make_config(tmp_path: Path, role: Role = Role.PROXY, **overrides) -> SessionConfig:
    """A config with every timer shrunk so tests finish quickly."""
    shared = tmp_path / "shared"
    shared.mkdir(exist_ok=True)
    values = dict(
        role=role,
        shared_dir=shared,
        listen_port=0,
        data_dir=tmp_path / "data",
        proxy_pump_interval=0.005,
        relay_pump_interval=0.005,
        scan_interval=0.01,
        ack_poll_interval=0.01,
        ack_timeout=2.0,
        legacy_poll_interval=0.01,
        legacy_timeout=3.0,
        legacy_tunnel_idle=0.3,
        legacy_tunnel_max=2.0,
        sweep_interval=0.05,
        orphan_grace=15.0,
        connect_timeout=3.0,
    )
    values.update(overrides)
    return SessionConfig(**values)


class BufferSink(ChunkSink):
    """Records everything the transport hands it."""

    def __init__(self, fail_on: Optional[int] = None):
        self.chunks: List[bytes] = []
        self.close_calls = 0
        self.error: Optional[str] = None
        self.fail_on = fail_on

    @property
    def data(self) -> bytes:
        return b"".join(self.chunks)

    @property
    def closed(self) -> bool:
        return self.close_calls > 0

    def deliver(self, data: bytes) -> None:
        if self.fail_on is not None and len(self.chunks) == self.fail_on:
            raise ConnectionResetError("sink gone")
        self.chunks.append(data)

    def close(self, error: Optional[str]) -> None:
        self.close_calls += 1
        self.error = error

    async def wait_closed(self, timeout: float = 5.0) -> None:
        async def _poll() -> None:
            while not self.closed:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)


def unused_port() -> int:
    """A loopback port nothing listens on (connections are refused)."""
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def proxy_config(tmp_path: Path) -> SessionConfig:
    return make_config(tmp_path, Role.PROXY)


@pytest.fixture
def relay_config(proxy_config: SessionConfig) -> SessionConfig:
    return replace(proxy_config, role=Role.RELAY)


@pytest.fixture
def legacy_configs(proxy_config: SessionConfig, relay_config: SessionConfig):
    return (
        replace(proxy_config, protocol=ProtocolVersion.LEGACY),
        replace(relay_config, protocol=ProtocolVersion.LEGACY),
    )


@pytest.fixture
def memory_channel() -> MemoryChannel:
    return MemoryChannel()


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry()


async def _origin_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Tiny HTTP/1.1 origin.

    ``/chunked`` answers with a chunked body and no Content-Length; every
    other path echoes ``METHOD TARGET`` plus the request body.
    """
    try:
        head = await read_request_head(reader)
        if head is None:
            return
        body = b"".join([piece async for piece in iter_request_body(reader, head)])
        if head.target == "/chunked":
            writer.write(
                b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\nConnection: close\r\n\r\n"
                b"5\r\nhello\r\n6\r\n world\r\n0\r\n\r\n"
            )
        else:
            payload = f"{head.method} {head.target}\n".encode() + body
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nX-Origin: yes\r\n"
                + f"Content-Length: {len(payload)}\r\nConnection: close\r\n\r\n".encode()
                + payload
            )
        await writer.drain()
    finally:
        writer.close()


@pytest_asyncio.fixture
async def origin() -> AsyncIterator[int]:
    """Port of a local HTTP origin server."""
    server = await asyncio.start_server(_origin_handler, "127.0.0.1", 0)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()


async def _echo_handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Echo exactly 3000 bytes back, then close."""
    try:
        data = await reader.readexactly(3000)
        writer.write(data)
        await writer.drain()
    except asyncio.IncompleteReadError:
        pass
    finally:
        writer.close()


@pytest_asyncio.fixture
async def echo_server() -> AsyncIterator[int]:
    server = await asyncio.start_server(_echo_handler, "127.0.0.1", 0)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def origin_ca(tmp_path: Path):
    """A CA of its own for TLS origins, unrelated to the proxy's root."""
    ca = CertificateAuthority(tmp_path / "origin-ca")
    ca.ensure_root_ca()
    yield ca
    ca.close()


@pytest_asyncio.fixture
async def tls_origin(origin_ca: CertificateAuthority) -> AsyncIterator[int]:
    """The HTTP origin again, behind TLS for ``localhost``."""
    server = await asyncio.start_server(
        _origin_handler, "127.0.0.1", 0, ssl=origin_ca.server_context("localhost")
    )
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        await server.wait_closed()


class WebSocketOrigin:
    """Answers any request with ``101``, then echoes each read as ``echo:<data>``.

    ``heads`` keeps every handshake as the origin saw it.
    """

    def __init__(self) -> None:
        self.heads: List[RequestHead] = []
        self.port = 0

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            head = await read_request_head(reader)
            if head is None:
                return
            self.heads.append(head)
            writer.write(
                b"HTTP/1.1 101 Switching Protocols\r\nUpgrade: websocket\r\nConnection: Upgrade\r\n\r\n"
            )
            await writer.drain()
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(b"echo:" + data)
                await writer.drain()
        except OSError:
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def ws_origin() -> AsyncIterator[WebSocketOrigin]:
    ws = WebSocketOrigin()
    server = await asyncio.start_server(ws.handle, "127.0.0.1", 0)
    ws.port = server.sockets[0].getsockname()[1]
    try:
        yield ws
    finally:
        server.close()
        await server.wait_closed()


@pytest_asyncio.fixture
async def tls_ws_origin(origin_ca: CertificateAuthority) -> AsyncIterator[WebSocketOrigin]:
    ws = WebSocketOrigin()
    server = await asyncio.start_server(ws.handle, "127.0.0.1", 0, ssl=origin_ca.server_context("localhost"))
    ws.port = server.sockets[0].getsockname()[1]
    try:
        yield ws
    finally:
        server.close()
        await server.wait_closed()


async def _pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await src.read(65536)
            if not data:
                break
            dst.write(data)
            await dst.drain()
    except OSError:
        pass
    finally:
        dst.close()


class SocksForwarder:
    """Minimal SOCKS5 server: domain-name CONNECT, optional username/password.

    Records each ``(host, port)`` it was asked for in ``targets``.
    """

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None) -> None:
        self.username = username
        self.password = password
        self.targets: List[tuple] = []
        self.port = 0

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        upstream = await self._handshake(reader, writer)
        if upstream is None:
            writer.close()
            return
        up_reader, up_writer = upstream
        await asyncio.gather(_pipe(reader, up_writer), _pipe(up_reader, writer))

    async def _handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """The upstream streams, or ``None`` once the client was turned away."""
        try:
            _, count = await reader.readexactly(2)
            methods = await reader.readexactly(count)
            if self.username is not None:
                if 0x02 not in methods:
                    writer.write(b"\x05\xff")
                    return None
                writer.write(b"\x05\x02")
                _, ulen = await reader.readexactly(2)
                user = await reader.readexactly(ulen)
                plen = (await reader.readexactly(1))[0]
                password = await reader.readexactly(plen)
                if (user.decode(), password.decode()) != (self.username, self.password):
                    writer.write(b"\x01\x01")
                    return None
                writer.write(b"\x01\x00")
            else:
                writer.write(b"\x05\x00")

            _, cmd, _, atyp = await reader.readexactly(4)
            if cmd != 0x01 or atyp != 0x03:
                writer.write(b"\x05\x07\x00\x01" + bytes(6))
                return None
            length = (await reader.readexactly(1))[0]
            host = (await reader.readexactly(length)).decode()
            port = int.from_bytes(await reader.readexactly(2), "big")
            self.targets.append((host, port))
            try:
                upstream = await asyncio.open_connection(host, port)
            except OSError:
                writer.write(b"\x05\x05\x00\x01" + bytes(6))
                return None
            writer.write(b"\x05\x00\x00\x01" + bytes(6))
            await writer.drain()
            return upstream
        except (asyncio.IncompleteReadError, OSError):
            return None


@pytest_asyncio.fixture
async def socks_forwarder() -> AsyncIterator[SocksForwarder]:
    """A SOCKS5 forwarder on loopback that wants ``alice`` / ``pw``."""
    forwarder = SocksForwarder("alice", "pw")
    server = await asyncio.start_server(forwarder.handle, "127.0.0.1", 0)
    forwarder.port = server.sockets[0].getsockname()[1]
    try:
        yield forwarder
    finally:
        server.close()
        await server.wait_closed()
