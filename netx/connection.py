"""Socket-side plumbing shared by the proxy and the relay."""

from __future__ import annotations

import asyncio
import ssl
import time
from asyncio import StreamReader, StreamWriter
from typing import Optional

from .errors import StreamClosed
from .log import get_logger
from .transport import ChunkSink

logger = get_logger(__name__)


# ============================================================================
# Connection Wrapper
# ============================================================================


class ManagedConnection:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Tracks last-activity time and provides a safe ``close()`` that
    handles SSL edge-cases without spamming the asyncio exception handler.
    """

    __slots__ = ("reader", "writer", "last_activity", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter):
        self.reader = reader
        self.writer = writer
        self.last_activity = time.monotonic()
        self._closed = False

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    async def close(self, force: bool = False) -> None:
        """Close the transport, gracefully unless *force* is set.

        A TLS session the peer already tore down is aborted instead;
        closing it would only surface an ``SSLError`` on the loop.
        """
        if self._closed:
            return
        self._closed = True
        transport = self.writer.transport
        if transport is None or transport.is_closing():
            return
        if force or _tls_gone(transport):
            transport.abort()
            return
        self.writer.close()
        try:
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            transport.abort()
            logger.trace("Connection close timed out, aborted")
        except OSError as e:
            logger.debug("Connection close error: %s", e)

    def abort(self) -> None:
        """Drop the transport without flushing; safe to call from sync code."""
        self._closed = True
        transport = self.writer.transport
        if transport is not None and not transport.is_closing():
            transport.abort()

    def shutdown(self) -> None:
        """Flush what is queued, then close; safe to call from sync code."""
        if self.writer.transport is not None and not self.writer.is_closing():
            self.writer.close()

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()


def _tls_gone(transport: asyncio.BaseTransport) -> bool:
    ssl_obj = transport.get_extra_info("ssl_object")
    if ssl_obj is None:
        return False
    try:
        return ssl_obj.version() is None
    except (ValueError, OSError):
        return True


# ============================================================================
# TLS
# ============================================================================


def client_context(verify: bool = True) -> ssl.SSLContext:
    """Outgoing ``SSLContext`` toward an origin, offering only HTTP/1.1."""
    if verify:
        ctx = ssl.create_default_context()
    else:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
    ctx.set_alpn_protocols(["http/1.1"])
    return ctx


async def upgrade_to_tls(
    conn: ManagedConnection,
    ctx: ssl.SSLContext,
    *,
    server_side: bool,
    server_hostname: Optional[str] = None,
    timeout: float = 30.0,
) -> ManagedConnection:
    """Run a TLS handshake over an already-connected stream.

    Used for the browser side of a CONNECT (we are the server) and for
    origins reached through SOCKS5 (we are the client).  Returns a new
    :class:`ManagedConnection` over fresh reader/writer objects; the old
    one must not be used afterwards.
    """
    loop = asyncio.get_running_loop()
    transport = conn.writer.transport
    proto_obj = transport.get_protocol()

    async with asyncio.timeout(timeout):
        ssl_transport = await loop.start_tls(
            transport,
            proto_obj,
            ctx,
            server_side=server_side,
            server_hostname=None if server_side else server_hostname,
        )

    if ssl_transport is None:
        raise ConnectionError("TLS handshake failed")

    tls_reader = StreamReader()
    tls_proto = asyncio.StreamReaderProtocol(tls_reader)
    ssl_transport.set_protocol(tls_proto)
    tls_proto.connection_made(ssl_transport)
    tls_writer = StreamWriter(ssl_transport, tls_proto, tls_reader, loop)
    return ManagedConnection(tls_reader, tls_writer)


# ============================================================================
# Socket sink
# ============================================================================


class SocketSink(ChunkSink):
    """Delivers a connection's inbound chunks straight into a socket.

    The socket may be attached after the sink is registered: the relay
    acks before its egress connection exists, so chunks that arrive
    early are held in ``pending`` and written on :meth:`attach`.

    Writes are not drained here (the pump is synchronous); the asyncio
    transport buffers them.
    """

    def __init__(self, conn: Optional[ManagedConnection] = None):
        self.conn = conn
        self.pending = bytearray()
        self.error: Optional[str] = None
        self.done: asyncio.Future[Optional[str]] = asyncio.get_running_loop().create_future()

    @property
    def closed(self) -> bool:
        return self.done.done()

    def attach(self, conn: ManagedConnection) -> None:
        """Bind the socket and flush anything delivered before it existed.

        Raises :class:`StreamClosed` if the stream already went away, in
        which case *conn* is aborted.
        """
        self.conn = conn
        if self.closed:
            conn.abort()
            raise StreamClosed("", self.error or "Stream closed before the connection was established")
        if self.pending:
            conn.writer.write(bytes(self.pending))
            self.pending.clear()

    def write(self, data: bytes) -> None:
        if not data:
            return
        if self.conn is None:
            self.pending += data
            return
        if self.conn.closed:
            raise ConnectionError("Socket already closed")
        self.conn.writer.write(data)
        self.conn.touch()

    def deliver(self, data: bytes) -> None:
        self.write(data)

    def close(self, error: Optional[str]) -> None:
        self.error = error
        if not self.done.done():
            self.done.set_result(error)
        if self.conn is None:
            return
        if error:
            self.conn.abort()
        else:
            self.conn.shutdown()
