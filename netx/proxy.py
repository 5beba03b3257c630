"""
proxy.py — Intercepting proxy (near side).

Architecture
------------
The browser is pointed at an ``InterceptingProxy``.  Nothing it sends
goes to the network from here: every request is turned into an envelope
and handed to an :class:`Exchange`, which carries it across the shared
directory and brings the response back.

Key components:

* **InterceptingProxy** — owns the ``asyncio.Server`` and tracks live
  browser connections so ``stop()`` can tear them down.
* **_ProxyHandler** — one call per browser connection; parses requests,
  answers ``CONNECT`` and terminates TLS with a leaf from the
  :class:`~netx.certs.CertificateAuthority`, then serves the decrypted
  requests with the same keep-alive loop as plain HTTP.  Upgrade
  requests (WebSocket) become raw tunnels.
* **StreamingExchange** — v2: request bodies stream out as chunks, the
  response streams back (header chunk first, then body chunks).
* **LegacyExchange** — v1: bodies are buffered whole on both sides.
"""

from __future__ import annotations

import abc
import asyncio
import ssl
import traceback
from asyncio import StreamReader, StreamWriter
from typing import Any, AsyncIterator, Callable, Optional
from urllib.parse import urlsplit

from .certs import CertificateAuthority
from .config import SessionConfig
from .connection import ManagedConnection, SocketSink, upgrade_to_tls
from .envelope import EOF_REQ_BODY, HttpEnvelope, TunnelEnvelope, TunnelKind, decode_head
from .errors import HandshakeTimeout, SetupError, StreamClosed, TransportError
from .http1 import (
    LAST_CHUNK,
    RequestHead,
    content_length,
    encode_chunk,
    error_response,
    filter_headers,
    iter_request_body,
    read_request_head,
    response_has_body,
    serialize_request_head,
    serialize_response_head,
)
from .log import get_logger
from .transport import ChunkSink, LegacyTransport, StreamTransport

logger = get_logger(__name__)

ExceptionHandler = Callable[[asyncio.AbstractEventLoop, dict[str, Any]], object]


def _response_headers(headers, keep_alive: bool, length: Optional[int] = None, chunked: bool = False):
    out = filter_headers(headers, extra=("content-length",) if length is not None else ())
    if length is not None:
        out.append(("Content-Length", str(length)))
    if chunked:
        out.append(("Transfer-Encoding", "chunked"))
    out.append(("Connection", "keep-alive" if keep_alive else "close"))
    return out


# ============================================================================
# Exchanges
# ============================================================================


class Exchange(abc.ABC):
    """How one request (or tunnel) crosses the shared directory."""

    @abc.abstractmethod
    async def fetch(
        self, client: ManagedConnection, head: RequestHead, url: str, body: AsyncIterator[bytes]
    ) -> bool:
        """Forward one HTTP request and write the response to *client*.

        Returns whether *client* may serve another request.  Raises
        :class:`TransportError` if nothing was written to *client* yet.
        """

    @abc.abstractmethod
    async def tunnel(self, client: ManagedConnection, envelope: TunnelEnvelope, preamble: bytes) -> None:
        """Open a raw tunnel, send *preamble* first, then pump until either side closes."""


class HttpResponseSink(ChunkSink):
    """Writes a streamed response (header chunk, then body) to the browser.

    The browser connection stays open for the next request; a body with
    no declared length is re-framed with chunked encoding for that.
    """

    def __init__(self, client: ManagedConnection, method: str, keep_alive: bool):
        self.client = client
        self.method = method
        self.keep_alive = keep_alive
        self.head_sent = False
        self.chunked = False
        self.reusable = False
        self.error: Optional[str] = None
        self.done: asyncio.Future[Optional[str]] = asyncio.get_running_loop().create_future()

    def deliver(self, data: bytes) -> None:
        if self.client.closed:
            raise ConnectionError("Browser connection closed")
        if not self.head_sent:
            self._write_head(data)
            return
        if self.chunked:
            if data:
                self.client.writer.write(encode_chunk(data))
        else:
            self.client.writer.write(data)
        self.client.touch()

    def _write_head(self, data: bytes) -> None:
        status, headers = decode_head(data)
        has_body = response_has_body(self.method, status)
        length = content_length(headers)
        self.chunked = has_body and length < 0
        self.reusable = self.keep_alive
        self.client.writer.write(
            serialize_response_head(status, _response_headers(headers, self.reusable, chunked=self.chunked))
        )
        self.head_sent = True
        logger.trace("[RES] %d %s", status, self.method)

    def close(self, error: Optional[str]) -> None:
        self.error = error
        if error:
            self.reusable = False
        elif self.head_sent and self.chunked and not self.client.closed:
            self.client.writer.write(LAST_CHUNK)
        if not self.done.done():
            self.done.set_result(error)


class StreamingExchange(Exchange):
    """v2: everything flows as sequenced chunks through a :class:`StreamTransport`."""

    def __init__(self, transport: StreamTransport, config: SessionConfig):
        self.transport = transport
        self.config = config

    async def fetch(
        self, client: ManagedConnection, head: RequestHead, url: str, body: AsyncIterator[bytes]
    ) -> bool:
        envelope = HttpEnvelope(method=head.method, url=url, headers=tuple(filter_headers(head.headers)))
        sink = HttpResponseSink(client, head.method, head.keep_alive)

        try:
            cid = await self.transport.open_tunnel_stream(envelope, sink)
        except StreamClosed:
            # closed during setup; the sink has the reason
            cid = None

        if cid is not None:
            try:
                async for piece in body:
                    self.transport.send_chunk(cid, piece)
                self.transport.send_chunk(cid, EOF_REQ_BODY, flush_now=True)
                await sink.done
            except asyncio.CancelledError:
                self.transport.close_stream(cid, "Cancelled")
                raise
            except Exception as e:
                self.transport.close_stream(cid, f"Browser connection failed: {e}")
                return False

        if not sink.head_sent:
            raise StreamClosed(cid or "", sink.error or "Empty response")
        return sink.reusable and not client.closed

    async def tunnel(self, client: ManagedConnection, envelope: TunnelEnvelope, preamble: bytes) -> None:
        sink = SocketSink(client)
        try:
            cid = await self.transport.open_tunnel_stream(envelope, sink)
        except StreamClosed:
            return
        self.transport.send_chunk(cid, preamble, flush_now=True)
        logger.info("[TUNNEL] %s open (%s)", envelope.url, cid)

        error: Optional[str] = None
        # whatever followed the handshake goes out as its own chunk
        first = True
        try:
            while cid in self.transport.registry:
                data = await client.reader.read(self.config.read_buffer_size)
                if not data:
                    break
                client.touch()
                self.transport.send_chunk(cid, data, flush_now=first)
                first = False
        except asyncio.CancelledError:
            self.transport.close_stream(cid, "Cancelled")
            raise
        except (ConnectionError, OSError) as e:
            error = f"Browser connection failed: {e}"
        self.transport.close_stream(cid, error)


class LegacyExchange(Exchange):
    """v1: one request file, one response file; bodies are buffered whole."""

    def __init__(self, transport: LegacyTransport, config: SessionConfig):
        self.transport = transport
        self.config = config

    async def fetch(
        self, client: ManagedConnection, head: RequestHead, url: str, body: AsyncIterator[bytes]
    ) -> bool:
        data = b"".join([piece async for piece in body])
        envelope = HttpEnvelope(
            method=head.method,
            url=url,
            headers=tuple(filter_headers(head.headers)),
            body=data or None,
        )
        res = await self.transport.request(envelope)
        if res.error:
            client.writer.write(error_response(res.status if res.status >= 400 else 502, res.error))
            return False

        has_body = response_has_body(head.method, res.status)
        if has_body:
            headers = _response_headers(res.headers, head.keep_alive, length=len(res.body))
        else:
            headers = _response_headers(res.headers, head.keep_alive)
        client.writer.write(serialize_response_head(res.status, headers))
        if has_body and res.body:
            client.writer.write(res.body)
        await client.writer.drain()
        return head.keep_alive

    async def tunnel(self, client: ManagedConnection, envelope: TunnelEnvelope, preamble: bytes) -> None:
        res = await self.transport.request(TunnelEnvelope(envelope.kind, envelope.host, envelope.port, body=preamble))
        if res.error:
            logger.warning("[TUNNEL] %s failed: %s", envelope.url, res.error)
            return
        if res.body:
            client.writer.write(res.body)
            await client.writer.drain()


# ============================================================================
# Per-connection handler
# ============================================================================


class _ProxyHandler:
    """Accepts individual browser connections and dispatches them.

    Plain HTTP requests are forwarded through the exchange.  CONNECT
    tunnels are intercepted with a MITM TLS handshake and the decrypted
    requests go through the same path.
    """

    __slots__ = ("_proxy", "exchange", "ca", "config")

    def __init__(
        self, proxy: InterceptingProxy, exchange: Exchange, ca: CertificateAuthority, config: SessionConfig
    ):
        self._proxy = proxy
        self.exchange = exchange
        self.ca = ca
        self.config = config

    async def handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each new browser connection (called by ``asyncio.Server``)."""
        client = ManagedConnection(reader, writer)
        self._proxy._track_connection(client)
        task = asyncio.current_task()
        if task is not None:
            self._proxy._handler_tasks.add(task)

        try:
            head = await read_request_head(reader)
            if head is None:
                return
            if head.method == "CONNECT":
                await self._handle_connect(client, head)
            else:
                await self._serve(client, head, authority=None)
        except (ConnectionError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            logger.debug("Client connection ended: %r", e)
        except Exception:
            logger.debug("Client handler error: %s", traceback.format_exc())
        finally:
            self._proxy._untrack_connection(client)
            if task is not None:
                self._proxy._handler_tasks.discard(task)
            await client.close()

    # -- CONNECT -----------------------------------------------------------

    async def _handle_connect(self, client: ManagedConnection, head: RequestHead) -> None:
        """Answer CONNECT, terminate TLS with a leaf for the host, serve requests."""
        host, port = _split_authority(head.target, 443)
        if not host:
            client.writer.write(error_response(400, "Bad CONNECT target"))
            return

        client.writer.write(b"HTTP/1.1 200 Connection Established\r\n\r\n")
        await client.writer.drain()
        # the ClientHello must stay in the kernel buffer until start_tls
        client.writer.transport.pause_reading()

        ctx = self.ca.server_context(host)
        tls_client = await upgrade_to_tls(client, ctx, server_side=True, timeout=self.config.connect_timeout)
        self._proxy._track_connection(tls_client)
        logger.debug("[CONNECT] %s:%d intercepted", host, port)

        try:
            head = await read_request_head(tls_client.reader)
            await self._serve(tls_client, head, authority=(host, port))
        finally:
            self._proxy._untrack_connection(tls_client)
            await tls_client.close()

    # -- requests ----------------------------------------------------------

    async def _serve(
        self, client: ManagedConnection, head: Optional[RequestHead], authority: Optional[tuple[str, int]]
    ) -> None:
        """Keep-alive loop: one request after another on the same connection."""
        while head is not None:
            if not await self._dispatch(client, head, authority):
                return
            head = await read_request_head(client.reader)

    async def _dispatch(
        self, client: ManagedConnection, head: RequestHead, authority: Optional[tuple[str, int]]
    ) -> bool:
        target = _resolve_target(head, authority)
        if target is None:
            client.writer.write(error_response(400, f"Cannot proxy {head.target}"))
            return False
        scheme, host, port, path = target

        if head.is_upgrade:
            await self._handle_upgrade(client, head, scheme, host, port, path)
            return False

        default_port = 443 if scheme == "https" else 80
        netloc = host if port == default_port else f"{host}:{port}"
        url = f"{scheme}://{netloc}{path}"
        logger.info("[REQ] %s %s", head.method, url)

        body = iter_request_body(client.reader, head, self.config.read_buffer_size)
        try:
            reusable = await self.exchange.fetch(client, head, url, body)
        except HandshakeTimeout as e:
            logger.warning("[REQ] %s %s timed out: %s", head.method, url, e)
            self._try_error(client, error_response(504, str(e)))
            return False
        except TransportError as e:
            logger.warning("[REQ] %s %s failed: %s", head.method, url, e)
            self._try_error(client, error_response(502, str(e)))
            return False

        await client.writer.drain()
        return reusable

    async def _handle_upgrade(
        self, client: ManagedConnection, head: RequestHead, scheme: str, host: str, port: int, path: str
    ) -> None:
        """Carry a protocol upgrade (WebSocket) as a raw tunnel.

        The handshake is replayed to the origin with a relative request
        target and Host pointing at the bare hostname.  An Origin header,
        when the client sent one, is rewritten the same way so origin
        checks on the far side accept it.
        """
        kind = TunnelKind.TLS if scheme == "https" else TunnelKind.TCP
        headers = [("Host", host)]
        for k, v in head.headers:
            name = k.lower()
            if name in ("host", "proxy-connection", "proxy-authorization"):
                continue
            if name == "origin":
                v = f"{scheme}://{host}"
            headers.append((k, v))
        preamble = serialize_request_head(head.method, path, head.version, headers)

        envelope = TunnelEnvelope(kind=kind, host=host, port=port)
        logger.info("[WS] %s%s", envelope.url, path)
        try:
            await self.exchange.tunnel(client, envelope, preamble)
        except TransportError as e:
            logger.warning("[WS] %s failed: %s", envelope.url, e)

    # -- helpers -----------------------------------------------------------

    @staticmethod
    def _try_error(client: ManagedConnection, msg: bytes) -> None:
        """Best-effort error response; swallows exceptions."""
        try:
            if not client.closed:
                client.writer.write(msg)
        except Exception:
            pass


def _split_authority(authority: str, default_port: int) -> tuple[str, int]:
    if authority.startswith("["):
        host, _, rest = authority[1:].partition("]")
        port_str = rest.lstrip(":")
    elif authority.count(":") == 1:
        host, port_str = authority.split(":")
    else:
        host, port_str = authority, ""
    try:
        port = int(port_str) if port_str else default_port
    except ValueError:
        return "", 0
    return host, port


def _resolve_target(
    head: RequestHead, authority: Optional[tuple[str, int]]
) -> Optional[tuple[str, str, int, str]]:
    """Work out ``(scheme, host, port, path)`` for a request.

    Inside a MITM'd CONNECT the scheme is https and the host comes from
    the CONNECT line.  Otherwise an absolute ``http://`` URL is expected,
    with the Host header as a fallback for origin-form targets.
    """
    if authority is not None:
        host, port = authority
        parsed = urlsplit(head.target)
        if parsed.scheme:
            path = parsed.path or "/"
            if parsed.query:
                path = f"{path}?{parsed.query}"
        else:
            path = head.target or "/"
        return "https", host, port, path

    parsed = urlsplit(head.target)
    if parsed.scheme:
        if parsed.scheme.lower() not in ("http", "ws"):
            return None
        host = parsed.hostname or ""
        try:
            port = parsed.port or 80
        except ValueError:
            return None
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
    else:
        host, port = _split_authority(head.get("host") or "", 80)
        path = head.target or "/"
    if not host:
        return None
    return "http", host, port, path


# ============================================================================
# InterceptingProxy
# ============================================================================


def _ignore_tls_teardown(previous: Optional[ExceptionHandler]) -> ExceptionHandler:
    """Loop exception handler that drops TLS teardown noise.

    Browsers reset MITM'd connections before close_notify all the time.
    Everything else goes to *previous* or the loop default.
    """

    def handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        message = str(context.get("message", ""))
        if isinstance(exc, ssl.SSLError) or "ssl" in message.lower():
            logger.debug("Ignoring TLS teardown error: %s", exc or message)
            return
        if previous is not None:
            previous(loop, context)
        else:
            loop.default_exception_handler(context)

    return handler


class InterceptingProxy:
    """The near-side listener a browser uses as its HTTP/HTTPS proxy.

    Usage::

        proxy = InterceptingProxy(config, exchange, ca)
        port = await proxy.start()
        # configure browser: --proxy-server=127.0.0.1:{port}
        await proxy.stop()
    """

    def __init__(self, config: SessionConfig, exchange: Exchange, ca: CertificateAuthority):
        self.config = config
        self.host = config.listen_host
        self.port = config.listen_port
        self.exchange = exchange
        self.ca = ca
        self._handler: Optional[_ProxyHandler] = None
        self._server: Optional[asyncio.Server] = None
        self._active_connections: set[ManagedConnection] = set()
        self._handler_tasks: set[asyncio.Task] = set()
        self._previous_exception_handler: Optional[ExceptionHandler] = None
        self._exception_handler: Optional[ExceptionHandler] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number.

        Raises :class:`SetupError` if the address cannot be bound.
        """
        self._handler = _ProxyHandler(self, self.exchange, self.ca, self.config)
        try:
            self._server = await asyncio.start_server(
                self._handler.handle_client,
                self.host,
                self.port,
                reuse_address=True,
            )
        except OSError as e:
            raise SetupError(f"Cannot listen on {self.host}:{self.port}: {e}") from e

        loop = asyncio.get_running_loop()
        self._previous_exception_handler = loop.get_exception_handler()
        self._exception_handler = _ignore_tls_teardown(self._previous_exception_handler)
        loop.set_exception_handler(self._exception_handler)

        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info("Proxy listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        """Stop accepting new connections and close all active ones."""
        if self._server:
            if self._server.is_serving():
                self._server.close()
            await self.close_all_handlers()
            # handlers may be parked in an Ack or response wait
            tasks = list(self._handler_tasks)
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            await self._server.wait_closed()
            self._server = None
        loop = asyncio.get_running_loop()
        if self._exception_handler is not None and loop.get_exception_handler() is self._exception_handler:
            loop.set_exception_handler(self._previous_exception_handler)
        self._exception_handler = None
        self._handler = None
        logger.info("Proxy stopped (was :%d)", self.port)

    # -- connection tracking -----------------------------------------------

    async def close_all_handlers(self) -> None:
        """Forcefully close every tracked browser connection."""
        connections = list(self._active_connections)
        self._active_connections.clear()
        if not connections:
            return
        logger.info("Force-closing %d active connection(s)", len(connections))
        try:
            await asyncio.wait_for(
                asyncio.gather(*(conn.close(force=True) for conn in connections), return_exceptions=True),
                timeout=5.0,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out closing connections, %d may linger",
                sum(1 for c in connections if not c.closed),
            )

    def _track_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.add(conn)

    def _untrack_connection(self, conn: ManagedConnection) -> None:
        self._active_connections.discard(conn)
