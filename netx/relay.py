"""
relay.py — Relay (far side).

Architecture
------------
* **Relay** — scans the shared directory for ``req_<id>.json`` files it
  does not track yet, decodes and consumes each one, and hands the
  envelope to a service.  Shared by both protocol versions.
* **StreamingService** — v2.  Registers the id and writes the Ack at
  once (before egress is known to work), then opens the real connection
  and pumps bytes between it and the :class:`~netx.transport.StreamTransport`.
* **LegacyService** — v1.  Performs the whole exchange and writes one
  ``res_<id>.json``.
* **Egress** — outbound TCP (direct or SOCKS5), optionally upgraded to TLS.
"""

from __future__ import annotations

import abc
import asyncio
import traceback
from typing import Optional
from urllib.parse import urlsplit

from .channel import REQUEST_ENVELOPE_RE, Channel, response_name
from .config import SessionConfig
from .connection import ManagedConnection, SocketSink, client_context, upgrade_to_tls
from .envelope import (
    EOF_REQ_BODY,
    HttpEnvelope,
    RequestEnvelope,
    ResponseEnvelope,
    TunnelEnvelope,
    TunnelKind,
    decode_request,
    encode_head,
    encode_response,
)
from .errors import EgressError, MalformedEnvelope, RegistrationError
from .http1 import (
    BODYLESS_METHODS,
    LAST_CHUNK,
    content_length,
    encode_chunk,
    filter_headers,
    iter_response_body,
    read_response_head,
    serialize_request_head,
)
from .log import get_logger
from .socks import Socks5Client
from .transport import ConnectionRegistry, StreamTransport

logger = get_logger(__name__)


def describe(exc: BaseException) -> str:
    """Error text carried in end markers and legacy responses."""
    if isinstance(exc, EgressError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__


# ============================================================================
# Egress
# ============================================================================


class Egress:
    """Opens outbound connections, directly or through the SOCKS5 upstream."""

    def __init__(self, config: SessionConfig):
        self.config = config
        self.socks_proxy = config.socks_proxy
        self._tls_ctx = client_context(verify=config.verify_ssl)

    async def connect(self, host: str, port: int, tls: bool = False) -> ManagedConnection:
        """Connect to ``host:port``; with *tls*, handshake as a client on top.

        Raises
        ------
        EgressError
            Connection refused, unreachable, timed out, SOCKS5 failure or
            TLS handshake failure.
        """
        timeout = self.config.connect_timeout
        try:
            if self.socks_proxy:
                reader, writer = await Socks5Client.connect(self.socks_proxy, host, port, timeout)
            else:
                reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError:
            raise EgressError(f"Connection to {host}:{port} timed out") from None
        except OSError as e:
            raise EgressError(f"Connection to {host}:{port} failed: {e.strerror or e}") from e

        conn = ManagedConnection(reader, writer)
        if not tls:
            return conn
        try:
            return await upgrade_to_tls(
                conn, self._tls_ctx, server_side=False, server_hostname=host, timeout=timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            await conn.close(force=True)
            raise EgressError(f"TLS handshake with {host}:{port} failed: {e}") from e


def _request_target(url: str) -> tuple[bool, str, int, str, str]:
    """``(tls, host, port, netloc, path)`` for an absolute http(s) URL."""
    parsed = urlsplit(url)
    tls = parsed.scheme.lower() in ("https", "wss")
    host = parsed.hostname
    if not host:
        raise MalformedEnvelope(f"No host in {url!r}")
    try:
        port = parsed.port or (443 if tls else 80)
    except ValueError:
        raise MalformedEnvelope(f"Bad port in {url!r}") from None
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    netloc = parsed.netloc.rpartition("@")[2]
    return tls, host, port, netloc, path


def _origin_request_head(env: HttpEnvelope, netloc: str, path: str, chunked: bool) -> bytes:
    headers = [("Host", netloc)]
    headers += filter_headers(env.headers, extra=("host",))
    if chunked:
        headers.append(("Transfer-Encoding", "chunked"))
    headers.append(("Connection", "close"))
    return serialize_request_head(env.method, path, "HTTP/1.1", headers)


# ============================================================================
# Services
# ============================================================================


class RelayService(abc.ABC):
    """What the relay does with a freshly consumed envelope."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    @abc.abstractmethod
    def dispatch(self, envelope: RequestEnvelope) -> None:
        """Take ownership of *envelope*.  Must not block."""

    def _spawn(self, coro, name: str) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def stop(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class RequestBodySink(SocketSink):
    """Streams the request body into the origin socket.

    With ``chunked`` the pieces are re-framed with chunked encoding and
    the ``EOF_REQ_BODY`` sentinel becomes the last-chunk marker;
    otherwise the sentinel is simply dropped.
    """

    def __init__(self, chunked: bool):
        super().__init__()
        self.chunked = chunked
        self.body_done = False

    def deliver(self, data: bytes) -> None:
        if data == EOF_REQ_BODY:
            if self.chunked and not self.body_done:
                self.write(LAST_CHUNK)
            self.body_done = True
            return
        if self.body_done:
            return
        self.write(encode_chunk(data) if self.chunked and data else data)


class StreamingService(RelayService):
    """v2: optimistic Ack, then live byte pumping in both directions."""

    def __init__(self, transport: StreamTransport, egress: Egress, config: SessionConfig):
        super().__init__()
        self.transport = transport
        self.egress = egress
        self.config = config

    def dispatch(self, envelope: RequestEnvelope) -> None:
        if isinstance(envelope, TunnelEnvelope):
            sink: SocketSink = SocketSink()
            self.transport.accept(envelope.id, sink, label=envelope.url)
            self._spawn(self._serve_tunnel(envelope, sink), name=f"tunnel-{envelope.id}")
        else:
            chunked = content_length(envelope.headers) < 0 and envelope.method.upper() not in BODYLESS_METHODS
            body_sink = RequestBodySink(chunked)
            self.transport.accept(envelope.id, body_sink, label=envelope.url)
            self._spawn(self._serve_http(envelope, body_sink), name=f"http-{envelope.id}")
        logger.info("[%s] %s %s", envelope.id, envelope.method, envelope.url)

    async def _serve_tunnel(self, env: TunnelEnvelope, sink: SocketSink) -> None:
        cid = env.id
        conn: Optional[ManagedConnection] = None
        error: Optional[str] = None
        try:
            conn = await self.egress.connect(env.host, env.port, tls=env.kind is TunnelKind.TLS)
            sink.attach(conn)
            if env.body:
                conn.writer.write(env.body)
            logger.debug("[%s] Tunnel connected to %s:%d", cid, env.host, env.port)
            while cid in self.transport.registry:
                data = await conn.reader.read(self.config.read_buffer_size)
                if not data:
                    break
                conn.touch()
                self.transport.send_chunk(cid, data)
        except asyncio.CancelledError:
            self.transport.close_stream(cid, "Relay stopped")
            raise
        except Exception as e:
            error = describe(e)
        finally:
            if conn is not None:
                await conn.close()
        self.transport.close_stream(cid, error)

    async def _serve_http(self, env: HttpEnvelope, sink: RequestBodySink) -> None:
        cid = env.id
        conn: Optional[ManagedConnection] = None
        error: Optional[str] = None
        try:
            tls, host, port, netloc, path = _request_target(env.url)
            conn = await self.egress.connect(host, port, tls=tls)
            conn.writer.write(_origin_request_head(env, netloc, path, sink.chunked))
            if env.body:
                conn.writer.write(encode_chunk(env.body) if sink.chunked else env.body)
            sink.attach(conn)

            head = await read_response_head(conn.reader)
            self.transport.send_chunk(cid, encode_head(head.status, tuple(filter_headers(head.headers))), flush_now=True)
            logger.debug("[%s] %d from %s", cid, head.status, netloc)

            async for piece in iter_response_body(conn.reader, head, env.method, self.config.read_buffer_size):
                if cid not in self.transport.registry:
                    break
                self.transport.send_chunk(cid, piece)
        except asyncio.CancelledError:
            self.transport.close_stream(cid, "Relay stopped")
            raise
        except Exception as e:
            error = describe(e)
        finally:
            if conn is not None:
                await conn.close()
        self.transport.close_stream(cid, error)


class LegacyService(RelayService):
    """v1: one blocking exchange per request file, answered with ``res_<id>.json``."""

    def __init__(self, channel: Channel, egress: Egress, config: SessionConfig):
        super().__init__()
        self.channel = channel
        self.egress = egress
        self.config = config

    def dispatch(self, envelope: RequestEnvelope) -> None:
        logger.info("[%s] %s %s", envelope.id, envelope.method, envelope.url)
        self._spawn(self._serve(envelope), name=f"legacy-{envelope.id}")

    async def _serve(self, env: RequestEnvelope) -> None:
        try:
            if isinstance(env, TunnelEnvelope):
                res = await self._exchange_tunnel(env)
            else:
                res = await self._fetch(env)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("[%s] %s failed: %s", env.id, env.url, e)
            res = ResponseEnvelope(id=env.id, status=502, error=describe(e))
        try:
            self.channel.write_atomic(response_name(env.id), encode_response(res))
        except OSError as e:
            logger.error("[%s] Cannot write response: %s", env.id, e)

    async def _fetch(self, env: HttpEnvelope) -> ResponseEnvelope:
        tls, host, port, netloc, path = _request_target(env.url)
        conn = await self.egress.connect(host, port, tls=tls)
        try:
            body = env.body or b""
            headers = [(k, v) for k, v in env.headers if k.lower() != "content-length"]
            if body or env.method.upper() not in BODYLESS_METHODS:
                headers.append(("Content-Length", str(len(body))))
            conn.writer.write(_origin_request_head(HttpEnvelope(env.method, env.url, tuple(headers)), netloc, path, False))
            if body:
                conn.writer.write(body)
            await conn.writer.drain()

            head = await read_response_head(conn.reader)
            data = bytearray()
            async for piece in iter_response_body(conn.reader, head, env.method, self.config.read_buffer_size):
                data += piece
            logger.debug("[%s] %d from %s (%d bytes)", env.id, head.status, netloc, len(data))
            return ResponseEnvelope(
                id=env.id,
                status=head.status,
                headers=tuple(filter_headers(head.headers)),
                body=bytes(data),
            )
        finally:
            await conn.close()

    async def _exchange_tunnel(self, env: TunnelEnvelope) -> ResponseEnvelope:
        """Write the inlined bytes, collect whatever comes back.

        Collection stops when the origin closes, after ``legacy_tunnel_idle``
        seconds of silence, or ``legacy_tunnel_max`` seconds in total.
        """
        conn = await self.egress.connect(env.host, env.port, tls=env.kind is TunnelKind.TLS)
        data = bytearray()
        try:
            if env.body:
                conn.writer.write(env.body)
                await conn.writer.drain()
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.config.legacy_tunnel_max
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    async with asyncio.timeout(min(self.config.legacy_tunnel_idle, remaining)):
                        piece = await conn.reader.read(self.config.read_buffer_size)
                except TimeoutError:
                    break
                if not piece:
                    break
                data += piece
        finally:
            await conn.close()
        return ResponseEnvelope(id=env.id, status=200, body=bytes(data))


# ============================================================================
# Relay
# ============================================================================


class Relay:
    """Turns request envelopes appearing in the channel into service calls."""

    def __init__(
        self,
        channel: Channel,
        registry: ConnectionRegistry,
        service: RelayService,
        config: SessionConfig,
    ):
        self.channel = channel
        self.registry = registry
        self.service = service
        self.config = config

    def scan_once(self) -> list[str]:
        """Consume every new request envelope.  Returns the dispatched ids."""
        try:
            names = self.channel.list()
        except OSError as e:
            logger.debug("Scan listing failed: %s", e)
            return []

        dispatched: list[str] = []
        for name in names:
            m = REQUEST_ENVELOPE_RE.match(name)
            if m is None:
                continue
            cid = m.group(1)
            if cid in self.registry:
                continue
            try:
                data = self.channel.read(name)
            except OSError:
                continue
            if data is None:
                continue

            try:
                envelope = decode_request(data).with_id(cid)
            except MalformedEnvelope as e:
                logger.warning("Dropping malformed request %s: %s", name, e)
                self._consume(name)
                continue

            try:
                self.service.dispatch(envelope)
            except RegistrationError as e:
                logger.error("[%s] %s", cid, e)
            else:
                dispatched.append(cid)
            self._consume(name)
        return dispatched

    def _consume(self, name: str) -> None:
        try:
            self.channel.delete(name)
        except OSError as e:
            logger.debug("Cannot delete %s: %s", name, e)

    async def run(self) -> None:
        while True:
            try:
                self.scan_once()
            except Exception:
                logger.error("Scan error: %s", traceback.format_exc())
            await asyncio.sleep(self.config.scan_interval)

    async def stop(self) -> None:
        await self.service.stop()
